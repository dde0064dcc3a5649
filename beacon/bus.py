import asyncio
import logging
from collections import defaultdict
from typing import Any, Awaitable, Callable, Dict, List, Set

log = logging.getLogger(__name__)

CHANNEL_OUT = "out"
CHANNEL_BEACON = "beacon"

Handler = Callable[[Any], Awaitable[None]]


class MessageBus:
    """In-process pub/sub. Handlers run as independent tasks; a crash in one is logged and dropped."""

    def __init__(self, name: str):
        self.name = name
        self._subscribers: Dict[str, List[Handler]] = defaultdict(list)
        self._tasks: Set[asyncio.Task] = set()

    def subscribe(self, channel: str, handler: Handler) -> None:
        self._subscribers[channel].append(handler)

    def unsubscribe(self, channel: str, handler: Handler) -> None:
        handlers = self._subscribers.get(channel) or []
        if handler in handlers:
            handlers.remove(handler)

    def publish(self, channel: str, payload: Any) -> int:
        handlers = list(self._subscribers.get(channel) or [])
        if not handlers:
            log.debug("[%s] no subscribers on %s", self.name, channel)
            return 0
        loop = asyncio.get_running_loop()
        for handler in handlers:
            task = loop.create_task(self._run(channel, handler, payload))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        return len(handlers)

    async def _run(self, channel: str, handler: Handler, payload: Any) -> None:
        try:
            await handler(payload)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            log.exception("[%s] handler for %s failed: %s", self.name, channel, exc)

    async def drain(self) -> None:
        """Wait until every in-flight handler, including ones they publish, has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    @property
    def pending(self) -> int:
        return len(self._tasks)
