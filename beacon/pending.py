import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

log = logging.getLogger(__name__)

CONFIRM_TIMEOUT_SECONDS = 300.0
SWEEP_INTERVAL_SECONDS = 60.0
IDEMPOTENCY_TTL_SECONDS = 300.0


@dataclass
class PaymentIntent:
    type: str
    ref_id: str
    amount: Optional[int] = None
    ln_address: Optional[str] = None
    invoice: Optional[str] = None
    user_id: Optional[str] = None
    response_tool: Optional[str] = None
    reply_to: Optional[str] = None
    gateway: Dict[str, Any] = field(default_factory=dict)


@dataclass
class PendingConfirmation:
    intent: PaymentIntent
    created_at: float


class PendingConfirmationStore:
    """One outstanding payment confirmation per human address.

    ``retrieve_and_clear`` is the claim primitive: whichever caller gets the
    entry first owns it, every later caller sees nothing.
    """

    def __init__(
        self,
        timeout: float = CONFIRM_TIMEOUT_SECONDS,
        sweep_interval: float = SWEEP_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.timeout = timeout
        self.sweep_interval = sweep_interval
        self._clock = clock
        self._entries: Dict[str, PendingConfirmation] = {}
        self._sweeper: Optional[asyncio.Task] = None

    def __len__(self) -> int:
        return len(self._entries)

    def store(self, address: str, intent: PaymentIntent) -> None:
        if address in self._entries:
            log.info("pending confirmation for %s superseded by %s", address, intent.ref_id)
        self._entries[address] = PendingConfirmation(intent=intent, created_at=self._clock())

    def retrieve_and_clear(self, address: str) -> Optional[PaymentIntent]:
        entry = self._entries.pop(address, None)
        if entry is None:
            return None
        if self._clock() - entry.created_at > self.timeout:
            log.info("pending confirmation for %s expired", address)
            return None
        return entry.intent

    def has_pending(self, address: str) -> bool:
        entry = self._entries.get(address)
        return entry is not None and self._clock() - entry.created_at <= self.timeout

    def sweep(self) -> int:
        now = self._clock()
        expired = [addr for addr, entry in self._entries.items() if now - entry.created_at > self.timeout]
        for addr in expired:
            del self._entries[addr]
        if expired:
            log.info("swept %d expired confirmations", len(expired))
        return len(expired)

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            self.sweep()

    def start(self) -> None:
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.get_running_loop().create_task(self._sweep_loop())

    async def stop(self) -> None:
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        try:
            await self._sweeper
        except asyncio.CancelledError:
            pass
        self._sweeper = None


class IdempotencyCache:
    def __init__(self, ttl: float = IDEMPOTENCY_TTL_SECONDS, clock: Callable[[], float] = time.time):
        self.ttl = ttl
        self._clock = clock
        self._seen: Dict[str, float] = {}

    def mark_processed(self, ref_id: str) -> None:
        self._prune()
        self._seen[ref_id] = self._clock()

    def is_processed(self, ref_id: str) -> bool:
        stamp = self._seen.get(ref_id)
        if stamp is None:
            return False
        if self._clock() - stamp >= self.ttl:
            del self._seen[ref_id]
            return False
        return True

    def _prune(self) -> None:
        now = self._clock()
        stale = [ref for ref, stamp in self._seen.items() if now - stamp >= self.ttl]
        for ref in stale:
            del self._seen[ref]
