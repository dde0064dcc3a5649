import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from .store import DIRECTION_INBOUND, BeaconStore

log = logging.getLogger(__name__)

CONSOLIDATE_EVERY = 4
MAX_SOURCE_MESSAGES = 60
MAX_SOURCE_CHARS = 12000
MAX_SUMMARY_CHARS = 2500

Summarize = Callable[[Optional[str], str, int], Awaitable[Optional[str]]]


@dataclass
class ConsolidationResult:
    summary: Optional[str]
    delta: int

    @property
    def is_fresh(self) -> bool:
        return bool(self.summary) and self.delta == 0


class ConversationSummarizer:
    """Keeps a rolling summary per conversation, refreshed every few messages."""

    def __init__(
        self,
        store: BeaconStore,
        summarize: Summarize,
        *,
        every: int = CONSOLIDATE_EVERY,
        max_source_messages: int = MAX_SOURCE_MESSAGES,
        max_source_chars: int = MAX_SOURCE_CHARS,
        max_summary_chars: int = MAX_SUMMARY_CHARS,
        timeout: float = 60.0,
    ):
        self.store = store
        self.summarize = summarize
        self.every = every
        self.max_source_messages = max_source_messages
        self.max_source_chars = max_source_chars
        self.max_summary_chars = max_summary_chars
        self.timeout = timeout

    def build_transcript(self, conversation_id: str) -> str:
        messages = self.store.get_conversation_messages(
            conversation_id, self.max_source_messages, newest=True
        )
        lines = []
        for msg in messages:
            text = msg.text.strip()
            if not text:
                continue
            role = "user" if msg.direction == DIRECTION_INBOUND else "beacon"
            lines.append(f"{role}: {text}")
        source = "\n".join(lines)
        if len(source) > self.max_source_chars:
            source = source[-self.max_source_chars :]
        return source

    async def maybe_consolidate(self, conversation_id: str) -> ConsolidationResult:
        count = self.store.conversation_message_count(conversation_id)
        state = self.store.get_conversation_state(conversation_id)
        previous = state.summary if state else None
        delta = max(0, count - (state.message_count if state else 0))
        if state is not None and delta < self.every:
            return ConsolidationResult(summary=previous, delta=delta)

        transcript = self.build_transcript(conversation_id)
        try:
            summary = await asyncio.wait_for(
                self.summarize(previous, transcript, self.max_summary_chars), timeout=self.timeout
            )
        except asyncio.TimeoutError:
            log.warning("summary for %s timed out", conversation_id)
            return ConsolidationResult(summary=previous, delta=delta)
        except Exception as exc:
            log.warning("summary for %s failed: %s", conversation_id, exc)
            return ConsolidationResult(summary=previous, delta=delta)
        summary = (summary or "").strip()
        if not summary:
            return ConsolidationResult(summary=previous, delta=delta)
        clipped = summary[: self.max_summary_chars]
        self.store.set_conversation_state(conversation_id, clipped, count)
        return ConsolidationResult(summary=clipped, delta=0)


def build_history(store: BeaconStore, conversation_id: str, last_n: int = 5) -> str:
    """Compact ``user: ... | assistant: ...`` string of the latest messages."""
    messages = store.get_conversation_messages(conversation_id, last_n, newest=True)
    parts = []
    for msg in messages:
        text = msg.text.strip()
        if not text:
            continue
        role = "user" if msg.direction == DIRECTION_INBOUND else "assistant"
        parts.append(f"{role}: {text}")
    return f"MessageHistory: {' | '.join(parts)}" if parts else ""


def history_for_reply(store: BeaconStore, conversation_id: str, result: ConsolidationResult) -> str:
    recent = build_history(store, conversation_id)
    if not result.summary:
        return recent
    if result.is_fresh:
        return f"Conversation summary:\n{result.summary}"
    label = f"Conversation summary ({result.delta} newer messages not yet summarised):"
    return f"{label}\n{result.summary}\n{recent}".strip()
