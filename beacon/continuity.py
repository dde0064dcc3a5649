import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

from .envelope import new_id
from .store import BeaconStore, RecentConversation

log = logging.getLogger(__name__)

RECENT_CONVERSATIONS = 5
MESSAGES_PER_CONVERSATION = 10
NO_CONVERSATION = "0000"

Classifier = Callable[[List[Dict[str, Any]], str], Awaitable[Optional[Dict[str, Any]]]]


@dataclass
class ConversationDecision:
    is_new: bool
    conversation_id: str


@dataclass
class ContinuationVerdict:
    is_continue: bool
    conversation_id: Optional[str]
    rationale: str = ""


def parse_continuation(data: Optional[Dict[str, Any]]) -> Optional[ContinuationVerdict]:
    """Normalise the classifier's JSON; accepts isContinue/isNew and a few id spellings."""
    if not isinstance(data, dict):
        return None
    if isinstance(data.get("isContinue"), bool):
        is_continue = data["isContinue"]
    elif isinstance(data.get("isNew"), bool):
        is_continue = not data["isNew"]
    else:
        is_continue = False
    cid = data.get("conversationId")
    if cid is None:
        cid = data.get("threadID")
    if cid is None:
        cid = data.get("conversationRef")
    if cid is not None:
        cid = str(cid).strip()
        if cid in ("", NO_CONVERSATION) or cid.lower() in ("none", "null"):
            cid = None
    rationale = data.get("reasoning") or data.get("rationale") or ""
    return ContinuationVerdict(is_continue=is_continue, conversation_id=cid, rationale=str(rationale))


def build_candidates(
    recent: List[RecentConversation], max_messages: int = MESSAGES_PER_CONVERSATION
) -> Tuple[List[Dict[str, Any]], Set[str]]:
    candidates: List[Dict[str, Any]] = []
    known: Set[str] = set()
    for conv in recent:
        lines: List[str] = []
        for msg in conv.messages:
            text = msg.text.strip()
            if not text:
                continue
            lines.append(f"{msg.direction}: {text}")
            if len(lines) >= max_messages:
                break
        if lines:
            known.add(conv.conversation_id)
            candidates.append({"conversationId": conv.conversation_id, "messages": lines})
    return candidates, known


class ConversationResolver:
    def __init__(
        self,
        store: BeaconStore,
        classifier: Optional[Classifier] = None,
        *,
        recent_limit: int = RECENT_CONVERSATIONS,
        timeout: float = 60.0,
    ):
        self.store = store
        self.classifier = classifier
        self.recent_limit = recent_limit
        self.timeout = timeout

    def parent_for_reply(
        self,
        provider_reply_to: Optional[str],
        user_id: Optional[str],
        gateway_type: Optional[str] = None,
    ) -> Optional[str]:
        """Map a transport reply pointer to one of ``user_id``'s recorded messages."""
        if not provider_reply_to or not user_id:
            return None
        parent = self.store.get_message(provider_reply_to)
        if parent is not None:
            return provider_reply_to if parent.user_id == user_id else None
        return self.store.find_message_by_provider_id(
            provider_reply_to, user_id=user_id, gateway_type=gateway_type
        )

    async def resolve(
        self,
        reply_to_message_id: Optional[str] = None,
        user_id: Optional[str] = None,
        message_text: Optional[str] = None,
    ) -> ConversationDecision:
        if reply_to_message_id:
            parent = self.store.get_message(reply_to_message_id)
            if parent and parent.conversation_id:
                return ConversationDecision(is_new=False, conversation_id=parent.conversation_id)

        text = (message_text or "").strip()
        if user_id and text and self.classifier is not None:
            continued = await self._classify(user_id, text)
            if continued:
                return ConversationDecision(is_new=False, conversation_id=continued)

        return ConversationDecision(is_new=True, conversation_id=new_id())

    async def _classify(self, user_id: str, text: str) -> Optional[str]:
        candidates, known = build_candidates(self.store.recent_conversations(user_id, self.recent_limit))
        if not known:
            return None
        try:
            raw = await asyncio.wait_for(self.classifier(candidates, text), timeout=self.timeout)
        except asyncio.TimeoutError:
            log.warning("continuation classifier timed out for %s", user_id)
            return None
        except Exception as exc:
            log.warning("continuation classifier failed for %s: %s", user_id, exc)
            return None
        verdict = parse_continuation(raw)
        if verdict is None or not verdict.is_continue or not verdict.conversation_id:
            return None
        if verdict.conversation_id not in known:
            log.warning("classifier returned unknown conversation %s; starting new", verdict.conversation_id)
            return None
        return verdict.conversation_id
