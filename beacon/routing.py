import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from .envelope import BeaconMessage, GatewayInfo

log = logging.getLogger(__name__)

DEFAULT_CAPACITY = 2000


@dataclass
class RoutingContext:
    to: str
    gateway: GatewayInfo
    quoted_message_id: Optional[str] = None
    inbound_message_id: Optional[str] = None
    conversation_id: Optional[str] = None
    user_id: Optional[str] = None
    ctx: Dict[str, Any] = field(default_factory=dict)


def context_from_message(msg: BeaconMessage, inbound_message_id: Optional[str] = None) -> RoutingContext:
    """Where a reply to ``msg`` should go."""
    return RoutingContext(
        to=msg.source.sender,
        gateway=GatewayInfo(msg.source.gateway.type, msg.source.gateway.gateway_id),
        quoted_message_id=msg.source.message_id,
        inbound_message_id=inbound_message_id,
        conversation_id=msg.conversation_id or None,
        user_id=msg.user_id,
        ctx=dict(msg.ctx),
    )


class RoutingContextStore:
    """Bounded correlation-id -> reply destination map.

    Insertion past capacity silently drops the oldest entry. Reads do not
    refresh an entry's position.
    """

    def __init__(self, capacity: int = DEFAULT_CAPACITY):
        if capacity < 1:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self._entries: "OrderedDict[str, RoutingContext]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, beacon_id: str) -> bool:
        return beacon_id in self._entries

    def remember(self, beacon_id: str, context: RoutingContext) -> None:
        if beacon_id in self._entries:
            self._entries[beacon_id] = context
            return
        while len(self._entries) >= self.capacity:
            evicted, _ = self._entries.popitem(last=False)
            log.debug("routing context evicted: %s", evicted)
        self._entries[beacon_id] = context

    def get(self, beacon_id: str) -> Optional[RoutingContext]:
        return self._entries.get(beacon_id)

    def forget(self, beacon_id: str) -> bool:
        return self._entries.pop(beacon_id, None) is not None

    def remember_inbound(self, msg: BeaconMessage, inbound_message_id: Optional[str] = None) -> RoutingContext:
        context = context_from_message(msg, inbound_message_id)
        self.remember(msg.beacon_id, context)
        return context
