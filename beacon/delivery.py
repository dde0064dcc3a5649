import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .bus import CHANNEL_OUT, MessageBus
from .envelope import GatewayInfo, OutboundMessage
from .routing import RoutingContext
from .store import (
    DELIVERY_CANCELED,
    DELIVERY_FAILED,
    DELIVERY_SENT,
    ROLE_BEACON,
    BeaconStore,
)

log = logging.getLogger(__name__)


@dataclass
class OutboundRecord:
    message_id: str
    delivery_id: str


class DeliveryTracker:
    def __init__(self, store: BeaconStore):
        self.store = store

    def create_outbound(
        self,
        *,
        conversation_id: str,
        content: Dict[str, Any],
        channel: str,
        parent_message_id: Optional[str] = None,
        role: str = ROLE_BEACON,
        user_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> OutboundRecord:
        message_id, delivery_id = self.store.create_outbound(
            conversation_id=conversation_id,
            content=content,
            channel=channel,
            parent_message_id=parent_message_id,
            role=role,
            user_id=user_id,
            metadata=metadata,
        )
        return OutboundRecord(message_id=message_id, delivery_id=delivery_id)

    def transition(
        self,
        delivery_id: str,
        status: str,
        *,
        provider_message_id: Optional[str] = None,
        error_code: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> bool:
        """Record an adapter outcome. Terminal deliveries are left untouched and False is returned."""
        current = self.store.get_delivery(delivery_id)
        if current is None:
            log.warning("transition for unknown delivery %s -> %s", delivery_id, status)
            return False
        if current.is_terminal:
            log.warning(
                "delivery %s already %s; rejecting transition to %s",
                delivery_id,
                current.status,
                status,
            )
            return False
        changed = self.store.transition_delivery(
            delivery_id,
            status,
            provider_message_id=provider_message_id,
            error_code=error_code,
            error_message=error_message,
        )
        if not changed:
            log.warning("delivery %s changed concurrently; %s not applied", delivery_id, status)
        return changed

    def mark_sent(self, delivery_id: str, provider_message_id: Optional[str] = None) -> bool:
        return self.transition(delivery_id, DELIVERY_SENT, provider_message_id=provider_message_id)

    def mark_failed(self, delivery_id: str, error_message: str, error_code: str = "send_failed") -> bool:
        return self.transition(
            delivery_id, DELIVERY_FAILED, error_code=error_code, error_message=error_message
        )

    def cancel(self, delivery_id: str, reason: str = "routing context lost") -> bool:
        return self.transition(
            delivery_id, DELIVERY_CANCELED, error_code="canceled", error_message=reason
        )

    def dispatch(
        self,
        bus: MessageBus,
        beacon_id: str,
        context: RoutingContext,
        text: str,
        *,
        role: str = ROLE_BEACON,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> OutboundMessage:
        """Persist a reply for ``context`` and hand it to the bus's outbound channel."""
        meta = {"beaconId": beacon_id}
        meta.update(metadata or {})
        record = self.create_outbound(
            conversation_id=context.conversation_id or beacon_id,
            parent_message_id=context.inbound_message_id,
            role=role,
            user_id=context.user_id,
            content={"text": text, "to": context.to, "quotedMessageId": context.quoted_message_id},
            metadata=meta,
            channel=context.gateway.type,
        )
        outbound = OutboundMessage(
            to=context.to,
            body=text,
            gateway=GatewayInfo(context.gateway.type, context.gateway.gateway_id),
            quoted_message_id=context.quoted_message_id,
            delivery_id=record.delivery_id,
            message_id=record.message_id,
            beacon_id=beacon_id,
            ctx=dict(context.ctx),
        )
        bus.publish(CHANNEL_OUT, outbound)
        return outbound
