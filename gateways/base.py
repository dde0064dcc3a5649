import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, Sequence

from beacon.bus import CHANNEL_BEACON, CHANNEL_OUT, MessageBus
from beacon.delivery import DeliveryTracker
from beacon.envelope import BeaconMessage, GatewayInfo, OutboundMessage, Source
from beacon.store import BeaconStore

log = logging.getLogger(__name__)

UNKNOWN_USER_PROMPT = "Please setup your Beacon ID first for access to beacon!"
PROMPT_THROTTLE_SECONDS = 60.0


class GatewayAdapter(ABC):
    """Glue between one chat transport and one service bus.

    Subclasses implement ``deliver`` (send an outbound message, return the
    provider's message id) and ``send_text`` (a plain untracked message).
    """

    gateway_type = ""

    def __init__(
        self,
        *,
        bus: MessageBus,
        store: BeaconStore,
        tracker: DeliveryTracker,
        gateway_id: str = "",
        service: str = "brain",
        router: Optional[Callable[[str], Optional[MessageBus]]] = None,
        outbound_buses: Sequence[MessageBus] = (),
        clock: Callable[[], float] = time.monotonic,
    ):
        self.bus = bus
        self.store = store
        self.tracker = tracker
        self.gateway_id = gateway_id
        self.service = service
        self.router = router
        self.outbound_buses: List[MessageBus] = [bus] + [b for b in outbound_buses if b is not bus]
        self._clock = clock
        self._last_prompt: Dict[str, float] = {}

    @property
    def gateway(self) -> GatewayInfo:
        return GatewayInfo(self.gateway_type, self.gateway_id)

    def start_routing(self) -> None:
        for bus in self.outbound_buses:
            bus.subscribe(CHANNEL_OUT, self.on_outbound)

    def build_envelope(
        self,
        sender: str,
        text: str,
        *,
        message_id: Optional[str] = None,
        reply_to: Optional[str] = None,
        raw: Any = None,
        has_media: bool = False,
        ctx: Optional[Dict[str, Any]] = None,
    ) -> BeaconMessage:
        source = Source(
            gateway=self.gateway,
            sender=sender,
            text=text or "",
            message_id=message_id,
            reply_to=reply_to,
            message_data=raw,
            has_media=has_media,
        )
        return BeaconMessage.new(source, {"ctx": dict(ctx or {})})

    async def ingest(self, sender: str, text: str, **kwargs: Any) -> Optional[BeaconMessage]:
        """Turn a transport event into an envelope on the bus.

        Brain-bound adapters only let mapped users through; the identity
        service sees everyone so it can onboard them. A router may claim a
        sender for another bus, e.g. while identity waits on their YES.
        """
        user_id = self.store.resolve_user(self.gateway_type, self.gateway_id, sender)
        target = self.router(sender) if self.router else None
        bus = target or self.bus
        if target is None and self.service == "brain" and not user_id:
            await self._prompt_unknown(sender)
            return None
        msg = self.build_envelope(sender, text, **kwargs)
        if user_id:
            msg.user_id = user_id
        bus.publish(CHANNEL_BEACON, msg)
        log.debug("[%s] inbound beaconID=%s from %s", self.gateway_type, msg.beacon_id, sender)
        return msg

    async def _prompt_unknown(self, sender: str) -> bool:
        key = f"{self.gateway_type}|{self.gateway_id}|{sender}"
        now = self._clock()
        last = self._last_prompt.get(key)
        if last is not None and now - last < PROMPT_THROTTLE_SECONDS:
            return False
        self._last_prompt[key] = now
        try:
            await self.send_text(sender, UNKNOWN_USER_PROMPT)
        except Exception as exc:
            log.warning("[%s] could not prompt unknown user %s: %s", self.gateway_type, sender, exc)
        return True

    def handles(self, outbound: OutboundMessage) -> bool:
        if outbound.gateway.type != self.gateway_type:
            return False
        return not outbound.ctx.get("returnGatewayID")

    async def on_outbound(self, outbound: OutboundMessage) -> None:
        if not self.handles(outbound):
            return
        if not outbound.to:
            log.warning("[%s] outbound %s has no destination", self.gateway_type, outbound.delivery_id)
            if outbound.delivery_id:
                self.tracker.cancel(outbound.delivery_id, "no destination")
            return
        try:
            provider_id = await self.deliver(outbound)
        except Exception as exc:
            log.warning("[%s] delivery to %s failed: %s", self.gateway_type, outbound.to, exc)
            if outbound.delivery_id:
                self.tracker.mark_failed(outbound.delivery_id, str(exc) or exc.__class__.__name__)
            return
        if outbound.delivery_id:
            self.tracker.mark_sent(outbound.delivery_id, provider_id)

    @abstractmethod
    async def deliver(self, outbound: OutboundMessage) -> Optional[str]:
        ...

    @abstractmethod
    async def send_text(self, to: str, text: str) -> None:
        ...

    async def start(self) -> None:
        self.start_routing()

    async def stop(self) -> None:
        for bus in self.outbound_buses:
            bus.unsubscribe(CHANNEL_OUT, self.on_outbound)
