import logging
from typing import Callable, Dict, Optional

from beacon.bus import CHANNEL_OUT, MessageBus
from beacon.delivery import DeliveryTracker
from beacon.envelope import OutboundMessage
from beacon.rpc_client import HttpRpcClient

log = logging.getLogger(__name__)


class RemoteDispatcher:
    """Sends replies back to gateways that reached us through receiveMessage.

    Those messages carry the gateway's base URL in ``ctx.returnGatewayID``;
    the reply goes to that gateway's own ``receiveMessage`` tool.
    """

    def __init__(
        self,
        *,
        bus: MessageBus,
        tracker: DeliveryTracker,
        bot_type: str = "brain",
        timeout: float = 30.0,
        token: Optional[str] = None,
        client_factory: Optional[Callable[[str], HttpRpcClient]] = None,
    ):
        self.bus = bus
        self.tracker = tracker
        self.bot_type = bot_type
        self._factory = client_factory or (lambda url: HttpRpcClient(url, timeout=timeout, token=token))
        self._clients: Dict[str, HttpRpcClient] = {}

    def start(self) -> None:
        self.bus.subscribe(CHANNEL_OUT, self.on_outbound)

    def _client(self, base_url: str) -> HttpRpcClient:
        client = self._clients.get(base_url)
        if client is None:
            client = self._factory(base_url)
            self._clients[base_url] = client
        return client

    def request_for(self, outbound: OutboundMessage) -> dict:
        ctx = outbound.ctx
        return {
            "refId": outbound.beacon_id,
            "returnGatewayID": ctx.get("returnGatewayID"),
            "networkID": ctx.get("networkID") or outbound.gateway.type,
            "botid": ctx.get("botid") or "",
            "botType": self.bot_type,
            "groupID": ctx.get("groupID") or "",
            "userId": ctx.get("userId") or outbound.to,
            "messageID": outbound.quoted_message_id or "",
            "message": outbound.body,
        }

    async def on_outbound(self, outbound: OutboundMessage) -> None:
        target = outbound.ctx.get("returnGatewayID")
        if not target:
            return
        if not str(target).startswith(("http://", "https://")):
            log.error("returnGatewayID %s is not a reachable URL; dropping %s", target, outbound.delivery_id)
            if outbound.delivery_id:
                self.tracker.cancel(outbound.delivery_id, f"no route to gateway {target}")
            return
        result = await self._client(target).call("receiveMessage", self.request_for(outbound))
        if not outbound.delivery_id:
            return
        if result.get("status") == "success":
            provider_id = result.get("messageId") or result.get("beaconId")
            self.tracker.mark_sent(outbound.delivery_id, str(provider_id) if provider_id else None)
        else:
            reason = result.get("description") or result.get("details") or "gateway rejected message"
            log.warning("remote gateway %s rejected %s: %s", target, outbound.delivery_id, reason)
            self.tracker.mark_failed(outbound.delivery_id, str(reason), "gateway_rejected")

    async def close(self) -> None:
        for client in self._clients.values():
            await client.close()
        self._clients.clear()
