import logging
from typing import Any, Dict, Optional

from .bus import CHANNEL_BEACON, MessageBus
from .delivery import DeliveryTracker
from .envelope import GATEWAY_TYPES, BeaconMessage, GatewayInfo, Source
from .errors import BeaconError, UnknownReferenceError, ValidationError
from .routing import RoutingContextStore
from .store import BeaconStore

log = logging.getLogger(__name__)

PAYMENT_STATUSES = ("paid", "rejected")
PAYMENT_TYPES = ("payLnAddress", "payLnInvoice")


def require(args: Dict[str, Any], *keys: str) -> Dict[str, str]:
    """Return the named fields as stripped strings, raising ValidationError for any that are missing."""
    values: Dict[str, str] = {}
    missing = []
    for key in keys:
        value = args.get(key)
        text = str(value).strip() if value is not None else ""
        if not text:
            missing.append(key)
        values[key] = text
    if missing:
        raise ValidationError(f"missing required field(s): {', '.join(missing)}", {"missing": missing})
    return values


def error_result(exc: BeaconError, key: str = "details", status: str = "error") -> Dict[str, Any]:
    return {"status": status, key: exc.message, "code": exc.code}


class BrainTools:
    """Tools the brain exposes to gateways and to the identity service."""

    def __init__(
        self,
        store: BeaconStore,
        routing: RoutingContextStore,
        tracker: DeliveryTracker,
        buses: Dict[str, MessageBus],
        *,
        gateway_id: str = "",
    ):
        self.store = store
        self.routing = routing
        self.tracker = tracker
        self.buses = buses
        self.gateway_id = gateway_id

    def tools(self) -> Dict[str, Any]:
        return {
            "receiveMessage": self.receive_message,
            "confirmPayment": self.confirm_payment,
            "researchResponse": self.research_response,
            "onboardUser": self.onboard_user,
        }

    @property
    def brain_bus(self) -> MessageBus:
        return self.buses["brain"]

    # ----- receiveMessage -----
    def envelope_from_args(self, args: Dict[str, Any]) -> BeaconMessage:
        fields = require(args, "returnGatewayID", "networkID", "userId", "message")
        network = fields["networkID"].lower()
        if network not in GATEWAY_TYPES:
            raise ValidationError(f"unknown networkID {fields['networkID']}", {"networkID": fields["networkID"]})
        ctx = {
            "returnGatewayID": fields["returnGatewayID"],
            "networkID": network,
            "userId": fields["userId"],
            "botid": str(args.get("botid") or ""),
            "botType": str(args.get("botType") or "brain").lower(),
        }
        if args.get("groupID"):
            ctx["groupID"] = str(args["groupID"])
        if args.get("refId"):
            ctx["refId"] = str(args["refId"])
        payload = {k: v for k, v in args.items() if k != "message"}
        payload["body"] = fields["message"]
        source = Source(
            gateway=GatewayInfo(network, fields["returnGatewayID"]),
            sender=fields["userId"],
            text=fields["message"],
            message_id=str(args["messageID"]) if args.get("messageID") else None,
            message_data=payload,
        )
        return BeaconMessage.new(source, {"ctx": ctx})

    async def receive_message(self, args: Dict[str, Any]) -> Dict[str, Any]:
        try:
            msg = self.envelope_from_args(args)
        except ValidationError as exc:
            log.info("receiveMessage rejected: %s", exc.message)
            return error_result(exc, key="description", status="failure")
        target = "identity" if msg.ctx.get("botType") in ("id", "identity") else "brain"
        bus = self.buses.get(target)
        if bus is None:
            return {"status": "failure", "description": f"{target} service not available here"}
        bus.publish(CHANNEL_BEACON, msg)
        log.info("receiveMessage queued beaconID=%s for %s", msg.beacon_id, target)
        return {
            "status": "success",
            "description": f"queued refId {msg.ctx.get('refId', '')}".strip(),
            "beaconId": msg.beacon_id,
        }

    # ----- confirmPayment -----
    async def confirm_payment(self, args: Dict[str, Any]) -> Dict[str, Any]:
        try:
            status = str(args.get("status") or "").lower()
            if status not in PAYMENT_STATUSES:
                raise ValidationError(f"status must be one of {', '.join(PAYMENT_STATUSES)}")
            kind = str(args.get("type") or "")
            if kind not in PAYMENT_TYPES:
                raise ValidationError(f"type must be one of {', '.join(PAYMENT_TYPES)}")
            data = args.get("data") or args.get("paymentData") or {}
            if not isinstance(data, dict):
                raise ValidationError("data must be an object")
            ref_id = require(data, "refId")["refId"]
            reason = str(args.get("reason") or "").strip()
            text = "Payment Confirmed" if status == "paid" else f"Payment {status}: {reason}".strip()
            self._reply(ref_id, text, source="payment_confirm", status=status)
        except BeaconError as exc:
            return error_result(exc)
        return {"status": "ok"}

    # ----- research webhook -----
    async def research_response(self, args: Dict[str, Any]) -> Dict[str, Any]:
        try:
            ref_id = str(args.get("beaconId") or args.get("refId") or "").strip()
            if not ref_id:
                raise ValidationError("missing required field(s): beaconId")
            text = str(args.get("text") or args.get("answer") or args.get("message") or "").strip()
            if not text:
                raise ValidationError("missing required field(s): text")
            self._reply(ref_id, text, source="research_response")
        except BeaconError as exc:
            return error_result(exc)
        return {"status": "ok"}

    def _reply(self, ref_id: str, text: str, *, source: str, status: Optional[str] = None) -> None:
        context = self.routing.get(ref_id)
        if context is None:
            log.warning("no routing context for beaconID %s (%s)", ref_id, source)
            raise UnknownReferenceError(ref_id)
        outbound = self.tracker.dispatch(
            self.brain_bus, ref_id, context, text, metadata={"source": source}
        )
        self.store.log_action(ref_id, source, {"deliveryId": outbound.delivery_id}, status or "ok")
        self.routing.forget(ref_id)
        log.info("%s reply queued beaconID=%s delivery=%s", source, ref_id, outbound.delivery_id)

    # ----- onboarding notice from identity -----
    async def onboard_user(self, args: Dict[str, Any]) -> Dict[str, Any]:
        try:
            fields = require(args, "gatewayType", "gatewayUser", "userId")
        except ValidationError as exc:
            return error_result(exc)
        gateway_id = str(args.get("gatewayId") or self.gateway_id)
        self.store.upsert_identity(
            fields["gatewayType"].lower(),
            gateway_id,
            fields["gatewayUser"],
            fields["userId"],
            brain_ref=fields["userId"],
        )
        log.info("onboarded %s:%s -> %s", fields["gatewayType"], fields["gatewayUser"], fields["userId"])
        return {"status": "ok"}
