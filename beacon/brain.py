import logging
from typing import Any, Dict, Optional

from .bus import CHANNEL_BEACON, MessageBus
from .continuity import ConversationResolver
from .delivery import DeliveryTracker
from .envelope import GATEWAY_TYPES, BeaconMessage
from .errors import RpcError
from .intent import (
    ROUTE_RESEARCH,
    ROUTE_SETTINGS,
    ROUTE_WALLET,
    IntentRoute,
    is_ln_address,
    normalize_ln_invoice,
    parse_amount,
    route_intent,
)
from .research import ResearchClient
from .routing import RoutingContextStore, context_from_message
from .store import BeaconStore
from .summarizer import ConversationSummarizer, history_for_reply

log = logging.getLogger(__name__)

UNKNOWN_USER_REPLY = "Sorry, you will need to setup your beacon ID to use this service."
SETTINGS_REPLY = "Sorry settings have not been implemented yet"
RESEARCH_UNAVAILABLE = "Sorry, research is not available right now. Please try again later."
WALLET_UNCLEAR = "I couldn't work out that wallet request. Send /ls to see the wallet commands."

COMMANDS_HELP = "\n".join(
    [
        "Commands:",
        "/ls - list all commands",
        "/addnick <nickname> <lnAddress> - save a nickname for a Lightning Address",
        "/nickls - list your saved nicknames",
        "/nick <nickname> <amount> [sats|$] - pay a saved nickname (USD converts via SATS_PER_DOLLAR)",
        "/newgate <gatewayType> <username> - link another gateway account to your Beacon ID",
    ]
)


class BrainWorker:
    """General-purpose processor: conversation, research hand-off and wallet commands."""

    def __init__(
        self,
        *,
        bus: MessageBus,
        store: BeaconStore,
        routing: RoutingContextStore,
        tracker: DeliveryTracker,
        resolver: ConversationResolver,
        summarizer: ConversationSummarizer,
        agents,
        identity,
        research: Optional[ResearchClient] = None,
        sats_per_dollar: int = 1000,
        gateway_id: str = "",
    ):
        self.bus = bus
        self.store = store
        self.routing = routing
        self.tracker = tracker
        self.resolver = resolver
        self.summarizer = summarizer
        self.agents = agents
        self.identity = identity
        self.research = research
        self.sats_per_dollar = sats_per_dollar
        self.gateway_id = gateway_id

    def start(self) -> None:
        self.bus.subscribe(CHANNEL_BEACON, self.handle)
        log.info("brain worker started")

    async def handle(self, msg: BeaconMessage) -> None:
        try:
            await self._process(msg)
        except Exception as exc:
            log.exception("brain failed on beaconID=%s: %s", msg.beacon_id, exc)
            self.store.log_action(msg.beacon_id, "error", {"error": str(exc)}, "failed")

    async def _process(self, msg: BeaconMessage) -> None:
        text = msg.extract_text()
        if not text:
            log.info("no text to respond to for beaconID=%s", msg.beacon_id)
            return
        log.info("message received beaconID=%s", msg.beacon_id)

        if not msg.user_id:
            msg.user_id = self._resolve_user(msg)
        if not msg.user_id:
            self._send(msg, UNKNOWN_USER_REPLY, consume=False)
            return

        parent_id = self.resolver.parent_for_reply(
            msg.source.reply_to, msg.user_id, msg.source.gateway.type
        )
        is_command = text.startswith("/")
        decision = await self.resolver.resolve(parent_id, msg.user_id, "" if is_command else text)
        msg.conversation_id = decision.conversation_id
        if parent_id:
            msg.meta["reply_to_message_id"] = parent_id
        log.debug("conversation %s (new=%s)", decision.conversation_id, decision.is_new)

        inbound_id = self.store.record_inbound(msg)
        consolidation = await self.summarizer.maybe_consolidate(decision.conversation_id)
        history = history_for_reply(self.store, decision.conversation_id, consolidation)
        self.routing.remember_inbound(msg, inbound_id)

        route = await route_intent(text, self.agents.classify_intent, history)
        log.info("route %s for beaconID=%s (%s)", route.type, msg.beacon_id, route.reason)
        if route.type == ROUTE_RESEARCH:
            await self._research(msg, route, history)
        elif route.type == ROUTE_SETTINGS:
            self._send(msg, SETTINGS_REPLY)
        elif route.type == ROUTE_WALLET:
            await self._wallet(msg, route.text or text, history)
        else:
            reply = await self.agents.reply(text, history)
            self._send(msg, reply)

    def _resolve_user(self, msg: BeaconMessage) -> Optional[str]:
        gateway = msg.source.gateway
        sender = msg.source.sender
        if not sender:
            return None
        if gateway.type:
            mapped = self.store.resolve_user(gateway.type, gateway.gateway_id, sender)
            if mapped:
                return mapped
        loose = self.store.resolve_user_loose(sender)
        if loose:
            log.debug("user resolved loosely for %s", sender)
        return loose

    def _send(self, msg: BeaconMessage, text: str, *, consume: bool = True) -> None:
        """Reply to ``msg``. ``consume`` drops the routing context afterwards."""
        context = self.routing.get(msg.beacon_id) or context_from_message(msg)
        msg.attach_response(text)
        outbound = self.tracker.dispatch(self.bus, msg.beacon_id, context, text)
        log.info("outbound queued beaconID=%s delivery=%s", msg.beacon_id, outbound.delivery_id)
        if consume:
            self.routing.forget(msg.beacon_id)

    # ----- research -----
    async def _research(self, msg: BeaconMessage, route: IntentRoute, history: str) -> None:
        if self.research is None:
            self._send(msg, RESEARCH_UNAVAILABLE)
            return
        try:
            info = await self.research.trigger(msg.beacon_id, route.text or msg.extract_text(), history)
        except RpcError as exc:
            log.warning("research trigger failed for %s: %s", msg.beacon_id, exc.message)
            self.store.log_action(msg.beacon_id, "research_trigger", {"error": exc.message}, "failed")
            self._send(msg, RESEARCH_UNAVAILABLE)
            return
        self.store.log_action(msg.beacon_id, "research_trigger", info, "ok")

    # ----- wallet -----
    async def _wallet(self, msg: BeaconMessage, text: str, history: str) -> None:
        parts = text.split()
        command = parts[0].lower() if parts else ""
        if command == "/ls":
            self._send(msg, COMMANDS_HELP)
        elif command == "/addnick":
            self._add_nickname(msg, parts[1:])
        elif command == "/nickls":
            self._list_nicknames(msg)
        elif command == "/nick":
            await self._pay_nickname(msg, parts[1:])
        elif command == "/newgate":
            self._link_gateway(msg, parts[1:])
        else:
            await self._wallet_request(msg, text, history)

    def _add_nickname(self, msg: BeaconMessage, args) -> None:
        if len(args) < 2:
            self._send(msg, "Usage: /addnick <nickname> <lnAddress>. Example: /addnick gg dergigi@primal.net")
            return
        nickname, address = args[0].lower(), args[1].strip()
        if not is_ln_address(address):
            self._send(msg, "That does not look like a valid Lightning Address. Example: name@domain.tld")
            return
        self.store.upsert_nickname(msg.user_id, nickname, address)
        self._send(msg, f"Saved nickname: {nickname} -> {address}")

    def _list_nicknames(self, msg: BeaconMessage) -> None:
        rows = self.store.list_nicknames(msg.user_id)
        if not rows:
            self._send(msg, "No nicknames saved yet. Add one with: /addnick <nickname> <lnAddress>")
            return
        lines = [f"- {nick} -> {address}" for nick, address in rows]
        self._send(msg, "Your nicknames:\n" + "\n".join(lines))

    async def _pay_nickname(self, msg: BeaconMessage, args) -> None:
        if len(args) < 2:
            self._send(msg, "Usage: /nick <nickname> <amount>. Examples: '/nick paul $5', '/nick alice 5000 sats'")
            return
        nickname = args[0].lower()
        amount = parse_amount(" ".join(args[1:]), self.sats_per_dollar)
        if not amount:
            self._send(msg, "Could not parse amount. Use $ for dollars or provide sats.")
            return
        address = self.store.get_nickname(msg.user_id, nickname)
        if not address:
            self._send(msg, f"No nickname found for '{nickname}'. Add one with /addnick {nickname} name@domain.tld")
            return
        await self._request_ln_payment(msg, address, amount, label=f"{nickname} ({address})")

    def _link_gateway(self, msg: BeaconMessage, args) -> None:
        gateway_type = args[0].lower() if args else ""
        gateway_user = args[1].strip() if len(args) > 1 else ""
        if not gateway_user or gateway_type not in GATEWAY_TYPES:
            self._send(msg, "Usage: /newgate <gatewayType> <username>. Example: /newgate web myname")
            return
        gateway_id = self.gateway_id or msg.source.gateway.gateway_id
        self.store.upsert_identity(gateway_type, gateway_id, gateway_user, msg.user_id)
        self._send(msg, f"Linked account: {gateway_type}:{gateway_user} -> {msg.user_id}")

    async def _wallet_request(self, msg: BeaconMessage, text: str, history: str) -> None:
        self.store.log_action(msg.beacon_id, "agent_request", {"agent": "payment", "preview": text[:200]})
        parsed = await self.agents.extract_payment(text, history)
        if not parsed:
            self._send(msg, WALLET_UNCLEAR)
            return
        kind = str(parsed.get("type") or "").lower()
        params: Dict[str, Any] = parsed.get("parameters") or {}
        if kind == "pay_ln_address":
            amount = parse_amount(params.get("amount"), self.sats_per_dollar, params.get("currency"))
            recipient = str(params.get("recipient") or "").strip()
            if recipient and "@" not in recipient:
                recipient = self.store.get_nickname(msg.user_id, recipient) or recipient
            if not recipient or "@" not in recipient:
                self._send(msg, "Who should I pay? Give me a Lightning Address like name@domain.tld.")
                return
            if not amount:
                self._send(msg, "How much should I send? Use $ for dollars or give an amount in sats.")
                return
            await self._request_ln_payment(msg, recipient, amount, label=recipient)
        elif kind == "pay_invoice":
            invoice = normalize_ln_invoice(str(params.get("invoice") or ""))
            if not invoice:
                self._send(msg, "I couldn't find a Lightning invoice in that message.")
                return
            result = await self._call_identity(
                msg,
                "payLnInvoice",
                {"lnInvoice": invoice, "responseTool": "confirmPayment"},
            )
            if result.get("status") == "pending":
                self._send(msg, "We've sent the request for approval to pay that Lightning invoice.", consume=False)
            else:
                self._send(msg, f"Could not request that payment: {result.get('details') or 'unknown error'}")
        elif kind == "receive_invoice":
            amount = parse_amount(params.get("amount"), self.sats_per_dollar, params.get("currency"))
            if not amount:
                self._send(msg, "Please specify an amount to generate an invoice.")
                return
            result = await self._call_identity(msg, "getLNInvoice", {"amount": amount})
            invoice = result.get("lnInvoice")
            if result.get("status") == "complete" and invoice:
                self._send(msg, f"Here's your Lightning invoice for {amount:,} sats:\n{invoice}")
            else:
                self._send(msg, f"Could not create invoice: {result.get('details') or 'please try again later'}")
        elif kind == "get_ln_address":
            result = await self._call_identity(msg, "getLNAddress", {})
            address = result.get("lnAddress")
            if result.get("status") == "complete" and address:
                self._send(msg, f"Your Lightning address is: {address}")
            else:
                self._send(msg, f"Could not fetch LN address: {result.get('details') or 'please try again later'}")
        elif kind in ("get_balance", "balance"):
            result = await self._call_identity(msg, "getBalance", {})
            if result.get("status") == "complete":
                self._send(msg, f"Your balance is {int(result.get('balance') or 0):,} sats.")
            else:
                self._send(msg, f"Could not fetch balance: {result.get('details') or 'please try again later'}")
        else:
            self._send(msg, WALLET_UNCLEAR)

    async def _request_ln_payment(self, msg: BeaconMessage, address: str, amount: int, *, label: str) -> None:
        result = await self._call_identity(
            msg,
            "payLnAddress",
            {"lnAddress": address, "amount": amount, "responseTool": "confirmPayment"},
        )
        if result.get("status") == "pending":
            self._send(
                msg,
                f"I sent a request to pay {label} {amount:,} sats. Awaiting confirmation.",
                consume=False,
            )
        else:
            self._send(msg, f"Could not request that payment: {result.get('details') or 'unknown error'}")

    async def _call_identity(self, msg: BeaconMessage, tool: str, args: Dict[str, Any]) -> Dict[str, Any]:
        payload = {"userId": msg.user_id, "refId": msg.beacon_id}
        payload.update(args)
        result = await self.identity.call(tool, payload)
        status = str(result.get("status") or "error")
        self.store.log_action(
            msg.beacon_id,
            f"identity_{tool}",
            {k: v for k, v in payload.items() if k != "userId"},
            status,
        )
        return result
