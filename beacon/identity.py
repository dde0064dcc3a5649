import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Collection, Dict, List, Optional, Sequence, Set, Tuple

from .bus import CHANNEL_BEACON, MessageBus
from .delivery import DeliveryTracker
from .envelope import BeaconMessage, GatewayInfo, OutboundMessage
from .errors import BeaconError, DuplicateRequestError, UnmappedUserError, ValidationError
from .intent import is_bolt11, is_ln_address
from .pending import IdempotencyCache, PaymentIntent, PendingConfirmationStore
from .routing import RoutingContext
from .rpc import error_result, require
from .store import ROLE_SYSTEM, BeaconStore
from .wallet import WalletResult

log = logging.getLogger(__name__)

STEP_AWAITING_LN_ADDRESS = "awaiting_ln_address"

DEFAULT_PREFERENCE = ("web", "whatsapp", "telegram", "discord")


@dataclass
class OnboardingState:
    step: str
    user_id: str


class IdentityWorker:
    """Account and payments processor.

    Owns onboarding for unknown gateway users and the two-party payment
    confirmation: a payment request is parked in the pending store under the
    human's address until they reply YES or the optional auto-approval fires.
    """

    def __init__(
        self,
        *,
        bus: MessageBus,
        store: BeaconStore,
        tracker: DeliveryTracker,
        pending: PendingConfirmationStore,
        idempotency: IdempotencyCache,
        wallet,
        brain,
        gateway_id: str = "",
        auto_approve_seconds: float = 0,
        gateway_preference: Sequence[str] = DEFAULT_PREFERENCE,
        deliverable: Optional[Collection[str]] = None,
    ):
        self.bus = bus
        self.store = store
        self.tracker = tracker
        self.pending = pending
        self.idempotency = idempotency
        self.wallet = wallet
        self.brain = brain
        self.gateway_id = gateway_id
        self.auto_approve_seconds = auto_approve_seconds
        self.gateway_preference: List[str] = list(gateway_preference)
        # Gateway types something in this process can deliver to; None accepts any.
        self.deliverable: Optional[Set[str]] = set(deliverable) if deliverable is not None else None
        self._onboarding: Dict[str, OnboardingState] = {}
        self._auto_tasks: Set[asyncio.Task] = set()

    def start(self) -> None:
        self.bus.subscribe(CHANNEL_BEACON, self.handle)
        log.info("identity worker started")

    def tools(self) -> Dict[str, Any]:
        return {
            "payLnAddress": self.pay_ln_address,
            "payLnInvoice": self.pay_ln_invoice,
            "getBalance": self.get_balance,
            "getLNInvoice": self.get_ln_invoice,
            "getLNAddress": self.get_ln_address,
        }

    async def close(self) -> None:
        for task in list(self._auto_tasks):
            task.cancel()
        if self._auto_tasks:
            await asyncio.gather(*self._auto_tasks, return_exceptions=True)

    async def wait_for_auto_approvals(self) -> None:
        while self._auto_tasks:
            await asyncio.gather(*list(self._auto_tasks), return_exceptions=True)

    def claims(self, sender: str) -> bool:
        """True when the next message from ``sender`` belongs to identity (setup or a YES)."""
        return sender in self._onboarding or self.pending.has_pending(sender)

    @property
    def auto_approvals_scheduled(self) -> int:
        return len(self._auto_tasks)

    # ----- inbound -----
    async def handle(self, msg: BeaconMessage) -> None:
        try:
            await self._process(msg)
        except Exception as exc:
            log.exception("identity failed on beaconID=%s: %s", msg.beacon_id, exc)

    async def _process(self, msg: BeaconMessage) -> None:
        sender = msg.source.sender
        text = msg.extract_text()
        if not sender or not text:
            return
        log.info("identity message from %s beaconID=%s", sender, msg.beacon_id)
        if sender in self._onboarding or not self.store.is_known_gateway_user(sender):
            await self._onboard(msg, text)
            return
        if text.strip().lower() == "yes":
            await self._confirm(msg)
            return
        log.info("no identity handler for message from %s", sender)

    def _notify(
        self,
        to: str,
        gateway: GatewayInfo,
        text: str,
        *,
        beacon_id: str,
        user_id: Optional[str] = None,
        quoted_message_id: Optional[str] = None,
    ) -> OutboundMessage:
        context = RoutingContext(
            to=to,
            gateway=gateway,
            quoted_message_id=quoted_message_id,
            conversation_id=f"identity:{to}",
            user_id=user_id,
        )
        return self.tracker.dispatch(self.bus, beacon_id, context, text, role=ROLE_SYSTEM)

    # ----- onboarding -----
    async def _onboard(self, msg: BeaconMessage, text: str) -> None:
        sender = msg.source.sender
        gateway = msg.source.gateway
        try:
            state = self._onboarding.get(sender)
            if state is None:
                user_id = f"user-{uuid.uuid4()}"
                self.store.upsert_identity(
                    gateway.type, self.gateway_id or gateway.gateway_id, sender, user_id, identity_ref=user_id
                )
                self._onboarding[sender] = OnboardingState(STEP_AWAITING_LN_ADDRESS, user_id)
                log.info("onboarding started for %s -> %s", sender, user_id)
                self._notify(
                    sender,
                    gateway,
                    "Welcome to Beacon! Let's set up your account. What is your Lightning address? "
                    "If you don't have one just say No.",
                    beacon_id=msg.beacon_id,
                    user_id=user_id,
                )
                return

            if state.step == STEP_AWAITING_LN_ADDRESS:
                answer = text.strip()
                if answer.lower() == "no":
                    address = None
                elif is_ln_address(answer):
                    address = answer
                else:
                    self._notify(
                        sender,
                        gateway,
                        "That doesn't look like a Lightning address (name@domain.tld). Try again, or say No.",
                        beacon_id=msg.beacon_id,
                        user_id=state.user_id,
                    )
                    return
                self.store.save_wallet(state.user_id, address)
                del self._onboarding[sender]
                result = await self.brain.call(
                    "onboardUser",
                    {
                        "gatewayType": gateway.type,
                        "gatewayId": self.gateway_id or gateway.gateway_id,
                        "gatewayUser": sender,
                        "userId": state.user_id,
                    },
                )
                if result.get("status") != "ok":
                    log.warning("brain did not accept new user %s: %s", state.user_id, result.get("details"))
                self._notify(
                    sender,
                    gateway,
                    "We've set up your account and the Beacon Brain will be in touch.",
                    beacon_id=msg.beacon_id,
                    user_id=state.user_id,
                )
                log.info("onboarding complete for %s", sender)
        except Exception as exc:
            log.exception("onboarding failed for %s: %s", sender, exc)
            self._onboarding.pop(sender, None)
            self._notify(
                sender,
                gateway,
                "Sorry, something went wrong during setup. Please start over.",
                beacon_id=msg.beacon_id,
            )

    # ----- confirmation -----
    async def _confirm(self, msg: BeaconMessage) -> None:
        sender = msg.source.sender
        intent = self.pending.retrieve_and_clear(sender)
        if intent is None:
            log.info("YES from %s with nothing pending; ignoring", sender)
            return
        log.info("confirmation from %s for refId=%s", sender, intent.ref_id)
        await self._settle(intent, sender, msg.source.gateway, auto=False, quoted_message_id=msg.source.message_id)

    async def _settle(
        self,
        intent: PaymentIntent,
        to: str,
        gateway: GatewayInfo,
        *,
        auto: bool,
        quoted_message_id: Optional[str] = None,
    ) -> WalletResult:
        try:
            result = await self.wallet.execute_payment(intent)
        except Exception as exc:
            log.warning("payment %s failed: %s", intent.ref_id, exc)
            result = WalletResult(success=False, error=str(exc))

        if result.success:
            if auto:
                text = f"(Auto) Payment successful! Receipt: {result.receipt}"
                reason = f"Auto-approved payment. Receipt: {result.receipt}"
            else:
                text = f"Payment confirmed! Your receipt is: {result.receipt}"
                reason = f"Successful payment. Receipt: {result.receipt}"
            status = "paid"
        else:
            prefix = "(Auto) " if auto else ""
            text = f"{prefix}Payment failed: {result.error}"
            reason = result.error or "Payment failed"
            status = "rejected"
        self._notify(
            to,
            gateway,
            text,
            beacon_id=intent.ref_id,
            user_id=intent.user_id,
            quoted_message_id=quoted_message_id,
        )
        await self._report(status, reason, intent)
        return result

    async def _report(self, status: str, reason: str, intent: PaymentIntent) -> None:
        tool = intent.response_tool or "confirmPayment"
        args = {
            "status": status,
            "reason": reason,
            "type": "payLnAddress" if intent.type == "ln_address" else "payLnInvoice",
            "data": {
                "refId": intent.ref_id,
                "userId": intent.user_id or "",
                "lnAddress": intent.ln_address,
                "lnInvoice": intent.invoice,
                "amount": intent.amount,
                "responseTool": tool,
            },
        }
        result = await self.brain.call(tool, args)
        if result.get("status") != "ok":
            log.warning("%s for refId=%s not accepted: %s", tool, intent.ref_id, result.get("details"))

    # ----- auto approval -----
    def _schedule_auto_approval(self, address: str, gateway: GatewayInfo) -> None:
        if self.auto_approve_seconds <= 0:
            return
        log.info("auto-approval for %s in %ss unless they reply first", address, self.auto_approve_seconds)
        task = asyncio.get_running_loop().create_task(self._auto_approve(address, gateway))
        self._auto_tasks.add(task)
        task.add_done_callback(self._auto_tasks.discard)

    async def _auto_approve(self, address: str, gateway: GatewayInfo) -> None:
        await asyncio.sleep(self.auto_approve_seconds)
        try:
            intent = self.pending.retrieve_and_clear(address)
            if intent is None:
                log.info("auto-approval for %s skipped; nothing pending", address)
                return
            result = await self._settle(intent, address, gateway, auto=True)
            log.info("auto-approval for refId=%s finished: %s", intent.ref_id, "paid" if result.success else "rejected")
        except Exception as exc:
            log.exception("auto-approval for %s failed: %s", address, exc)

    # ----- tools -----
    def _approval_target(self, user_id: str) -> Tuple[str, GatewayInfo]:
        """Pick the account the approval prompt goes to.

        Only gateway types with a live deliverer are considered, otherwise the
        prompt would sit queued while the caller is told the payment is pending.
        """
        if self.deliverable is None:
            candidates = list(self.gateway_preference)
        else:
            candidates = [t for t in self.gateway_preference if t in self.deliverable]
            candidates += sorted(self.deliverable.difference(candidates))
        for gateway_type in candidates:
            link = self.store.find_gateway_user(user_id, gateway_type)
            if link:
                return link.gateway_user, GatewayInfo(link.gateway_type, link.gateway_id)
        if self.deliverable is None:
            link = self.store.find_gateway_user(user_id)
            if link:
                return link.gateway_user, GatewayInfo(link.gateway_type, link.gateway_id)
        raise UnmappedUserError(user_id)

    def _open_confirmation(self, intent: PaymentIntent, prompt: str) -> Dict[str, Any]:
        address, gateway = self._approval_target(intent.user_id or "")
        self.idempotency.mark_processed(intent.ref_id)
        intent.reply_to = address
        intent.gateway = gateway.to_dict()
        self.pending.store(address, intent)
        self._notify(address, gateway, prompt, beacon_id=intent.ref_id, user_id=intent.user_id)
        self._schedule_auto_approval(address, gateway)
        self.store.log_action(intent.ref_id, f"confirm_{intent.type}", {"to": address, "gateway": gateway.type}, "pending")
        return {"status": "pending", "details": f"Awaiting user confirmation via {gateway.type}."}

    def _window_text(self) -> str:
        minutes = max(1, round(self.pending.timeout / 60))
        return f"{minutes} minute{'s' if minutes != 1 else ''}"

    async def pay_ln_address(self, args: Dict[str, Any]) -> Dict[str, Any]:
        try:
            fields = require(args, "userId", "refId", "lnAddress")
            amount = _positive_int(args.get("amount"))
            if amount is None:
                raise ValidationError("amount must be a positive number of sats")
            if self.idempotency.is_processed(fields["refId"]):
                raise DuplicateRequestError(fields["refId"])
            intent = PaymentIntent(
                type="ln_address",
                ref_id=fields["refId"],
                amount=amount,
                ln_address=fields["lnAddress"],
                user_id=fields["userId"],
                response_tool=str(args.get("responseTool") or "confirmPayment"),
            )
            prompt = (
                f"Approve payment to Lightning Address '{intent.ln_address}' for {amount} sats? "
                f"Reply YES within {self._window_text()} to confirm."
            )
            return self._open_confirmation(intent, prompt)
        except BeaconError as exc:
            log.info("payLnAddress rejected (%s): %s", exc.code, exc.message)
            return error_result(exc)

    async def pay_ln_invoice(self, args: Dict[str, Any]) -> Dict[str, Any]:
        try:
            fields = require(args, "userId", "refId", "lnInvoice")
            if not is_bolt11(fields["lnInvoice"]):
                raise ValidationError("Invalid BOLT11 invoice provided.")
            if self.idempotency.is_processed(fields["refId"]):
                raise DuplicateRequestError(fields["refId"])
            intent = PaymentIntent(
                type="ln_invoice",
                ref_id=fields["refId"],
                invoice=fields["lnInvoice"].lower(),
                user_id=fields["userId"],
                response_tool=str(args.get("responseTool") or "confirmPayment"),
            )
            prompt = f"Approve payment for Lightning invoice? Reply YES within {self._window_text()} to confirm."
            return self._open_confirmation(intent, prompt)
        except BeaconError as exc:
            log.info("payLnInvoice rejected (%s): %s", exc.code, exc.message)
            return error_result(exc)

    async def get_balance(self, args: Dict[str, Any]) -> Dict[str, Any]:
        try:
            fields = require(args, "userId")
        except ValidationError as exc:
            return error_result(exc)
        result = await self.wallet.get_balance(fields["userId"])
        if not result.success:
            return {"status": "error", "details": result.error}
        return {"status": "complete", "balance": int(result.value or 0)}

    async def get_ln_invoice(self, args: Dict[str, Any]) -> Dict[str, Any]:
        try:
            fields = require(args, "userId")
            amount = _positive_int(args.get("amount"))
            if amount is None:
                raise ValidationError("amount must be a positive number of sats")
        except ValidationError as exc:
            return error_result(exc)
        result = await self.wallet.create_invoice(fields["userId"], amount)
        if not result.success:
            return {"status": "error", "details": result.error}
        return {"status": "complete", "lnInvoice": result.value, "amount": amount}

    async def get_ln_address(self, args: Dict[str, Any]) -> Dict[str, Any]:
        try:
            fields = require(args, "userId")
        except ValidationError as exc:
            return error_result(exc)
        result = await self.wallet.get_ln_address(fields["userId"])
        if not result.success:
            return {"status": "error", "details": result.error}
        return {"status": "complete", "lnAddress": result.value}


def _positive_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = int(round(float(value)))
    except (TypeError, ValueError):
        return None
    return number if number > 0 else None
