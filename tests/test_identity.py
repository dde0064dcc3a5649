import asyncio

import pytest

from beacon.bus import CHANNEL_BEACON
from beacon.identity import IdentityWorker
from beacon.pending import IdempotencyCache, PendingConfirmationStore
from beacon.rpc_client import LocalRpcClient
from conftest import GATEWAY_ID, make_message


class BrainStub:
    def __init__(self):
        self.calls = []

    async def call(self, tool, args):
        self.calls.append((tool, args))
        return {"status": "ok"}


@pytest.fixture
def brain():
    return BrainStub()


def _worker(store, tracker, identity_bus, wallet, brain, auto=0.0, deliverable=None):
    worker = IdentityWorker(
        bus=identity_bus,
        store=store,
        tracker=tracker,
        pending=PendingConfirmationStore(timeout=300),
        idempotency=IdempotencyCache(ttl=300),
        wallet=wallet,
        brain=brain,
        gateway_id=GATEWAY_ID,
        auto_approve_seconds=auto,
        deliverable=deliverable,
    )
    worker.start()
    return worker


def _pay_args(ref_id="ref-1", amount=1000):
    return {"userId": "user-1", "refId": ref_id, "lnAddress": "alice@wallet.test", "amount": amount}


async def _yes(identity_bus, sender="111"):
    identity_bus.publish(CHANNEL_BEACON, make_message("YES", sender=sender))
    await identity_bus.drain()


@pytest.fixture
def mapped(store):
    store.upsert_identity("telegram", GATEWAY_ID, "111", "user-1")


@pytest.mark.asyncio
async def test_pay_request_prompts_the_user(mapped, store, tracker, identity_bus, identity_out, wallet, brain):
    worker = _worker(store, tracker, identity_bus, wallet, brain)
    result = await worker.pay_ln_address(_pay_args())
    await identity_bus.drain()

    assert result == {"status": "pending", "details": "Awaiting user confirmation via telegram."}
    assert identity_out.texts == [
        "Approve payment to Lightning Address 'alice@wallet.test' for 1000 sats? Reply YES within 5 minutes to confirm."
    ]
    assert identity_out.items[0].to == "111"
    assert wallet.payments == []
    assert worker.claims("111")


@pytest.mark.asyncio
async def test_duplicate_ref_is_rejected(mapped, store, tracker, identity_bus, wallet, brain):
    worker = _worker(store, tracker, identity_bus, wallet, brain)
    await worker.pay_ln_address(_pay_args())
    result = await worker.pay_ln_address(_pay_args())
    assert result == {"status": "error", "details": "Duplicate request.", "code": "duplicate_request"}


@pytest.mark.asyncio
async def test_unmapped_user_cannot_pay(store, tracker, identity_bus, wallet, brain):
    worker = _worker(store, tracker, identity_bus, wallet, brain)
    result = await worker.pay_ln_address(_pay_args())
    assert result["status"] == "error"
    assert result["code"] == "unmapped_user"


@pytest.mark.asyncio
async def test_prompt_skips_gateways_nothing_delivers_to(store, tracker, identity_bus, identity_out, wallet, brain):
    store.upsert_identity("web", "web-gw", "web-user", "user-1")
    store.upsert_identity("telegram", GATEWAY_ID, "111", "user-1")
    worker = _worker(store, tracker, identity_bus, wallet, brain, deliverable={"telegram", "discord"})

    result = await worker.pay_ln_address(_pay_args())
    await identity_bus.drain()

    assert result["status"] == "pending"
    assert identity_out.items[0].to == "111"
    assert identity_out.items[0].gateway.type == "telegram"


@pytest.mark.asyncio
async def test_user_reachable_only_on_undelivered_gateway_cannot_pay(
    store, tracker, identity_bus, identity_out, wallet, brain
):
    store.upsert_identity("web", "web-gw", "web-user", "user-1")
    worker = _worker(store, tracker, identity_bus, wallet, brain, auto=0.05, deliverable={"telegram"})

    result = await worker.pay_ln_address(_pay_args())
    await asyncio.sleep(0.1)
    await identity_bus.drain()

    assert result["code"] == "unmapped_user"
    assert identity_out.items == []
    assert len(worker.pending) == 0
    assert wallet.payments == []
    assert not worker.claims("web-user")


@pytest.mark.asyncio
@pytest.mark.parametrize("amount", [0, -5, "lots", None])
async def test_amount_must_be_positive(mapped, store, tracker, identity_bus, wallet, brain, amount):
    worker = _worker(store, tracker, identity_bus, wallet, brain)
    result = await worker.pay_ln_address(_pay_args(amount=amount))
    assert result["code"] == "validation_error"


@pytest.mark.asyncio
async def test_invoice_must_look_like_bolt11(mapped, store, tracker, identity_bus, wallet, brain):
    worker = _worker(store, tracker, identity_bus, wallet, brain)
    result = await worker.pay_ln_invoice({"userId": "user-1", "refId": "ref-1", "lnInvoice": "hello"})
    assert result["details"] == "Invalid BOLT11 invoice provided."


@pytest.mark.asyncio
async def test_yes_pays_once_and_reports(mapped, store, tracker, identity_bus, identity_out, wallet, brain):
    worker = _worker(store, tracker, identity_bus, wallet, brain)
    await worker.pay_ln_address(_pay_args())

    await _yes(identity_bus)
    await _yes(identity_bus)

    assert wallet.payments == ["ref-1"]
    assert identity_out.texts[-1] == "Payment confirmed! Your receipt is: receipt-ref-1"
    tool, args = brain.calls[-1]
    assert tool == "confirmPayment"
    assert args["status"] == "paid"
    assert args["type"] == "payLnAddress"
    assert args["data"]["refId"] == "ref-1"
    assert not worker.claims("111")


@pytest.mark.asyncio
async def test_failed_payment_reports_rejection(mapped, store, tracker, identity_bus, identity_out, brain):
    from conftest import CountingWallet

    worker = _worker(store, tracker, identity_bus, CountingWallet(succeed=False), brain)
    await worker.pay_ln_address(_pay_args())
    await _yes(identity_bus)

    assert identity_out.texts[-1] == "Payment failed: insufficient funds"
    assert brain.calls[-1][1]["status"] == "rejected"
    assert brain.calls[-1][1]["reason"] == "insufficient funds"


@pytest.mark.asyncio
async def test_auto_approval_pays_exactly_once(mapped, store, tracker, identity_bus, identity_out, wallet, brain):
    worker = _worker(store, tracker, identity_bus, wallet, brain, auto=0.01)
    await worker.pay_ln_address(_pay_args())
    assert worker.auto_approvals_scheduled == 1

    await worker.wait_for_auto_approvals()
    await _yes(identity_bus)

    assert wallet.payments == ["ref-1"]
    assert identity_out.texts[-1] == "(Auto) Payment successful! Receipt: receipt-ref-1"
    assert [args["status"] for _, args in brain.calls] == ["paid"]


@pytest.mark.asyncio
async def test_yes_before_auto_approval_wins(mapped, store, tracker, identity_bus, wallet, brain):
    worker = _worker(store, tracker, identity_bus, wallet, brain, auto=0.2)
    await worker.pay_ln_address(_pay_args())

    await _yes(identity_bus)
    await worker.wait_for_auto_approvals()

    assert wallet.payments == ["ref-1"]
    assert len(brain.calls) == 1


@pytest.mark.asyncio
async def test_close_cancels_scheduled_auto_approvals(mapped, store, tracker, identity_bus, wallet, brain):
    worker = _worker(store, tracker, identity_bus, wallet, brain, auto=60)
    await worker.pay_ln_address(_pay_args())
    await worker.close()
    await asyncio.sleep(0)
    assert worker.auto_approvals_scheduled == 0
    assert wallet.payments == []


@pytest.mark.asyncio
async def test_onboarding_creates_user_and_notifies_brain(store, tracker, identity_bus, identity_out, wallet, brain):
    worker = _worker(store, tracker, identity_bus, wallet, brain)

    identity_bus.publish(CHANNEL_BEACON, make_message("hi", sender="222"))
    await identity_bus.drain()
    assert identity_out.texts[-1].startswith("Welcome to Beacon!")
    assert worker.claims("222")

    identity_bus.publish(CHANNEL_BEACON, make_message("not an address", sender="222"))
    await identity_bus.drain()
    assert "doesn't look like a Lightning address" in identity_out.texts[-1]

    identity_bus.publish(CHANNEL_BEACON, make_message("bob@wallet.test", sender="222"))
    await identity_bus.drain()

    user_id = store.resolve_user("telegram", GATEWAY_ID, "222")
    assert user_id.startswith("user-")
    assert store.get_ln_address(user_id) == "bob@wallet.test"
    tool, args = brain.calls[-1]
    assert tool == "onboardUser"
    assert args["userId"] == user_id
    assert identity_out.texts[-1] == "We've set up your account and the Beacon Brain will be in touch."
    assert not worker.claims("222")


@pytest.mark.asyncio
async def test_wallet_queries(mapped, store, tracker, identity_bus, wallet):
    worker = _worker(store, tracker, identity_bus, wallet, LocalRpcClient())
    assert await worker.get_balance({"userId": "user-1"}) == {"status": "complete", "balance": 5000}
    invoice = await worker.get_ln_invoice({"userId": "user-1", "amount": 200})
    assert invoice["lnInvoice"] == "lnbc200n1test"
    assert (await worker.get_ln_address({"userId": "user-1"}))["lnAddress"] == "me@wallet.test"
    assert (await worker.get_balance({}))["status"] == "error"
