import pytest

from beacon.agents import IntentDecision
from beacon.brain import COMMANDS_HELP, SETTINGS_REPLY, UNKNOWN_USER_REPLY, BrainWorker
from beacon.bus import CHANNEL_BEACON
from beacon.continuity import ConversationResolver
from beacon.identity import IdentityWorker
from beacon.pending import IdempotencyCache, PendingConfirmationStore
from beacon.rpc import BrainTools
from beacon.rpc_client import LocalRpcClient
from beacon.store import DELIVERY_QUEUED
from beacon.summarizer import ConversationSummarizer
from conftest import GATEWAY_ID, make_message


class Beacon:
    """Brain and identity wired together in one process, the way ``main.py all`` runs them."""

    def __init__(self, store, tracker, routing, agents, wallet, brain_bus, identity_bus, auto=0.0):
        self.brain_bus = brain_bus
        self.identity_bus = identity_bus
        self.routing = routing
        tools = BrainTools(store, routing, tracker, {"brain": brain_bus, "identity": identity_bus}, gateway_id=GATEWAY_ID)
        identity_client = LocalRpcClient()
        self.identity = IdentityWorker(
            bus=identity_bus,
            store=store,
            tracker=tracker,
            pending=PendingConfirmationStore(),
            idempotency=IdempotencyCache(),
            wallet=wallet,
            brain=LocalRpcClient(tools.tools()),
            gateway_id=GATEWAY_ID,
            auto_approve_seconds=auto,
        )
        for name, tool in self.identity.tools().items():
            identity_client.register(name, tool)
        self.brain = BrainWorker(
            bus=brain_bus,
            store=store,
            routing=routing,
            tracker=tracker,
            resolver=ConversationResolver(store, agents.classify_continuation),
            summarizer=ConversationSummarizer(store, agents.summarize),
            agents=agents,
            identity=identity_client,
            gateway_id=GATEWAY_ID,
        )
        self.brain.start()
        self.identity.start()

    async def send(self, text, sender="111", bus=None, **kwargs):
        msg = make_message(text, sender=sender, **kwargs)
        (bus or self.brain_bus).publish(CHANNEL_BEACON, msg)
        await self.settle()
        return msg

    async def settle(self):
        await self.brain_bus.drain()
        await self.identity_bus.drain()
        await self.brain_bus.drain()


@pytest.fixture
def mapped(store):
    store.upsert_identity("telegram", GATEWAY_ID, "111", "user-1")


@pytest.fixture
def beacon(store, tracker, routing, agents, wallet, brain_bus, identity_bus):
    return Beacon(store, tracker, routing, agents, wallet, brain_bus, identity_bus)


@pytest.mark.asyncio
async def test_conversation_reply_is_recorded(mapped, beacon, store, agents, brain_out):
    msg = await beacon.send("hello there", message_id="tg-1")

    assert brain_out.texts == ["hello from beacon"]
    outbound = brain_out.items[0]
    assert outbound.to == "111"
    assert outbound.quoted_message_id == "tg-1"
    assert outbound.beacon_id == msg.beacon_id
    assert store.get_delivery(outbound.delivery_id).status == DELIVERY_QUEUED
    stored = store.get_message(outbound.message_id)
    inbound = store.get_message(stored.reply_to_message_id)
    assert inbound.text == "hello there"
    assert inbound.conversation_id == stored.conversation_id
    assert msg.beacon_id not in beacon.routing
    assert agents.calls == ["summarize", "intent", "reply"]


@pytest.mark.asyncio
async def test_unknown_user_is_told_to_set_up(beacon, brain_out, agents):
    await beacon.send("hello", sender="999")
    assert brain_out.texts == [UNKNOWN_USER_REPLY]
    assert agents.calls == []


@pytest.mark.asyncio
async def test_reply_to_outbound_continues_conversation(mapped, beacon, store, tracker, brain_out):
    await beacon.send("first")
    first = brain_out.items[0]
    tracker.mark_sent(first.delivery_id, "tg-500")

    await beacon.send("second", reply_to="tg-500")
    second = brain_out.items[1]
    conv_first = store.get_message(first.message_id).conversation_id
    assert store.get_message(second.message_id).conversation_id == conv_first


@pytest.mark.asyncio
async def test_reply_pointer_does_not_cross_users(mapped, beacon, store, brain_out):
    store.upsert_identity("telegram", GATEWAY_ID, "222", "user-2")
    await beacon.send("mine", sender="111", message_id="42")
    await beacon.send("also 42 here", sender="222", reply_to="42")

    first, second = brain_out.items
    conv_first = store.get_message(first.message_id).conversation_id
    conv_second = store.get_message(second.message_id).conversation_id
    assert conv_first != conv_second
    assert store.get_message(second.message_id).user_id == "user-2"


@pytest.mark.asyncio
async def test_settings_and_help_commands(mapped, beacon, brain_out, agents):
    await beacon.send("/settings")
    await beacon.send("/ls")
    assert brain_out.texts == [SETTINGS_REPLY, COMMANDS_HELP]
    assert "intent" not in agents.calls


@pytest.mark.asyncio
async def test_research_without_service_apologises(mapped, beacon, brain_out):
    await beacon.send("/research best coffee in town")
    assert brain_out.texts[-1].startswith("Sorry, research is not available")


@pytest.mark.asyncio
async def test_nickname_commands(mapped, beacon, store, brain_out, identity_out, wallet):
    await beacon.send("/addnick Alice alice@wallet.test")
    await beacon.send("/nickls")
    await beacon.send("/nick alice 500 sats")

    assert brain_out.texts[0] == "Saved nickname: alice -> alice@wallet.test"
    assert brain_out.texts[1] == "Your nicknames:\n- alice -> alice@wallet.test"
    assert brain_out.texts[2] == "I sent a request to pay alice (alice@wallet.test) 500 sats. Awaiting confirmation."
    assert identity_out.texts[0].startswith("Approve payment to Lightning Address 'alice@wallet.test' for 500 sats?")
    assert wallet.payments == []


@pytest.mark.asyncio
async def test_newgate_links_another_account(mapped, beacon, store, brain_out):
    await beacon.send("/newgate web alice-web")
    assert brain_out.texts == ["Linked account: web:alice-web -> user-1"]
    assert store.resolve_user("web", GATEWAY_ID, "alice-web") == "user-1"


@pytest.mark.asyncio
async def test_pay_then_yes_settles_once(mapped, beacon, store, agents, wallet, brain_out, identity_out):
    agents.intent = IntentDecision("wallet", 95)
    agents.payment = {"type": "pay_ln_address", "parameters": {"recipient": "alice@example", "amount": 1000}}

    request = await beacon.send("pay alice@example 1000 sats")
    assert brain_out.texts == ["I sent a request to pay alice@example 1,000 sats. Awaiting confirmation."]
    assert request.beacon_id in beacon.routing
    assert identity_out.texts == [
        "Approve payment to Lightning Address 'alice@example' for 1000 sats? Reply YES within 5 minutes to confirm."
    ]

    await beacon.send("YES", bus=beacon.identity_bus)
    await beacon.send("YES", bus=beacon.identity_bus)

    assert wallet.payments == [request.beacon_id]
    assert identity_out.texts[-1] == f"Payment confirmed! Your receipt is: receipt-{request.beacon_id}"
    assert brain_out.texts[-1] == "Payment Confirmed"
    assert brain_out.items[-1].beacon_id == request.beacon_id
    assert request.beacon_id not in beacon.routing
    types = [a["type"] for a in store.list_actions(request.beacon_id)]
    assert "identity_payLnAddress" in types
    assert "payment_confirm" in types


@pytest.mark.asyncio
async def test_pay_with_auto_approval_settles_once(
    mapped, store, tracker, routing, agents, wallet, brain_bus, identity_bus, brain_out, identity_out
):
    beacon = Beacon(store, tracker, routing, agents, wallet, brain_bus, identity_bus, auto=0.2)
    agents.intent = IntentDecision("wallet", 95)
    agents.payment = {"type": "pay_ln_address", "parameters": {"recipient": "alice@example", "amount": "1000"}}

    request = await beacon.send("pay alice@example 1000 sats")
    assert beacon.identity.auto_approvals_scheduled == 1
    await beacon.identity.wait_for_auto_approvals()
    await beacon.settle()
    await beacon.send("YES", bus=identity_bus)

    assert wallet.payments == [request.beacon_id]
    assert identity_out.texts[-1].startswith("(Auto) Payment successful!")
    assert brain_out.texts.count("Payment Confirmed") == 1


@pytest.mark.asyncio
async def test_unclear_wallet_request(mapped, beacon, agents, brain_out):
    agents.intent = IntentDecision("wallet", 95)
    agents.payment = None
    await beacon.send("do the money thing")
    assert brain_out.texts[-1].startswith("I couldn't work out that wallet request.")


@pytest.mark.asyncio
async def test_balance_and_invoice_requests(mapped, beacon, agents, brain_out):
    agents.intent = IntentDecision("wallet", 95)
    agents.payment = {"type": "get_balance", "parameters": {}}
    await beacon.send("what's my balance?")
    agents.payment = {"type": "receive_invoice", "parameters": {"amount": "$2"}}
    await beacon.send("invoice me $2")

    assert brain_out.texts[0] == "Your balance is 5,000 sats."
    assert brain_out.texts[1] == "Here's your Lightning invoice for 2,000 sats:\nlnbc2000n1test"
