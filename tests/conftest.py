from typing import Any, Dict, List, Optional

import pytest

from beacon.agents import IntentDecision
from beacon.bus import CHANNEL_OUT, MessageBus
from beacon.delivery import DeliveryTracker
from beacon.envelope import BeaconMessage, GatewayInfo, Source
from beacon.routing import RoutingContextStore
from beacon.store import BeaconStore
from beacon.wallet import WalletResult

GATEWAY_ID = "gw-test"


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeAgents:
    """Scripted stand-in for the model client."""

    def __init__(self):
        self.intent = IntentDecision("conversation", 90)
        self.payment: Optional[Dict[str, Any]] = None
        self.reply_text = "hello from beacon"
        self.summary = "summary so far"
        self.continuation: Optional[Dict[str, Any]] = None
        self.calls: List[str] = []

    async def classify_continuation(self, candidates, message):
        self.calls.append("continuation")
        return self.continuation

    async def summarize(self, previous, transcript, max_chars):
        self.calls.append("summarize")
        return self.summary

    async def classify_intent(self, message, context=""):
        self.calls.append("intent")
        return self.intent

    async def extract_payment(self, message, context=""):
        self.calls.append("payment")
        return self.payment

    async def reply(self, message, history=""):
        self.calls.append("reply")
        return self.reply_text


class CountingWallet:
    def __init__(self, succeed: bool = True):
        self.succeed = succeed
        self.payments: List[str] = []

    async def execute_payment(self, intent):
        self.payments.append(intent.ref_id)
        if not self.succeed:
            return WalletResult(success=False, error="insufficient funds")
        return WalletResult(success=True, receipt=f"receipt-{intent.ref_id}")

    async def get_balance(self, user_id):
        return WalletResult(success=True, value="5000")

    async def create_invoice(self, user_id, amount):
        return WalletResult(success=True, value=f"lnbc{amount}n1test")

    async def get_ln_address(self, user_id):
        return WalletResult(success=True, value="me@wallet.test")


class Collector:
    def __init__(self):
        self.items: List[Any] = []

    async def __call__(self, payload):
        self.items.append(payload)

    @property
    def texts(self) -> List[str]:
        return [item.body for item in self.items]


def make_message(
    text: str,
    sender: str = "111",
    gateway_type: str = "telegram",
    gateway_id: str = GATEWAY_ID,
    message_id: Optional[str] = None,
    reply_to: Optional[str] = None,
    user_id: Optional[str] = None,
) -> BeaconMessage:
    source = Source(
        gateway=GatewayInfo(gateway_type, gateway_id),
        sender=sender,
        text=text,
        message_id=message_id,
        reply_to=reply_to,
    )
    msg = BeaconMessage.new(source)
    if user_id:
        msg.user_id = user_id
    return msg


@pytest.fixture
def store(tmp_path):
    db = BeaconStore(str(tmp_path / "beacon.sqlite"))
    yield db
    db.close()


@pytest.fixture
def tracker(store):
    return DeliveryTracker(store)


@pytest.fixture
def routing():
    return RoutingContextStore(capacity=50)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def agents():
    return FakeAgents()


@pytest.fixture
def wallet():
    return CountingWallet()


@pytest.fixture
def brain_bus():
    return MessageBus("brain")


@pytest.fixture
def identity_bus():
    return MessageBus("identity")


@pytest.fixture
def brain_out(brain_bus):
    collector = Collector()
    brain_bus.subscribe(CHANNEL_OUT, collector)
    return collector


@pytest.fixture
def identity_out(identity_bus):
    collector = Collector()
    identity_bus.subscribe(CHANNEL_OUT, collector)
    return collector
