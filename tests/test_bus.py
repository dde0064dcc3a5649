import pytest

from beacon.bus import CHANNEL_BEACON, CHANNEL_OUT, MessageBus


@pytest.mark.asyncio
async def test_crashing_handler_does_not_affect_others():
    bus = MessageBus("test")
    seen = []

    async def broken(payload):
        raise RuntimeError("boom")

    async def healthy(payload):
        seen.append(payload)

    bus.subscribe(CHANNEL_BEACON, broken)
    bus.subscribe(CHANNEL_BEACON, healthy)

    assert bus.publish(CHANNEL_BEACON, "one") == 2
    assert bus.publish(CHANNEL_BEACON, "two") == 2
    await bus.drain()

    assert seen == ["one", "two"]
    assert bus.pending == 0


@pytest.mark.asyncio
async def test_publish_without_subscribers_is_dropped():
    bus = MessageBus("test")
    assert bus.publish(CHANNEL_OUT, "nobody") == 0


@pytest.mark.asyncio
async def test_drain_waits_for_chained_publishes():
    bus = MessageBus("test")
    delivered = []

    async def worker(payload):
        bus.publish(CHANNEL_OUT, f"reply to {payload}")

    async def adapter(payload):
        delivered.append(payload)

    bus.subscribe(CHANNEL_BEACON, worker)
    bus.subscribe(CHANNEL_OUT, adapter)
    bus.publish(CHANNEL_BEACON, "hello")
    await bus.drain()

    assert delivered == ["reply to hello"]


@pytest.mark.asyncio
async def test_unsubscribe_stops_delivery():
    bus = MessageBus("test")
    seen = []

    async def handler(payload):
        seen.append(payload)

    bus.subscribe(CHANNEL_OUT, handler)
    bus.unsubscribe(CHANNEL_OUT, handler)
    bus.unsubscribe(CHANNEL_OUT, handler)
    assert bus.publish(CHANNEL_OUT, "x") == 0
    assert seen == []


@pytest.mark.asyncio
async def test_subscribers_observe_publishes_in_order():
    bus = MessageBus("test")
    first, second = [], []

    async def record_first(payload):
        first.append(payload)

    async def record_second(payload):
        second.append(payload)

    bus.subscribe(CHANNEL_BEACON, record_first)
    bus.subscribe(CHANNEL_BEACON, record_second)
    for i in range(10):
        bus.publish(CHANNEL_BEACON, i)
    await bus.drain()

    assert first == list(range(10))
    assert second == list(range(10))
