import json
from uuid import uuid4

from redis.exceptions import ConnectionError as RedisConnectionError

from inboxflow.shared.infrastructure.messaging.event_bus import (
    MESSAGE_NEW,
    REALTIME_CHANNEL,
    WILDCARD,
    EventBus,
    RealtimeEvent,
    RedisEventPublisher,
)


class FakeRedis:
    def __init__(self, fail=False):
        self.fail = fail
        self.published = []

    async def publish(self, channel, message):
        if self.fail:
            raise RedisConnectionError("down")
        self.published.append((channel, message))


async def test_handlers_receive_typed_and_wildcard_events():
    bus = EventBus()
    typed, everything = [], []

    async def on_message(event):
        typed.append(event)

    async def on_any(event):
        everything.append(event)

    bus.subscribe(MESSAGE_NEW, on_message)
    bus.subscribe(WILDCARD, on_any)
    await bus.publish(RealtimeEvent(MESSAGE_NEW, uuid4(), {"messageId": "m1"}))
    await bus.publish(RealtimeEvent("conversation:new", uuid4(), {}))

    assert len(typed) == 1
    assert len(everything) == 2


async def test_failing_handler_does_not_stop_others():
    bus = EventBus()
    received = []

    async def broken(event):
        raise RuntimeError("boom")

    async def ok(event):
        received.append(event)

    bus.subscribe(MESSAGE_NEW, broken)
    bus.subscribe(MESSAGE_NEW, ok)
    await bus.publish(RealtimeEvent(MESSAGE_NEW, uuid4(), {}))
    assert len(received) == 1


async def test_redis_publisher_forwards_json():
    bus = EventBus()
    redis = FakeRedis()
    RedisEventPublisher(redis).attach(bus)
    tenant_id = uuid4()

    await bus.publish(RealtimeEvent(MESSAGE_NEW, tenant_id, {"messageId": "m1"}))

    channel, raw = redis.published[0]
    assert channel == REALTIME_CHANNEL == "websocket:events"
    body = json.loads(raw)
    assert body["type"] == MESSAGE_NEW
    assert body["tenantId"] == str(tenant_id)
    assert body["data"] == {"messageId": "m1"}


async def test_redis_publisher_swallows_outage():
    bus = EventBus()
    RedisEventPublisher(FakeRedis(fail=True)).attach(bus)
    await bus.publish(RealtimeEvent(MESSAGE_NEW, uuid4(), {}))
