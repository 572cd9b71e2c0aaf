"""Broker selection and the Redis subscription wrapper, without a Redis server."""
from datetime import datetime, timezone

import pytest

from app.core.config import EnvironmentMode, get_settings
from app.schemas import StreamEventType, StreamMessage
from app.services.events import (
    InMemoryOrderEventBroker,
    RedisOrderEventBroker,
    get_event_broker,
    reset_event_broker,
)
from app.services.events import redis_broker
from app.services.events.redis_broker import RedisSubscription


class FakePubSub:
    def __init__(self, messages):
        self.messages = list(messages)
        self.channels = set()
        self.closed = False

    async def subscribe(self, channel):
        self.channels.add(channel)

    async def unsubscribe(self, channel):
        self.channels.discard(channel)

    async def get_message(self, ignore_subscribe_messages=True, timeout=0.0):
        return self.messages.pop(0) if self.messages else None

    async def aclose(self):
        self.closed = True


class FakeRedis:
    def __init__(self, messages=()):
        self.published = []
        self.pubsubs = []
        self.messages = messages

    async def publish(self, channel, payload):
        self.published.append((channel, payload))
        return 2

    def pubsub(self):
        pubsub = FakePubSub(self.messages)
        self.pubsubs.append(pubsub)
        return pubsub

    async def ping(self):
        return True

    async def aclose(self):
        pass


@pytest.fixture
def fake_redis(monkeypatch):
    client = FakeRedis(messages=[{"type": "message", "data": b'{"type": "error"}'}])
    monkeypatch.setattr(redis_broker.aioredis, "from_url", lambda url, **kwargs: client)
    return client


def test_development_uses_memory_broker():
    reset_event_broker()
    try:
        assert isinstance(get_event_broker(), InMemoryOrderEventBroker)
        assert get_event_broker() is get_event_broker()
    finally:
        reset_event_broker()


def test_production_uses_redis_broker(monkeypatch, fake_redis):
    monkeypatch.setattr(get_settings(), "env_mode", EnvironmentMode.PRODUCTION)
    reset_event_broker()
    try:
        broker = get_event_broker()
        assert isinstance(broker, RedisOrderEventBroker)
        assert broker.provider_name == "redis"
    finally:
        reset_event_broker()


@pytest.mark.asyncio
async def test_redis_broker_publishes_to_outlet_channel(fake_redis):
    broker = RedisOrderEventBroker(url="redis://unused", channel_prefix="orders")
    message = StreamMessage(type=StreamEventType.ERROR, error="x", timestamp=datetime.now(timezone.utc))

    receivers = await broker.publish("O1", message)

    assert receivers == 2
    assert fake_redis.published == [("orders:O1", message.to_json())]
    assert await broker.health_check() is True


@pytest.mark.asyncio
async def test_redis_subscription_decodes_and_closes(fake_redis):
    broker = RedisOrderEventBroker(url="redis://unused", channel_prefix="orders")

    subscription = await broker.subscribe("O1")
    pubsub = fake_redis.pubsubs[0]

    assert pubsub.channels == {"orders:O1"}
    assert await subscription.next_message(timeout=0.01) == '{"type": "error"}'
    assert await subscription.next_message(timeout=0.01) is None
    await subscription.close()
    await subscription.close()
    assert pubsub.closed
    assert pubsub.channels == set()


@pytest.mark.asyncio
async def test_redis_subscription_ignores_non_message_frames():
    subscription = RedisSubscription(FakePubSub([{"type": "pong", "data": "x"}]), "orders:O1")

    assert await subscription.next_message(timeout=0.01) is None
