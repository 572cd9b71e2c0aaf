"""
Redis Order Event Broker

Production broker using Redis pub/sub, so an order written through one
API worker reaches stream clients connected to any other worker.
Used when ENV_MODE=production or ENV_MODE=staging.

Channel layout:
    <prefix>:<outlet_id>   e.g. orders:O1

Version: 1.0.0
"""

import logging
from typing import Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from app.core.config import get_settings
from app.schemas import StreamMessage
from app.services.events.base import BaseOrderEventBroker, BaseSubscription

logger = logging.getLogger(__name__)


class RedisSubscription(BaseSubscription):
    """Wraps a Redis PubSub object subscribed to a single channel."""

    def __init__(self, pubsub, channel: str):
        self._pubsub = pubsub
        self.channel = channel
        self.closed = False

    async def next_message(self, timeout: float) -> Optional[str]:
        message = await self._pubsub.get_message(
            ignore_subscribe_messages=True,
            timeout=timeout,
        )
        if message is None or message.get("type") != "message":
            return None
        data = message["data"]
        if isinstance(data, bytes):
            data = data.decode("utf-8")
        return data

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            await self._pubsub.unsubscribe(self.channel)
        except RedisError as e:
            logger.warning(f"Redis unsubscribe failed for {self.channel}: {e}")
        finally:
            await self._pubsub.aclose()


class RedisOrderEventBroker(BaseOrderEventBroker):
    """Redis pub/sub broker, one channel per outlet."""

    def __init__(self, url: Optional[str] = None, channel_prefix: Optional[str] = None):
        settings = get_settings()
        self.url = url or settings.redis_url
        self.channel_prefix = channel_prefix or settings.redis_channel_prefix
        self._client = aioredis.from_url(self.url, decode_responses=True)
        logger.info(f"RedisOrderEventBroker initialized (prefix={self.channel_prefix})")

    @property
    def provider_name(self) -> str:
        return "redis"

    def channel_for(self, outlet_id: str) -> str:
        return f"{self.channel_prefix}:{outlet_id}"

    async def publish(self, outlet_id: str, message: StreamMessage) -> int:
        receivers = await self._client.publish(self.channel_for(outlet_id), message.to_json())
        logger.debug(f"Published {message.type.value} to {self.channel_for(outlet_id)} ({receivers} receiver(s))")
        return receivers

    async def subscribe(self, outlet_id: str) -> RedisSubscription:
        channel = self.channel_for(outlet_id)
        pubsub = self._client.pubsub()
        await pubsub.subscribe(channel)
        return RedisSubscription(pubsub, channel)

    async def health_check(self) -> bool:
        try:
            return bool(await self._client.ping())
        except RedisError as e:
            logger.error(f"Redis health check failed: {e}")
            return False

    async def close(self) -> None:
        await self._client.aclose()
