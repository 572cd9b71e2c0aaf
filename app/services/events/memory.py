"""
In-Memory Order Event Broker

Single-process broker used in development mode and tests.
Each subscriber owns a bounded asyncio.Queue; a slow subscriber loses
its oldest messages instead of blocking the publisher.

Version: 1.0.0
"""

import asyncio
import logging
from collections import defaultdict
from typing import Optional

from app.schemas import StreamMessage
from app.services.events.base import BaseOrderEventBroker, BaseSubscription

logger = logging.getLogger(__name__)


class InMemorySubscription(BaseSubscription):
    """Queue-backed subscription registered with an InMemoryOrderEventBroker."""

    def __init__(self, broker: "InMemoryOrderEventBroker", outlet_id: str, queue_size: int):
        self._broker = broker
        self.outlet_id = outlet_id
        self.queue: asyncio.Queue[str] = asyncio.Queue(maxsize=queue_size)
        self.closed = False

    def offer(self, payload: str) -> None:
        if self.queue.full():
            dropped = self.queue.get_nowait()
            logger.warning(
                f"Subscriber queue full for outlet {self.outlet_id}, "
                f"dropping oldest message ({len(dropped)} bytes)"
            )
        self.queue.put_nowait(payload)

    async def next_message(self, timeout: float) -> Optional[str]:
        try:
            return await asyncio.wait_for(self.queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._broker._unregister(self)


class InMemoryOrderEventBroker(BaseOrderEventBroker):
    """In-process publish/subscribe keyed by outlet."""

    def __init__(self, queue_size: int = 100):
        self.queue_size = queue_size
        self._subscribers: dict[str, set[InMemorySubscription]] = defaultdict(set)
        logger.info(f"InMemoryOrderEventBroker initialized (queue_size={queue_size})")

    @property
    def provider_name(self) -> str:
        return "memory"

    def subscriber_count(self, outlet_id: str) -> int:
        return len(self._subscribers.get(outlet_id, ()))

    async def publish(self, outlet_id: str, message: StreamMessage) -> int:
        payload = message.to_json()
        subscribers = list(self._subscribers.get(outlet_id, ()))
        for subscription in subscribers:
            subscription.offer(payload)
        logger.debug(f"Published {message.type.value} to {len(subscribers)} subscriber(s) of {outlet_id}")
        return len(subscribers)

    async def subscribe(self, outlet_id: str) -> InMemorySubscription:
        subscription = InMemorySubscription(self, outlet_id, self.queue_size)
        self._subscribers[outlet_id].add(subscription)
        logger.debug(f"New subscriber for outlet {outlet_id} ({self.subscriber_count(outlet_id)} total)")
        return subscription

    def _unregister(self, subscription: InMemorySubscription) -> None:
        subscribers = self._subscribers.get(subscription.outlet_id)
        if subscribers is None:
            return
        subscribers.discard(subscription)
        if not subscribers:
            del self._subscribers[subscription.outlet_id]

    async def health_check(self) -> bool:
        """In-memory broker is always available."""
        return True
