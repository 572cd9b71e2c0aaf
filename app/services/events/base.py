"""
Order Event Broker Abstract Base Class

Defines the interface contract between the Order Service, which announces
order changes, and the stream endpoint, which relays them to clients.
Both InMemoryOrderEventBroker and RedisOrderEventBroker implement it.

Messages travel as serialized StreamMessage JSON so the Redis and in-memory
implementations carry exactly the same payload.

Version: 1.0.0
"""

from abc import ABC, abstractmethod
from typing import Optional

from app.schemas import StreamMessage


class BaseSubscription(ABC):
    """A single subscriber's view of one outlet channel."""

    @abstractmethod
    async def next_message(self, timeout: float) -> Optional[str]:
        """
        Wait for the next serialized message.

        Args:
            timeout: Seconds to wait before giving up

        Returns:
            The JSON payload, or None if nothing arrived in time
        """
        pass

    @abstractmethod
    async def close(self) -> None:
        """Stop receiving messages and release resources."""
        pass

    async def __aenter__(self) -> "BaseSubscription":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()


class BaseOrderEventBroker(ABC):
    """
    Abstract base class for order event brokers.

    Example:
        >>> broker = get_event_broker()
        >>> async with await broker.subscribe("O1") as subscription:
        ...     payload = await subscription.next_message(timeout=15)
    """

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Return the broker backend name (e.g. "memory", "redis")."""
        pass

    @abstractmethod
    async def publish(self, outlet_id: str, message: StreamMessage) -> int:
        """
        Publish a message to every subscriber of an outlet.

        Returns:
            Number of subscribers the message was handed to (best effort)
        """
        pass

    @abstractmethod
    async def subscribe(self, outlet_id: str) -> BaseSubscription:
        """Open a subscription to an outlet channel."""
        pass

    @abstractmethod
    async def health_check(self) -> bool:
        """Verify the broker is usable."""
        pass

    async def close(self) -> None:
        """Release broker-wide resources. Called on application shutdown."""
        return None
