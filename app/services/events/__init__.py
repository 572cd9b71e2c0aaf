"""
Order Event Broker Factory

Provides a single entry point for obtaining the order event broker.
Automatically selects the in-memory or Redis broker based on ENV_MODE.

Usage:
    from app.services.events import get_event_broker

    broker = get_event_broker()
    await broker.publish("O1", message)
"""

import logging
from functools import lru_cache

from app.core.config import get_settings
from app.services.events.base import BaseOrderEventBroker, BaseSubscription
from app.services.events.memory import InMemoryOrderEventBroker
from app.services.events.redis_broker import RedisOrderEventBroker

logger = logging.getLogger(__name__)


@lru_cache()
def get_event_broker() -> BaseOrderEventBroker:
    """
    Get the configured order event broker.

    Returns:
        BaseOrderEventBroker: In-memory broker in development,
        Redis broker in staging and production
    """
    settings = get_settings()

    if settings.use_redis_broker:
        logger.info(
            f"Event Broker: Using RedisOrderEventBroker "
            f"({settings.env_mode.value} mode)"
        )
        return RedisOrderEventBroker()

    logger.info("Event Broker: Using InMemoryOrderEventBroker (development mode)")
    return InMemoryOrderEventBroker(queue_size=settings.stream_queue_size)


def reset_event_broker() -> None:
    """
    Clear the cached broker instance.

    Useful for testing or when configuration changes at runtime.
    """
    get_event_broker.cache_clear()
    logger.debug("Event broker cache cleared")


__all__ = [
    "get_event_broker",
    "reset_event_broker",
    "BaseOrderEventBroker",
    "BaseSubscription",
    "InMemoryOrderEventBroker",
    "RedisOrderEventBroker",
]
