"""
Live Updates Module

Client-side delivery of order notifications: SSE push with a polling
fallback, behind a single ConnectionManager per outlet.

Usage:
    from app.live import ConnectionManager, OrderApiClient, UpdateCallbacks

    async with OrderApiClient() as api:
        manager = ConnectionManager.for_api(api)
        manager.start("O1", UpdateCallbacks(order_update=print))
"""

from app.live.client import OrderApiClient, OrderApiError, OrderSource
from app.live.clock import AsyncioClock, Clock, TimerHandle
from app.live.events import (
    Capability,
    ConnectionState,
    ConnectionStatus,
    RetryBudget,
    TransportMode,
    UpdateEvent,
    UpdateParseError,
    parse_update_event,
)
from app.live.handlers import UpdateCallbacks, UpdateHandler
from app.live.manager import ConnectionManager, ConnectionSnapshot, LiveUpdateConfig
from app.live.session import (
    ActiveOrder,
    ActiveOrderStore,
    SessionStore,
    active_orders,
    generate_session_id,
)
from app.live.transport import (
    HttpxSSETransport,
    PushUnsupportedError,
    StreamTransportError,
    Transport,
    TransportError,
)

__all__ = [
    "ActiveOrder",
    "ActiveOrderStore",
    "AsyncioClock",
    "Capability",
    "Clock",
    "ConnectionManager",
    "ConnectionSnapshot",
    "ConnectionState",
    "ConnectionStatus",
    "HttpxSSETransport",
    "LiveUpdateConfig",
    "OrderApiClient",
    "OrderApiError",
    "OrderSource",
    "PushUnsupportedError",
    "RetryBudget",
    "SessionStore",
    "StreamTransportError",
    "TimerHandle",
    "Transport",
    "TransportError",
    "TransportMode",
    "UpdateCallbacks",
    "UpdateEvent",
    "UpdateHandler",
    "UpdateParseError",
    "active_orders",
    "generate_session_id",
    "parse_update_event",
]
