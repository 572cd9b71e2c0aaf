"""
Live Update Types

Connection states, capability knowledge, the retry budget, and the
parsed form of messages received from the order stream.
"""

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Union

from pydantic import ValidationError

from app.schemas import OrderResponse, StreamEventType, StreamMessage


class ConnectionState(str, Enum):
    """Internal state of a ConnectionManager."""
    DISCONNECTED = "disconnected"
    PROBING = "probing_capability"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    POLLING = "polling"


class ConnectionStatus(str, Enum):
    """Coarse status shown to UI code."""
    CONNECTED = "connected"
    CONNECTING = "connecting"
    RECONNECTING = "reconnecting"
    DISCONNECTED = "disconnected"


STATUS_BY_STATE = {
    ConnectionState.DISCONNECTED: ConnectionStatus.DISCONNECTED,
    ConnectionState.PROBING: ConnectionStatus.CONNECTING,
    ConnectionState.CONNECTING: ConnectionStatus.CONNECTING,
    ConnectionState.CONNECTED: ConnectionStatus.CONNECTED,
    ConnectionState.RECONNECTING: ConnectionStatus.RECONNECTING,
    ConnectionState.POLLING: ConnectionStatus.CONNECTED,
}


class Capability(str, Enum):
    """What a manager knows about push support on the server."""
    UNKNOWN = "unknown"
    SUPPORTED = "supported"
    UNSUPPORTED = "unsupported"


class TransportMode(str, Enum):
    NONE = "none"
    PUSH = "push"
    POLLING = "polling"


@dataclass
class RetryBudget:
    """
    Exponential backoff bookkeeping for push reconnects.

    ``next_delay()`` is ``min(base_delay * 2 ** attempts, max_delay)``,
    evaluated before ``consume()`` increments ``attempts``.
    """
    max: int
    base_delay: float
    max_delay: float
    attempts: int = 0

    @property
    def exhausted(self) -> bool:
        return self.attempts >= self.max

    def next_delay(self) -> float:
        return min(self.base_delay * (2 ** self.attempts), self.max_delay)

    def consume(self) -> float:
        """Take one retry and return the delay to wait before it."""
        delay = self.next_delay()
        self.attempts += 1
        return delay

    def reset(self) -> None:
        self.attempts = 0


class UpdateParseError(ValueError):
    """A stream payload could not be turned into an UpdateEvent."""


@dataclass(frozen=True)
class UpdateEvent:
    """One normalized update, whichever transport delivered it."""
    type: StreamEventType
    timestamp: datetime
    order: Optional[OrderResponse] = None
    message: Optional[str] = None
    error: Optional[str] = None
    outlet_id: Optional[str] = None

    @classmethod
    def from_order(cls, event_type: StreamEventType, order: OrderResponse) -> "UpdateEvent":
        return cls(
            type=event_type,
            timestamp=datetime.now(timezone.utc),
            order=order,
            outlet_id=order.outlet_id,
        )

    @property
    def error_text(self) -> str:
        return self.error or self.message or "Unknown stream error"


ORDER_EVENTS = (
    StreamEventType.NEW_ORDER,
    StreamEventType.ORDER_UPDATED,
    StreamEventType.ORDER_COMPLETED,
)


def parse_update_event(raw: Union[str, bytes, dict[str, Any]]) -> UpdateEvent:
    """
    Parse one stream payload.

    Raises:
        UpdateParseError: invalid JSON, unknown type, bad order snapshot,
            or an order event without an order
    """
    try:
        data = json.loads(raw) if isinstance(raw, (str, bytes)) else raw
        message = StreamMessage.model_validate(data)
    except (json.JSONDecodeError, ValidationError, TypeError) as e:
        raise UpdateParseError(f"Unparseable stream payload: {e}") from e

    if message.type in ORDER_EVENTS and message.order is None:
        raise UpdateParseError(f"{message.type.value} message without an order")

    return UpdateEvent(
        type=message.type,
        timestamp=message.timestamp,
        order=message.order,
        message=message.message,
        error=message.error,
        outlet_id=message.outlet_id,
    )
