"""
Guest session ids and the active order record.

The active order is the one order the polling path re-fetches. It is
written whenever an order is placed or viewed through OrderApiClient and
read only by ConnectionManager polling loops. A stale value only delays
a notification; order data itself always comes from the Order Service.
"""

import logging
import secrets
import string
import time
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)

_BASE36 = string.digits + string.ascii_lowercase


def _to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, remainder = divmod(value, 36)
        digits.append(_BASE36[remainder])
    return "".join(reversed(digits))


def generate_session_id() -> str:
    """session_<base36 epoch ms>_<random base36>."""
    timestamp = _to_base36(int(time.time() * 1000))
    random_part = "".join(secrets.choice(_BASE36) for _ in range(11))
    return f"session_{timestamp}_{random_part}"


class SessionStore:
    """Holds one guest session id, created on first use."""

    def __init__(self, session_id: Optional[str] = None):
        self._session_id = session_id

    def get_or_create(self) -> str:
        if self._session_id is None:
            self._session_id = generate_session_id()
            logger.debug(f"Created guest session {self._session_id}")
        return self._session_id

    def clear(self) -> None:
        self._session_id = None


@dataclass(frozen=True)
class ActiveOrder:
    order_id: str
    session_id: str


class ActiveOrderStore:
    """Last placed/viewed order. No transactional guarantees."""

    def __init__(self):
        self._active: Optional[ActiveOrder] = None

    def set(self, order_id: str, session_id: str) -> None:
        self._active = ActiveOrder(order_id=order_id, session_id=session_id)

    def get(self) -> Optional[ActiveOrder]:
        return self._active

    def clear(self) -> None:
        self._active = None


# Process-wide record shared by API clients and managers that don't get their own
active_orders = ActiveOrderStore()
