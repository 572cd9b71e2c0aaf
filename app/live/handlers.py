"""
Update handler interface.

A ConnectionManager reports everything through one handler object:
one method per event kind. Subclass UpdateHandler and override what
you need, or wrap plain callables with UpdateCallbacks.
"""

from dataclasses import dataclass
from typing import Callable, Optional

from app.schemas import OrderResponse

OrderCallback = Callable[[OrderResponse], None]


class UpdateHandler:
    """Receives live order updates. Every method defaults to a no-op."""

    def on_new_order(self, order: OrderResponse) -> None:
        pass

    def on_order_update(self, order: OrderResponse) -> None:
        pass

    def on_order_complete(self, order: OrderResponse) -> None:
        pass

    def on_error(self, message: str) -> None:
        pass

    def on_connect(self) -> None:
        pass

    def on_disconnect(self) -> None:
        pass


@dataclass
class UpdateCallbacks(UpdateHandler):
    """UpdateHandler built from optional callables."""
    new_order: Optional[OrderCallback] = None
    order_update: Optional[OrderCallback] = None
    order_complete: Optional[OrderCallback] = None
    error: Optional[Callable[[str], None]] = None
    connect: Optional[Callable[[], None]] = None
    disconnect: Optional[Callable[[], None]] = None

    def on_new_order(self, order: OrderResponse) -> None:
        if self.new_order:
            self.new_order(order)

    def on_order_update(self, order: OrderResponse) -> None:
        if self.order_update:
            self.order_update(order)

    def on_order_complete(self, order: OrderResponse) -> None:
        if self.order_complete:
            self.order_complete(order)

    def on_error(self, message: str) -> None:
        if self.error:
            self.error(message)

    def on_connect(self) -> None:
        if self.connect:
            self.connect()

    def on_disconnect(self) -> None:
        if self.disconnect:
            self.disconnect()
