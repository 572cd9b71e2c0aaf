"""
Order Service

Session-scoped order operations used by the API layer:
    - create_order: place a new order for an outlet/session
    - get_order: fetch one order, optionally restricted to a session
    - list_orders: a session's orders at an outlet, newest first
    - add_items: append or merge a batch of lines into an unpaid order
    - update_order: admin partial update, no session check

Every successful mutation is announced on the order event broker.
A failed announcement is logged and never fails the write: live
updates are best effort, order placement is not.

Version: 1.0.0
"""

import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models import Order, OrderStatus, PaymentStatus
from app.schemas import (
    MAX_LINE_QUANTITY,
    OrderCreate,
    OrderItem,
    OrderResponse,
    OrderUpdate,
    StreamEventType,
    StreamMessage,
)
from app.services.events import BaseOrderEventBroker

logger = logging.getLogger(__name__)


# =============================================================================
# ERRORS
# =============================================================================

class OrderServiceError(Exception):
    """Base class for order errors that map to a client response."""
    status_code = 400

    def __init__(self, message: str, detail: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail


class OrderValidationError(OrderServiceError):
    """Request fields are missing or inconsistent."""
    status_code = 400


class OrderNotModifiableError(OrderServiceError):
    """Order is paid or cancelled and no longer accepts items."""
    status_code = 400


class OrderNotFoundError(OrderServiceError):
    """Order does not exist, or belongs to another session."""
    status_code = 404

    def __init__(self, order_id: str):
        super().__init__("Order not found or access denied")
        self.order_id = order_id


# =============================================================================
# PURE HELPERS
# =============================================================================

def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_order_id() -> str:
    """ORD-<epoch ms>-<8 upper hex chars>."""
    return f"ORD-{int(time.time() * 1000)}-{uuid.uuid4().hex[:8].upper()}"


def calculate_total(items: Iterable[dict[str, Any]]) -> float:
    """Sum of price x quantity over stored item dicts."""
    return sum(item["price"] * item["quantity"] for item in items)


def serialize_item(item: OrderItem) -> dict[str, Any]:
    return item.model_dump(mode="json", by_alias=True)


def merge_items(
    existing: list[dict[str, Any]],
    batch: list[OrderItem],
    added_at: datetime,
) -> list[dict[str, Any]]:
    """
    Merge a batch of new lines into stored lines.

    Lines whose ``id`` matches an existing line add to its quantity;
    other lines are appended. Exactly the lines touched by this batch
    come back with ``isNewlyAdded`` set; all others have it cleared.
    The input list is not modified.
    """
    merged = [dict(line, isNewlyAdded=False) for line in existing]
    index = {line["id"]: position for position, line in enumerate(merged)}
    stamp = added_at.isoformat()

    for item in batch:
        position = index.get(item.id)
        if position is not None:
            line = merged[position]
            line["quantity"] += item.quantity
            line["isNewlyAdded"] = True
            line["addedAt"] = stamp
            continue
        line = serialize_item(item)
        line["isNewlyAdded"] = True
        line["addedAt"] = stamp
        index[item.id] = len(merged)
        merged.append(line)

    return merged


def classify_update(order: Order) -> StreamEventType:
    if order.is_complete:
        return StreamEventType.ORDER_COMPLETED
    return StreamEventType.ORDER_UPDATED


# =============================================================================
# SERVICE
# =============================================================================

class OrderService:
    """Order operations bound to one database session and broker."""

    def __init__(self, db: AsyncSession, broker: BaseOrderEventBroker, list_limit: int = 100):
        self.db = db
        self.broker = broker
        self.list_limit = list_limit

    async def create_order(self, data: OrderCreate) -> Order:
        now = utcnow()
        items = []
        for item in data.items:
            line = serialize_item(item)
            line["addedAt"] = now.isoformat()
            line["isNewlyAdded"] = False
            items.append(line)

        total = calculate_total(items)
        if total <= 0:
            raise OrderValidationError(
                "Invalid total amount",
                detail=f"items add up to {total}",
            )
        if abs(total - data.total_amount) > 0.01:
            logger.warning(
                f"Client total {data.total_amount} differs from computed {total} "
                f"for outlet {data.outlet_id}; storing computed total"
            )

        order = Order(
            order_id=generate_order_id(),
            outlet_id=data.outlet_id,
            session_id=data.session_id,
            items=items,
            total_amount=total,
            order_status=OrderStatus.TAKEN,
            payment_status=PaymentStatus.UNPAID,
            comments=data.comments or "",
            customer_name=data.customer_name or "",
            table_number=data.table_number or "",
            created_at=now,
            updated_at=now,
            last_item_added_at=now,
        )
        self.db.add(order)
        await self.db.commit()
        await self.db.refresh(order)

        logger.info(f"Order {order.order_id} created for outlet {order.outlet_id} ({len(items)} line(s))")
        await self._announce(order, StreamEventType.NEW_ORDER)
        return order

    async def get_order(self, order_id: str, session_id: Optional[str] = None) -> Order:
        """
        Fetch one order.

        With a session id, an order owned by another session raises the
        same OrderNotFoundError as a missing one.
        """
        query = select(Order).where(Order.order_id == order_id)
        if session_id is not None:
            query = query.where(Order.session_id == session_id)

        result = await self.db.execute(query)
        order = result.scalar_one_or_none()
        if order is None:
            raise OrderNotFoundError(order_id)
        return order

    async def list_orders(self, outlet_id: str, session_id: str) -> list[Order]:
        if not outlet_id:
            raise OrderValidationError("Outlet ID is required")
        if not session_id:
            raise OrderValidationError("Session ID is required for user isolation")

        result = await self.db.execute(
            select(Order)
            .where(Order.outlet_id == outlet_id, Order.session_id == session_id)
            .order_by(Order.created_at.desc(), Order.id.desc())
            .limit(self.list_limit)
        )
        return list(result.scalars().all())

    async def add_items(self, order_id: str, session_id: str, items: list[OrderItem]) -> Order:
        if not items:
            raise OrderValidationError("Items array is required")
        if not session_id:
            raise OrderValidationError("Session ID is required for user isolation")

        order = await self.get_order(order_id, session_id)
        if order.payment_status != PaymentStatus.UNPAID:
            raise OrderNotModifiableError(
                "Cannot add items to paid or cancelled orders",
                detail=f"payment status is {order.payment_status.value}",
            )

        now = utcnow()
        merged = merge_items(order.items or [], items, now)
        too_many = [line["id"] for line in merged if line["quantity"] > MAX_LINE_QUANTITY]
        if too_many:
            raise OrderValidationError(
                f"Quantity per item cannot exceed {MAX_LINE_QUANTITY}",
                detail=", ".join(too_many),
            )
        order.items = merged
        order.total_amount = calculate_total(order.items)
        order.updated_at = now
        order.last_item_added_at = now

        await self.db.commit()
        await self.db.refresh(order)

        logger.info(f"Added {len(items)} line(s) to order {order.order_id}, total now {order.total_amount}")
        await self._announce(order, classify_update(order))
        return order

    async def update_order(self, order_id: str, changes: OrderUpdate) -> Order:
        """Admin-scoped partial update."""
        order = await self.get_order(order_id)

        if changes.order_status is not None:
            order.order_status = OrderStatus(changes.order_status.value)
        if changes.payment_status is not None:
            order.payment_status = PaymentStatus(changes.payment_status.value)
        if changes.comments is not None:
            order.comments = changes.comments
        if changes.items is not None:
            order.items = [serialize_item(item) for item in changes.items]

        total = calculate_total(order.items)
        if changes.total_amount is not None and abs(changes.total_amount - total) > 0.01:
            await self.db.rollback()
            raise OrderValidationError(
                "Total amount does not match items",
                detail=f"expected {total}, got {changes.total_amount}",
            )
        order.total_amount = total
        order.updated_at = utcnow()

        await self.db.commit()
        await self.db.refresh(order)

        logger.info(
            f"Order {order.order_id} updated: "
            f"{order.order_status.value}/{order.payment_status.value}"
        )
        await self._announce(order, classify_update(order))
        return order

    async def _announce(self, order: Order, event_type: StreamEventType) -> None:
        message = StreamMessage(
            type=event_type,
            order=OrderResponse.model_validate(order),
            timestamp=utcnow(),
            outlet_id=order.outlet_id,
        )
        try:
            await self.broker.publish(order.outlet_id, message)
        except Exception as e:
            logger.error(f"Failed to publish {event_type.value} for order {order.order_id}: {e}")
