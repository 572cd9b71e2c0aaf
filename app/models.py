"""
SQLAlchemy Database Models

Orders placed by guests at an outlet, isolated by browser session.
Items are stored as a JSON list of line dicts in wire (camelCase) form.

Version: 1.0.0
"""

import enum

from sqlalchemy import Column, Integer, String, Float, DateTime, Text, Enum, JSON, Index
from sqlalchemy.sql import func

from app.database import Base


class OrderStatus(str, enum.Enum):
    """Kitchen workflow."""
    TAKEN = "taken"
    PREPARING = "preparing"
    PREPARED = "prepared"
    SERVED = "served"


class PaymentStatus(str, enum.Enum):
    """Payment workflow. Only UNPAID orders accept new items."""
    UNPAID = "unpaid"
    PAID = "paid"
    CANCELLED = "cancelled"


class Order(Base):
    """
    Main Order table.

    Looked up by the public ``order_id`` string, never by the surrogate key.
    Guest reads and writes always filter on ``session_id`` as well.
    """
    __tablename__ = "orders"
    __table_args__ = (
        Index("ix_orders_outlet_session", "outlet_id", "session_id"),
    )

    # Primary Key
    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    # =========================================================================
    # IDENTITY & ISOLATION
    # =========================================================================
    order_id = Column(String(64), nullable=False, unique=True, index=True)
    outlet_id = Column(String(64), nullable=False, index=True)
    session_id = Column(String(128), nullable=False, index=True)

    # =========================================================================
    # ORDER DETAILS
    # =========================================================================
    items = Column(JSON, nullable=False, default=list)
    total_amount = Column(Float, nullable=False)
    comments = Column(Text, nullable=False, default="")
    customer_name = Column(String(100), nullable=False, default="")
    table_number = Column(String(20), nullable=False, default="")

    # =========================================================================
    # STATUS
    # =========================================================================
    order_status = Column(
        Enum(OrderStatus),
        default=OrderStatus.TAKEN,
        nullable=False,
        index=True
    )
    payment_status = Column(
        Enum(PaymentStatus),
        default=PaymentStatus.UNPAID,
        nullable=False,
        index=True
    )

    # =========================================================================
    # TIMESTAMPS
    # =========================================================================
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    last_item_added_at = Column(DateTime(timezone=True), nullable=True)

    @property
    def is_complete(self) -> bool:
        """Served and paid - nothing left to do for this order."""
        return (
            self.order_status == OrderStatus.SERVED
            and self.payment_status == PaymentStatus.PAID
        )

    def __repr__(self):
        return f"<Order {self.order_id} - {self.outlet_id} - {self.order_status.value}/{self.payment_status.value}>"
