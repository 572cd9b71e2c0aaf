"""
Pydantic Schemas for Request/Response Validation

Shared by the API server and the live-update client. Field names are
snake_case in Python and camelCase on the wire (``orderId``,
``totalAmount``, ...); both spellings are accepted on input.

Version: 1.0.0
"""

from datetime import datetime
from enum import Enum
from typing import Optional, List, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


# =============================================================================
# ENUMS
# =============================================================================

class OrderStatusEnum(str, Enum):
    TAKEN = "taken"
    PREPARING = "preparing"
    PREPARED = "prepared"
    SERVED = "served"


class PaymentStatusEnum(str, Enum):
    UNPAID = "unpaid"
    PAID = "paid"
    CANCELLED = "cancelled"


class StreamEventType(str, Enum):
    """Message kinds carried by the order stream."""
    CONNECTION = "connection"
    NEW_ORDER = "new-order"
    ORDER_UPDATED = "order-updated"
    ORDER_COMPLETED = "order-completed"
    ERROR = "error"


MAX_LINE_QUANTITY = 99


class CamelModel(BaseModel):
    """Base model speaking camelCase on the wire."""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


# =============================================================================
# ORDER ITEMS
# =============================================================================

class OrderItem(CamelModel):
    """Single line of an order."""
    id: str = Field(..., min_length=1, max_length=64, examples=["dish-42"])
    name: str = Field(..., min_length=1, max_length=100, examples=["Masala Dosa"])
    quantity: int = Field(..., ge=1, le=MAX_LINE_QUANTITY, examples=[2])
    price: float = Field(..., ge=0, examples=[120.0])
    quantity_id: str = Field(default="", max_length=64, examples=["full"])
    quantity_description: str = Field(default="", max_length=100, examples=["Full plate"])
    added_at: Optional[datetime] = None
    is_newly_added: bool = False

    @property
    def line_total(self) -> float:
        return self.price * self.quantity


# =============================================================================
# REQUEST SCHEMAS
# =============================================================================

class OrderCreate(CamelModel):
    """Request schema for placing a new order."""
    outlet_id: str = Field(..., min_length=1, max_length=64)
    session_id: str = Field(..., min_length=1, max_length=128)
    items: List[OrderItem] = Field(..., min_length=1)
    total_amount: float = Field(..., gt=0)
    comments: Optional[str] = Field(None, max_length=500)
    customer_name: Optional[str] = Field(None, max_length=100)
    table_number: Optional[str] = Field(None, max_length=20)

    @field_validator("outlet_id", "session_id")
    @classmethod
    def validate_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("must not be blank")
        return v


class OrderItemsAdd(CamelModel):
    """Request schema for adding items to an existing order."""
    session_id: str = Field(..., min_length=1, max_length=128)
    items: List[OrderItem] = Field(..., min_length=1)


class OrderUpdate(CamelModel):
    """Admin partial update. Omitted fields are left untouched."""
    order_status: Optional[OrderStatusEnum] = None
    payment_status: Optional[PaymentStatusEnum] = None
    comments: Optional[str] = Field(None, max_length=500)
    items: Optional[List[OrderItem]] = None
    total_amount: Optional[float] = Field(None, ge=0)


# =============================================================================
# RESPONSE SCHEMAS
# =============================================================================

class OrderResponse(CamelModel):
    """A full order snapshot."""
    order_id: str
    outlet_id: str
    session_id: str
    items: List[OrderItem]
    total_amount: float
    order_status: OrderStatusEnum
    payment_status: PaymentStatusEnum
    comments: str = ""
    customer_name: Optional[str] = None
    table_number: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    last_item_added_at: Optional[datetime] = None

    @property
    def is_complete(self) -> bool:
        return (
            self.order_status == OrderStatusEnum.SERVED
            and self.payment_status == PaymentStatusEnum.PAID
        )


class OrderEnvelope(CamelModel):
    """Single-order response, with a message after mutations."""
    message: Optional[str] = None
    order: OrderResponse


class OrderListResponse(CamelModel):
    """Response for listing a session's orders."""
    orders: List[OrderResponse]


class ErrorResponse(BaseModel):
    """Standard error response."""
    success: bool = False
    error: str
    detail: Optional[str] = None


class StreamUnavailableResponse(BaseModel):
    """Body of the 501 answer when push delivery is switched off."""
    error: str
    fallback: Literal["polling"] = "polling"


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    database: str
    event_broker: str
    push_enabled: bool
    timestamp: datetime


# =============================================================================
# STREAM MESSAGES
# =============================================================================

class StreamMessage(CamelModel):
    """One message on the order stream."""
    type: StreamEventType
    order: Optional[OrderResponse] = None
    message: Optional[str] = None
    error: Optional[str] = None
    timestamp: datetime
    outlet_id: Optional[str] = None

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)
