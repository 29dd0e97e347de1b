"""
Domain models for the order fulfillment simulators.

These are the records each simulated service keeps about its own part of an
order. Each service owns its records; nothing is shared between services
except the events on the transport.

Design decisions:
- Using Pydantic for validation and serialization
- Models are intentionally simple, just enough for the saga scenarios
- Every record is keyed by order_id so handlers can be idempotent by
  business key
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# Enums
# =============================================================================

class OrderStatus(str, Enum):
    """Order lifecycle as seen by the ordering service."""
    PENDING = "PENDING"           # Placed, saga in progress
    CONFIRMED = "CONFIRMED"       # Saga completed
    CANCELLED = "CANCELLED"       # Cancelled by compensation
    FAILED = "FAILED"             # Saga failed


class ReservationStatus(str, Enum):
    RESERVED = "RESERVED"
    RELEASED = "RELEASED"


class PaymentStatus(str, Enum):
    CHARGED = "CHARGED"
    DECLINED = "DECLINED"
    REFUNDED = "REFUNDED"


# =============================================================================
# Records
# =============================================================================

class LineItem(BaseModel):
    """A single product line of an order."""
    product_id: str = Field(..., description="Reference to product")
    quantity: int = Field(..., ge=1, description="Quantity ordered")


class Order(BaseModel):
    """Order owned by the ordering service."""
    id: str = Field(..., description="Unique order identifier")
    customer_id: str
    line_items: list[LineItem] = Field(default_factory=list)
    total_amount: float = Field(..., ge=0)
    status: OrderStatus = Field(default=OrderStatus.PENDING)
    correlation_id: Optional[str] = Field(default=None, description="Saga this order belongs to")
    created_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(use_enum_values=True)


class Reservation(BaseModel):
    """Stock held for an order by the inventory service."""
    id: str
    order_id: str
    line_items: list[LineItem]
    status: ReservationStatus = Field(default=ReservationStatus.RESERVED)

    model_config = ConfigDict(use_enum_values=True)


class Charge(BaseModel):
    """A payment taken (or refused) by the payment service."""
    id: str
    order_id: str
    customer_id: str
    amount: float = Field(..., ge=0)
    status: PaymentStatus

    model_config = ConfigDict(use_enum_values=True)


class SentNotification(BaseModel):
    """A customer notification recorded by the notification service."""
    order_id: str
    customer_id: str
    subject: str
    sent_at: datetime = Field(default_factory=_utcnow)

    def __str__(self) -> str:
        return f"To {self.customer_id}: {self.subject}"
