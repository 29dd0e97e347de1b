"""
Event catalogue for the order fulfillment domain.

Event types are an explicit enumeration so handler lookup is a typed table
rather than string matching scattered across services. Builder helpers
create properly structured root envelopes.

Naming:
- Facts are past tense (OrderPlaced, InventoryReserved)
- Compensations are imperative (ReleaseInventory, RefundPayment) and are
  acknowledged by a past-tense fact (InventoryReleased, PaymentRefunded)
"""

from enum import Enum
from typing import Any, Optional
from uuid import UUID

from event_fabric.envelope import Envelope, derived_event_id, encode_json_payload


class EventType(str, Enum):
    """All event types exchanged between services."""

    # User service
    USER_CREATED = "UserCreated"

    # Product service
    PRODUCT_CREATED = "ProductCreated"
    INVENTORY_CHECK = "InventoryCheck"

    # Order service
    ORDER_PLACED = "OrderPlaced"
    ORDER_CONFIRMED = "OrderConfirmed"
    ORDER_FAILED = "OrderFailed"
    ORDER_CANCELLATION_REQUESTED = "OrderCancellationRequested"
    CANCEL_ORDER = "CancelOrder"
    ORDER_CANCELLED = "OrderCancelled"

    # Inventory service
    INVENTORY_RESERVED = "InventoryReserved"
    INVENTORY_RESERVATION_FAILED = "InventoryReservationFailed"
    RELEASE_INVENTORY = "ReleaseInventory"
    INVENTORY_RELEASED = "InventoryReleased"

    # Payment service
    PAYMENT_CHARGED = "PaymentCharged"
    PAYMENT_FAILED = "PaymentFailed"
    REFUND_PAYMENT = "RefundPayment"
    PAYMENT_REFUNDED = "PaymentRefunded"

    # Notification service
    NOTIFICATION_SENT = "NotificationSent"
    NOTIFICATION_FAILED = "NotificationFailed"

    @classmethod
    def parse(cls, value: str) -> Optional["EventType"]:
        """Resolve a wire type string, or None if this build does not know it."""
        try:
            return cls(value)
        except ValueError:
            return None


def _root(event_type: EventType, payload: dict[str, Any], correlation_id: Optional[UUID] = None) -> Envelope:
    fields: dict[str, Any] = {"type": event_type, "payload": encode_json_payload(payload)}
    if correlation_id is not None:
        fields["correlation_id"] = correlation_id
    return Envelope(**fields)


# =============================================================================
# Order Events
# =============================================================================

def order_placed(
    order_id: str,
    customer_id: str,
    line_items: list[dict],
    total_amount: float,
) -> Envelope:
    """
    Create an OrderPlaced event.

    This is the root of the order fulfillment saga. Its correlation_id
    identifies the saga instance for every envelope that follows.

    Args:
        line_items: [{"product_id": ..., "quantity": ...}, ...]
    """
    return _root(
        EventType.ORDER_PLACED,
        {
            "order_id": order_id,
            "customer_id": customer_id,
            "line_items": line_items,
            "total_amount": total_amount,
        },
    )


def order_cancellation_requested(correlation_id: UUID, order_id: str, reason: str = "") -> Envelope:
    """
    Create a cancellation request for a saga that has not progressed yet.

    Shares the saga's correlation_id so it is routed to the same partition.
    """
    return _root(
        EventType.ORDER_CANCELLATION_REQUESTED,
        {"order_id": order_id, "reason": reason},
        correlation_id=correlation_id,
    )


# =============================================================================
# Service replies
# =============================================================================

def reply(cause: Envelope, event_type: EventType, business_key: str, payload: dict[str, Any]) -> Envelope:
    """
    Create the envelope a service emits in response to `cause`.

    The id is derived from the saga, the event type and the business key, so
    a handler that is redelivered re-emits the same fact rather than a new
    one.
    """
    return Envelope.caused_by(
        cause,
        event_type,
        payload,
        event_id=derived_event_id(cause.correlation_id, event_type, business_key),
    )
