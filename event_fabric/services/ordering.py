"""
Ordering service simulator.

This service owns orders. It places them (publishing OrderPlaced, the root of
the order fulfillment saga), lets a customer request cancellation, and
reacts to the saga's outcome and to the CancelOrder compensation.

Key insight:
- This service does NOT call inventory, payment or notification
- It does not drive the saga either; the coordinator does, from events
- It only publishes facts about orders and reacts to commands addressed to it
"""

import logging
import threading
from typing import Optional
from uuid import UUID

from event_fabric.envelope import Envelope
from event_fabric.events import EventType, order_cancellation_requested, order_placed, reply
from event_fabric.exceptions import HandlerFailure, PublishFailed
from event_fabric.publisher import Publisher
from event_fabric.registry import HandlerResult, SubscriptionHandle, SubscriptionRegistry
from event_fabric.saga import SagaDefinition, SagaStep
from event_fabric.services.models import LineItem, Order, OrderStatus

logger = logging.getLogger("ordering_service")


# The order fulfillment saga. Steps run in this order; compensation runs in
# reverse and ends with cancelling the order itself.
ORDER_FULFILLMENT = SagaDefinition(
    name="OrderFulfillment",
    trigger=EventType.ORDER_PLACED,
    steps=(
        SagaStep(
            name="ReserveInventory",
            completed=EventType.INVENTORY_RESERVED,
            failed=EventType.INVENTORY_RESERVATION_FAILED,
            compensation=EventType.RELEASE_INVENTORY,
            compensated=EventType.INVENTORY_RELEASED,
        ),
        SagaStep(
            name="ChargePayment",
            completed=EventType.PAYMENT_CHARGED,
            failed=EventType.PAYMENT_FAILED,
            compensation=EventType.REFUND_PAYMENT,
            compensated=EventType.PAYMENT_REFUNDED,
        ),
        SagaStep(
            name="SendConfirmation",
            completed=EventType.NOTIFICATION_SENT,
            failed=EventType.NOTIFICATION_FAILED,
        ),
    ),
    cancel_event=EventType.ORDER_CANCELLATION_REQUESTED,
    completion_event=EventType.ORDER_CONFIRMED,
    failure_event=EventType.ORDER_FAILED,
    root_compensation=EventType.CANCEL_ORDER,
    root_compensated=EventType.ORDER_CANCELLED,
)


class OrderingService:
    """
    Simulated ordering service.

    Example:
        service = OrderingService(publisher, registry)
        service.start()

        envelope = service.place_order("ord-001", "cust-001", [{"product_id": "sku-1", "quantity": 1}], 25.0)
        # envelope.correlation_id identifies the saga instance
    """

    def __init__(self, publisher: Publisher, registry: SubscriptionRegistry):
        self.publisher = publisher
        self.registry = registry
        self.orders: dict[str, Order] = {}
        self._lock = threading.Lock()
        self._handles: list[SubscriptionHandle] = []

    def start(self) -> None:
        """Subscribe to the commands and outcomes this service reacts to."""
        if self._handles:
            logger.warning("OrderingService already started")
            return
        self._handles = [
            self.registry.register(EventType.CANCEL_ORDER, self._handle_cancel_order, handler_id="ordering.cancel_order"),
            self.registry.register(EventType.ORDER_CONFIRMED, self._handle_order_confirmed, handler_id="ordering.order_confirmed"),
            self.registry.register(EventType.ORDER_FAILED, self._handle_order_failed, handler_id="ordering.order_failed"),
        ]
        logger.info("OrderingService started - subscribed to events")

    def stop(self) -> None:
        for handle in self._handles:
            self.registry.unregister(handle)
        self._handles = []
        logger.info("OrderingService stopped")

    # =========================================================================
    # Commands
    # =========================================================================

    def place_order(
        self,
        order_id: str,
        customer_id: str,
        line_items: list[dict],
        total_amount: float,
    ) -> Envelope:
        """
        Place an order and publish OrderPlaced.

        The order is withdrawn again if the event cannot be published.

        Raises:
            ValueError: If the order id is already taken
            PublishFailed: If OrderPlaced could not be published
        """
        items = [LineItem(**item) for item in line_items]
        envelope = order_placed(
            order_id=order_id,
            customer_id=customer_id,
            line_items=[item.model_dump() for item in items],
            total_amount=total_amount,
        )
        with self._lock:
            if order_id in self.orders:
                raise ValueError(f"Order already exists: {order_id}")
            self.orders[order_id] = Order(
                id=order_id,
                customer_id=customer_id,
                line_items=items,
                total_amount=total_amount,
                correlation_id=str(envelope.correlation_id),
            )

        try:
            self.publisher.publish(envelope)
        except PublishFailed:
            with self._lock:
                del self.orders[order_id]
            raise
        logger.info(f"Order {order_id} placed for {customer_id} (saga {str(envelope.correlation_id)[:8]})")
        return envelope

    def request_cancellation(self, order_id: str, reason: str = "") -> Envelope:
        """
        Ask the saga to cancel an order.

        Only honoured while no saga step has completed; otherwise the
        coordinator logs it as an anomaly and the order proceeds.
        """
        order = self.get_order(order_id)
        if order is None or order.correlation_id is None:
            raise KeyError(f"Order not found: {order_id}")

        envelope = order_cancellation_requested(UUID(order.correlation_id), order_id, reason)
        self.publisher.publish(envelope)
        logger.info(f"Cancellation requested for order {order_id}")
        return envelope

    def get_order(self, order_id: str) -> Optional[Order]:
        with self._lock:
            return self.orders.get(order_id)

    # =========================================================================
    # Event Handlers
    # =========================================================================

    def _handle_cancel_order(self, envelope: Envelope) -> HandlerResult:
        """Compensation: cancel the order and acknowledge with OrderCancelled."""
        order_id = envelope.json_payload()["order_id"]
        with self._lock:
            order = self.orders.get(order_id)
            if order is None:
                raise HandlerFailure(f"Cannot cancel unknown order {order_id}")
            previous = OrderStatus(order.status)
            order.status = OrderStatus.CANCELLED

        if previous != OrderStatus.CANCELLED:
            logger.info(f"Order {order_id} cancelled: {previous.value} -> CANCELLED")
        self.publisher.publish(reply(envelope, EventType.ORDER_CANCELLED, order_id, {"order_id": order_id}))
        return HandlerResult.ACK

    def _handle_order_confirmed(self, envelope: Envelope) -> HandlerResult:
        order_id = envelope.json_payload()["order_id"]
        self._set_status(order_id, OrderStatus.CONFIRMED)
        return HandlerResult.ACK

    def _handle_order_failed(self, envelope: Envelope) -> HandlerResult:
        order_id = envelope.json_payload()["order_id"]
        order = self.get_order(order_id)
        if order is not None and order.status == OrderStatus.CANCELLED:
            logger.info(f"Order {order_id} saga failed; order already cancelled")
            return HandlerResult.ACK
        self._set_status(order_id, OrderStatus.FAILED)
        return HandlerResult.ACK

    def _set_status(self, order_id: str, status: OrderStatus) -> None:
        with self._lock:
            order = self.orders.get(order_id)
            if order is None:
                logger.warning(f"Order not found: {order_id}")
                return
            previous = OrderStatus(order.status)
            order.status = status
        logger.info(f"Order {order_id}: {previous.value} -> {status.value}")
