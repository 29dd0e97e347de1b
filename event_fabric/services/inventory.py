"""
Inventory service simulator.

Reserves stock when an order is placed and releases it when the saga
compensates. Reservations are keyed by order id, so a redelivered
OrderPlaced never reserves twice; the result event is re-emitted with the
same derived id instead.
"""

import logging
import threading
from typing import Optional
from uuid import uuid4

from event_fabric.envelope import Envelope
from event_fabric.events import EventType, reply
from event_fabric.publisher import Publisher
from event_fabric.registry import HandlerResult, SubscriptionHandle, SubscriptionRegistry
from event_fabric.services.models import LineItem, Reservation, ReservationStatus

logger = logging.getLogger("inventory_service")


DEFAULT_STOCK = {
    "sku-keyboard": 25,
    "sku-mouse": 40,
    "sku-monitor": 5,
    "sku-webcam": 0,
}


class InventoryService:
    """
    Simulated inventory service.

    Example:
        service = InventoryService(publisher, registry, stock={"sku-1": 3})
        service.start()
        # OrderPlaced -> InventoryReserved or InventoryReservationFailed
        # ReleaseInventory -> InventoryReleased
    """

    def __init__(
        self,
        publisher: Publisher,
        registry: SubscriptionRegistry,
        stock: Optional[dict[str, int]] = None,
    ):
        self.publisher = publisher
        self.registry = registry
        self.stock = dict(DEFAULT_STOCK if stock is None else stock)
        self.reservations: dict[str, Reservation] = {}
        self._lock = threading.Lock()
        self._handles: list[SubscriptionHandle] = []

    def start(self) -> None:
        if self._handles:
            logger.warning("InventoryService already started")
            return
        self._handles = [
            self.registry.register(EventType.ORDER_PLACED, self._handle_order_placed, handler_id="inventory.reserve"),
            self.registry.register(EventType.RELEASE_INVENTORY, self._handle_release, handler_id="inventory.release"),
        ]
        logger.info("InventoryService started - subscribed to events")

    def stop(self) -> None:
        for handle in self._handles:
            self.registry.unregister(handle)
        self._handles = []
        logger.info("InventoryService stopped")

    def available(self, product_id: str) -> int:
        with self._lock:
            return self.stock.get(product_id, 0)

    # =========================================================================
    # Event Handlers
    # =========================================================================

    def _handle_order_placed(self, envelope: Envelope) -> HandlerResult:
        """Reserve every line item, or none of them."""
        payload = envelope.json_payload()
        order_id = payload["order_id"]
        items = [LineItem(**item) for item in payload["line_items"]]

        with self._lock:
            reservation = self.reservations.get(order_id)
            shortages = []
            if reservation is None:
                shortages = [
                    item.product_id for item in items
                    if self.stock.get(item.product_id, 0) < item.quantity
                ]
                if not shortages:
                    for item in items:
                        self.stock[item.product_id] -= item.quantity
                    reservation = Reservation(id=f"res-{uuid4().hex[:8]}", order_id=order_id, line_items=items)
                    self.reservations[order_id] = reservation

        if shortages:
            logger.warning(f"Cannot reserve order {order_id}: insufficient stock for {shortages}")
            self._reply(
                envelope,
                EventType.INVENTORY_RESERVATION_FAILED,
                order_id,
                {"order_id": order_id, "reason": f"insufficient stock: {', '.join(shortages)}"},
            )
            return HandlerResult.ACK

        logger.info(f"Reserved stock for order {order_id} ({reservation.id})")
        self._reply(
            envelope,
            EventType.INVENTORY_RESERVED,
            order_id,
            {
                "order_id": order_id,
                "reservation_id": reservation.id,
                "customer_id": payload["customer_id"],
                "total_amount": payload["total_amount"],
                "line_items": [item.model_dump() for item in items],
            },
        )
        return HandlerResult.ACK

    def _handle_release(self, envelope: Envelope) -> HandlerResult:
        """Compensation: put reserved stock back."""
        payload = envelope.json_payload()
        order_id = payload["order_id"]

        with self._lock:
            reservation = self.reservations.get(order_id)
            released = reservation is not None and reservation.status == ReservationStatus.RESERVED
            if released:
                for item in reservation.line_items:
                    self.stock[item.product_id] = self.stock.get(item.product_id, 0) + item.quantity
                reservation.status = ReservationStatus.RELEASED

        if released:
            logger.info(f"Released stock for order {order_id} ({reservation.id})")
        else:
            logger.warning(f"No active reservation for order {order_id}; acknowledging release")

        self._reply(
            envelope,
            EventType.INVENTORY_RELEASED,
            order_id,
            {"order_id": order_id, "reservation_id": payload.get("reservation_id")},
        )
        return HandlerResult.ACK

    def _reply(self, cause: Envelope, event_type: EventType, order_id: str, payload: dict) -> None:
        self.publisher.publish(reply(cause, event_type, order_id, payload))
