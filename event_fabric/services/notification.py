"""
Notification service simulator.

Sends the order confirmation once payment is charged (the last saga step)
and tells the customer how the order ended. Sends are recorded instead of
delivered, so tests and the demo can inspect them.

Design decisions:
- The confirmation handler is ordered: its result event advances the saga
- Outcome notices (OrderConfirmed / OrderFailed) are unordered; they only
  record a message and run on the dispatcher's worker pool
- Customers in `unreachable_customers` cannot be notified, which drives the
  notification-failure scenario
"""

import logging
import threading
from typing import Optional

from event_fabric.envelope import Envelope
from event_fabric.events import EventType, reply
from event_fabric.publisher import Publisher
from event_fabric.registry import HandlerResult, SubscriptionHandle, SubscriptionRegistry
from event_fabric.services.models import SentNotification

logger = logging.getLogger("notification_service")


class NotificationService:
    """
    Event-driven notification service.

    Example:
        service = NotificationService(publisher, registry)
        service.start()
        # PaymentCharged -> NotificationSent or NotificationFailed
        service.get_sent_notifications("cust-001")
    """

    def __init__(
        self,
        publisher: Publisher,
        registry: SubscriptionRegistry,
        unreachable_customers: Optional[set[str]] = None,
    ):
        self.publisher = publisher
        self.registry = registry
        self.unreachable_customers = set(unreachable_customers or ())
        self.sent: list[SentNotification] = []
        self._lock = threading.Lock()
        self._handles: list[SubscriptionHandle] = []

    def start(self) -> None:
        if self._handles:
            logger.warning("NotificationService already started")
            return
        self._handles = [
            self.registry.register(
                EventType.PAYMENT_CHARGED,
                self._handle_payment_charged,
                handler_id="notification.confirmation",
            ),
            self.registry.register(
                EventType.ORDER_CONFIRMED,
                self._handle_order_confirmed,
                ordered=False,
                handler_id="notification.order_confirmed",
            ),
            self.registry.register(
                EventType.ORDER_FAILED,
                self._handle_order_failed,
                ordered=False,
                handler_id="notification.order_failed",
            ),
        ]
        logger.info("NotificationService started - subscribed to events")

    def stop(self) -> None:
        for handle in self._handles:
            self.registry.unregister(handle)
        self._handles = []
        logger.info("NotificationService stopped")

    def get_sent_notifications(self, customer_id: Optional[str] = None) -> list[SentNotification]:
        with self._lock:
            return [n for n in self.sent if customer_id is None or n.customer_id == customer_id]

    def clear_history(self) -> None:
        with self._lock:
            self.sent.clear()

    # =========================================================================
    # Event Handlers
    # =========================================================================

    def _handle_payment_charged(self, envelope: Envelope) -> HandlerResult:
        payload = envelope.json_payload()
        order_id = payload["order_id"]
        customer_id = payload["customer_id"]

        if customer_id in self.unreachable_customers:
            logger.error(f"[NOTIFY FAILED] To: {customer_id} | order {order_id} | no reachable channel")
            self._reply(
                envelope,
                EventType.NOTIFICATION_FAILED,
                order_id,
                {"order_id": order_id, "customer_id": customer_id, "reason": "customer unreachable"},
            )
            return HandlerResult.ACK

        self._record(order_id, customer_id, f"Payment of {payload['amount']:.2f} received for order {order_id}")
        self._reply(
            envelope,
            EventType.NOTIFICATION_SENT,
            order_id,
            {"order_id": order_id, "customer_id": customer_id},
        )
        return HandlerResult.ACK

    def _handle_order_confirmed(self, envelope: Envelope) -> HandlerResult:
        payload = envelope.json_payload()
        self._record(payload["order_id"], payload["customer_id"], f"Order {payload['order_id']} confirmed")
        return HandlerResult.ACK

    def _handle_order_failed(self, envelope: Envelope) -> HandlerResult:
        payload = envelope.json_payload()
        customer_id = payload["customer_id"]
        if customer_id in self.unreachable_customers:
            logger.warning(f"Cannot tell {customer_id} that order {payload['order_id']} failed")
            return HandlerResult.ACK
        self._record(payload["order_id"], customer_id, f"Order {payload['order_id']} could not be completed")
        return HandlerResult.ACK

    def _record(self, order_id: str, customer_id: str, subject: str) -> None:
        with self._lock:
            if any(n.order_id == order_id and n.subject == subject for n in self.sent):
                return
            self.sent.append(SentNotification(order_id=order_id, customer_id=customer_id, subject=subject))
        logger.info(f"[NOTIFY] To: {customer_id} | {subject}")

    def _reply(self, cause: Envelope, event_type: EventType, order_id: str, payload: dict) -> None:
        self.publisher.publish(reply(cause, event_type, order_id, payload))
