"""
Payment service simulator.

Charges the customer once inventory is reserved and refunds the charge when
the saga compensates. Customers listed in `declined_customers` always have
their card declined, which drives the payment-failure scenario.
"""

import logging
import threading
from typing import Optional

from event_fabric.envelope import Envelope
from event_fabric.events import EventType, reply
from event_fabric.publisher import Publisher
from event_fabric.registry import HandlerResult, SubscriptionHandle, SubscriptionRegistry
from event_fabric.services.models import Charge, PaymentStatus

logger = logging.getLogger("payment_service")


class PaymentService:
    """
    Simulated payment service.

    Example:
        service = PaymentService(publisher, registry, declined_customers={"cust-broke"})
        service.start()
        # InventoryReserved -> PaymentCharged or PaymentFailed
        # RefundPayment -> PaymentRefunded
    """

    def __init__(
        self,
        publisher: Publisher,
        registry: SubscriptionRegistry,
        declined_customers: Optional[set[str]] = None,
    ):
        self.publisher = publisher
        self.registry = registry
        self.declined_customers = set(declined_customers or ())
        self.charges: dict[str, Charge] = {}
        self._lock = threading.Lock()
        self._payment_counter = 0
        self._handles: list[SubscriptionHandle] = []

    def start(self) -> None:
        if self._handles:
            logger.warning("PaymentService already started")
            return
        self._handles = [
            self.registry.register(EventType.INVENTORY_RESERVED, self._handle_inventory_reserved, handler_id="payment.charge"),
            self.registry.register(EventType.REFUND_PAYMENT, self._handle_refund, handler_id="payment.refund"),
        ]
        logger.info("PaymentService started - subscribed to events")

    def stop(self) -> None:
        for handle in self._handles:
            self.registry.unregister(handle)
        self._handles = []
        logger.info("PaymentService stopped")

    def _generate_payment_id(self) -> str:
        """Generate a unique payment ID."""
        self._payment_counter += 1
        return f"pay-{self._payment_counter:04d}"

    def get_charge(self, order_id: str) -> Optional[Charge]:
        with self._lock:
            return self.charges.get(order_id)

    # =========================================================================
    # Event Handlers
    # =========================================================================

    def _handle_inventory_reserved(self, envelope: Envelope) -> HandlerResult:
        payload = envelope.json_payload()
        order_id = payload["order_id"]
        customer_id = payload["customer_id"]
        amount = payload["total_amount"]

        with self._lock:
            charge = self.charges.get(order_id)
            if charge is None:
                declined = customer_id in self.declined_customers
                charge = Charge(
                    id=self._generate_payment_id(),
                    order_id=order_id,
                    customer_id=customer_id,
                    amount=amount,
                    status=PaymentStatus.DECLINED if declined else PaymentStatus.CHARGED,
                )
                self.charges[order_id] = charge

        if charge.status == PaymentStatus.DECLINED:
            logger.warning(f"Payment {charge.id} declined for order {order_id} (customer {customer_id})")
            self._reply(
                envelope,
                EventType.PAYMENT_FAILED,
                order_id,
                {"order_id": order_id, "customer_id": customer_id, "reason": "card declined"},
            )
            return HandlerResult.ACK

        logger.info(f"Charged {amount:.2f} for order {order_id} ({charge.id})")
        self._reply(
            envelope,
            EventType.PAYMENT_CHARGED,
            order_id,
            {"order_id": order_id, "payment_id": charge.id, "customer_id": customer_id, "amount": amount},
        )
        return HandlerResult.ACK

    def _handle_refund(self, envelope: Envelope) -> HandlerResult:
        """Compensation: refund a charge."""
        payload = envelope.json_payload()
        order_id = payload["order_id"]

        with self._lock:
            charge = self.charges.get(order_id)
            refunded = charge is not None and charge.status == PaymentStatus.CHARGED
            if refunded:
                charge.status = PaymentStatus.REFUNDED

        if refunded:
            logger.info(f"Refunded {charge.amount:.2f} for order {order_id} ({charge.id})")
        else:
            logger.warning(f"Nothing to refund for order {order_id}; acknowledging refund")

        self._reply(
            envelope,
            EventType.PAYMENT_REFUNDED,
            order_id,
            {"order_id": order_id, "payment_id": payload.get("payment_id")},
        )
        return HandlerResult.ACK

    def _reply(self, cause: Envelope, event_type: EventType, order_id: str, payload: dict) -> None:
        self.publisher.publish(reply(cause, event_type, order_id, payload))
