"""
Domain service simulators for the order fulfillment saga.

These services represent the bounded contexts taking part in an order:
- Ordering: Places and cancels orders
- Inventory: Reserves and releases stock
- Payment: Charges and refunds customers
- Notification: Confirms orders to customers

Each service only publishes events and registers handlers. None of them
calls another, and none of them drives the saga; the coordinator does.
"""

from event_fabric.services.inventory import InventoryService
from event_fabric.services.notification import NotificationService
from event_fabric.services.ordering import ORDER_FULFILLMENT, OrderingService
from event_fabric.services.payment import PaymentService

__all__ = [
    "ORDER_FULFILLMENT",
    "InventoryService",
    "NotificationService",
    "OrderingService",
    "PaymentService",
]
