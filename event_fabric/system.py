"""
Wiring for a complete in-process order fulfillment system.

Each simulated service gets what a separate process would own: its own
subscription registry, publisher and dispatcher (a consumer group on the
shared broker). The idempotency store and saga store are the only shared
state, as they would be in a real deployment.

Two ways to drive it:
- start() / stop(): every dispatcher consumes on its own thread and the
  saga timeout monitor sweeps in the background (demo, API)
- pump(): dispatch synchronously, round-robin, until nothing is left
  (tests, deterministic)
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from event_fabric.codec import EnvelopeCodec
from event_fabric.config import FabricSettings, SagaSettings
from event_fabric.dead_letter import InMemoryDeadLetterSink
from event_fabric.dispatcher import Dispatcher
from event_fabric.idempotency import IdempotencyTracker
from event_fabric.observability import ObservabilitySink, RecordingObservabilitySink
from event_fabric.publisher import BackoffPolicy, Publisher
from event_fabric.registry import SubscriptionRegistry
from event_fabric.saga import InMemorySagaStore, SagaCoordinator, SagaInstance, SagaTimeoutMonitor
from event_fabric.services.inventory import InventoryService
from event_fabric.services.models import OrderStatus
from event_fabric.services.notification import NotificationService
from event_fabric.services.ordering import ORDER_FULFILLMENT, OrderingService
from event_fabric.services.payment import PaymentService
from event_fabric.transport import InMemoryBroker

logger = logging.getLogger("system")

COORDINATOR = "saga-coordinator"

# Customers that drive the failure scenarios
DECLINED_CUSTOMER = "cust-declined"
UNREACHABLE_CUSTOMER = "cust-unreachable"


@dataclass
class FabricSystem:
    """All the parts of a running system, for inspection."""
    settings: FabricSettings
    broker: InMemoryBroker
    codec: EnvelopeCodec
    dead_letters: InMemoryDeadLetterSink
    observability: RecordingObservabilitySink
    tracker: IdempotencyTracker
    ordering: OrderingService
    inventory: InventoryService
    payment: PaymentService
    notification: NotificationService
    coordinator: SagaCoordinator
    monitor: SagaTimeoutMonitor
    dispatchers: dict[str, Dispatcher] = field(default_factory=dict)
    running: bool = False

    def start(self) -> None:
        """Consume on background threads."""
        if self.running:
            return
        for dispatcher in self.dispatchers.values():
            dispatcher.start()
        self.monitor.start()
        self.running = True

    def stop(self) -> None:
        if not self.running:
            return
        self.monitor.stop()
        for dispatcher in self.dispatchers.values():
            dispatcher.stop()
        self.running = False

    def close(self) -> None:
        """Stop everything and release worker pools."""
        self.stop()
        for dispatcher in self.dispatchers.values():
            dispatcher.close()

    def __enter__(self) -> "FabricSystem":
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    def pump(self, max_rounds: int = 10_000) -> int:
        """
        Dispatch synchronously until every consumer group is idle.

        Returns:
            Number of messages dispatched.

        Raises:
            RuntimeError: If the system is running on threads, or did not
                settle within max_rounds.
        """
        if self.running:
            raise RuntimeError("pump() cannot be used while dispatchers run on threads")
        dispatched = 0
        for _ in range(max_rounds):
            progressed = False
            for dispatcher in self.dispatchers.values():
                if dispatcher.run_once(timeout=0) is not None:
                    dispatched += 1
                    progressed = True
            if not progressed:
                return dispatched
        raise RuntimeError(f"System did not settle after {max_rounds} rounds")

    def wait_until_settled(self, correlation_id: Any, timeout: float = 10.0, poll: float = 0.05) -> Optional[SagaInstance]:
        """
        Wait for a saga to finish and for every queue to drain.

        Returns:
            The saga instance, terminal unless the timeout expired.
        """
        deadline = time.monotonic() + timeout
        while True:
            instance = self.coordinator.get(correlation_id)
            finished = instance is not None and instance.is_terminal and not instance.outbox
            if finished and self.broker.pending_count() == 0:
                return instance
            if time.monotonic() >= deadline:
                logger.warning(f"Saga {correlation_id} not settled after {timeout}s")
                return instance
            time.sleep(poll)

    def events_for(self, correlation_id: Any) -> list[str]:
        """Types of every envelope published for one saga, in send order."""
        key = str(correlation_id)
        return [self.codec.decode(data).type for sent_key, data in list(self.broker.sent) if sent_key == key]


def build_system(
    settings: Optional[FabricSettings] = None,
    stock: Optional[dict[str, int]] = None,
    notification_online: bool = True,
    saga_clock: Optional[Callable[[], datetime]] = None,
    observability: Optional[ObservabilitySink] = None,
) -> FabricSystem:
    """
    Build a complete system on one in-memory broker.

    Args:
        settings: Fabric settings shared by every service
        stock: Initial inventory (defaults to the demo catalogue)
        notification_online: When False the notification service never
            subscribes, so sagas stall after payment and time out
        saga_clock: Injected into the coordinator for timeout tests
        observability: Defaults to a recording sink
    """
    settings = settings or FabricSettings()
    broker = InMemoryBroker(partitions=settings.transport.partitions)
    codec = EnvelopeCodec(settings.codec.supported_schema_versions)
    dead_letters = InMemoryDeadLetterSink()
    observability = observability or RecordingObservabilitySink()
    tracker = IdempotencyTracker(retention=timedelta(hours=settings.idempotency.retention_hours))
    backoff = BackoffPolicy.from_settings(settings.publisher)

    registries: dict[str, SubscriptionRegistry] = {}
    dispatchers: dict[str, Dispatcher] = {}

    def wire(name: str) -> tuple[Publisher, SubscriptionRegistry]:
        registry = registries[name] = SubscriptionRegistry()
        # Consumer groups must exist before the first send to see it.
        dispatchers[name] = Dispatcher(
            registry,
            dead_letters=dead_letters,
            tracker=tracker,
            consumer=broker.consumer(name),
            codec=codec,
            settings=settings.dispatcher,
            observability=observability,
            name=name,
        )
        publisher = Publisher(
            broker,
            dead_letters=dead_letters,
            codec=codec,
            backoff=backoff,
            observability=observability,
        )
        return publisher, registry

    ordering = OrderingService(*wire("ordering"))
    inventory = InventoryService(*wire("inventory"), stock=stock)
    payment = PaymentService(*wire("payment"), declined_customers={DECLINED_CUSTOMER})
    notification = NotificationService(*wire("notification"), unreachable_customers={UNREACHABLE_CUSTOMER})

    coordinator_publisher, coordinator_registry = wire(COORDINATOR)
    coordinator_kwargs = {"clock": saga_clock} if saga_clock else {}
    coordinator = SagaCoordinator(
        [ORDER_FULFILLMENT],
        publisher=coordinator_publisher,
        store=InMemorySagaStore(),
        settings=settings.saga,
        observability=observability,
        **coordinator_kwargs,
    )
    coordinator.register(coordinator_registry)

    ordering.start()
    inventory.start()
    payment.start()
    if notification_online:
        notification.start()

    return FabricSystem(
        settings=settings,
        broker=broker,
        codec=codec,
        dead_letters=dead_letters,
        observability=observability,
        tracker=tracker,
        ordering=ordering,
        inventory=inventory,
        payment=payment,
        notification=notification,
        coordinator=coordinator,
        monitor=SagaTimeoutMonitor(coordinator),
        dispatchers=dispatchers,
    )


# =============================================================================
# Scenarios
# =============================================================================

@dataclass(frozen=True)
class Scenario:
    """A canned order and how the system should treat it."""
    name: str
    description: str
    customer_id: str
    line_items: tuple[tuple[str, int], ...]
    total_amount: float
    cancel: bool = False
    notification_online: bool = True


SCENARIOS: dict[str, Scenario] = {
    s.name: s
    for s in (
        Scenario(
            name="success",
            description="Every step succeeds; the order is confirmed",
            customer_id="cust-001",
            line_items=(("sku-keyboard", 1), ("sku-mouse", 2)),
            total_amount=129.97,
        ),
        Scenario(
            name="inventory-failure",
            description="A product is out of stock; the order is cancelled",
            customer_id="cust-002",
            line_items=(("sku-webcam", 1),),
            total_amount=59.99,
        ),
        Scenario(
            name="payment-failure",
            description="The card is declined; stock is released and the order cancelled",
            customer_id=DECLINED_CUSTOMER,
            line_items=(("sku-monitor", 1),),
            total_amount=249.00,
        ),
        Scenario(
            name="notification-failure",
            description="The customer cannot be notified; payment is refunded, stock released",
            customer_id=UNREACHABLE_CUSTOMER,
            line_items=(("sku-keyboard", 1),),
            total_amount=49.99,
        ),
        Scenario(
            name="cancellation",
            description="The customer cancels before any step completed",
            customer_id="cust-003",
            line_items=(("sku-mouse", 1),),
            total_amount=19.99,
            cancel=True,
        ),
        Scenario(
            name="timeout",
            description="The notification service is down; the saga times out and compensates",
            customer_id="cust-004",
            line_items=(("sku-keyboard", 1),),
            total_amount=49.99,
            notification_online=False,
        ),
    )
}


@dataclass
class ScenarioResult:
    scenario: str
    order_id: str
    correlation_id: str
    saga_state: Optional[str]
    order_status: Optional[str]
    events: list[str]
    dead_letters: int
    notifications: list[str]

    def to_dict(self) -> dict[str, Any]:
        return {
            "scenario": self.scenario,
            "order_id": self.order_id,
            "correlation_id": self.correlation_id,
            "saga_state": self.saga_state,
            "order_status": self.order_status,
            "events": self.events,
            "dead_letters": self.dead_letters,
            "notifications": self.notifications,
        }


def scenario_settings(scenario: Scenario, settings: Optional[FabricSettings] = None) -> FabricSettings:
    """Settings for a scenario. The timeout scenario uses a one second deadline."""
    settings = settings or FabricSettings()
    if scenario.notification_online:
        return settings
    return settings.model_copy(update={"saga": SagaSettings(timeout_seconds=1.0, sweep_interval=0.1)})


def place_scenario_order(system: FabricSystem, scenario: Scenario, order_id: str) -> str:
    """Place the scenario's order (and cancel it if asked). Returns the correlation id."""
    envelope = system.ordering.place_order(
        order_id=order_id,
        customer_id=scenario.customer_id,
        line_items=[{"product_id": p, "quantity": q} for p, q in scenario.line_items],
        total_amount=scenario.total_amount,
    )
    if scenario.cancel:
        system.ordering.request_cancellation(order_id, reason="customer changed their mind")
    return str(envelope.correlation_id)


def collect_result(system: FabricSystem, scenario: Scenario, order_id: str, correlation_id: str) -> ScenarioResult:
    instance = system.coordinator.get(correlation_id)
    order = system.ordering.get_order(order_id)
    return ScenarioResult(
        scenario=scenario.name,
        order_id=order_id,
        correlation_id=correlation_id,
        saga_state=instance.label if instance else None,
        order_status=OrderStatus(order.status).value if order else None,
        events=system.events_for(correlation_id),
        dead_letters=system.dead_letters.get_count(),
        notifications=[str(n) for n in system.notification.get_sent_notifications(scenario.customer_id)],
    )


def execute_scenario(
    scenario: Scenario,
    order_id: str = "ord-001",
    settle_timeout: float = 15.0,
) -> tuple[FabricSystem, ScenarioResult]:
    """
    Run a scenario on a fresh threaded system.

    The system is closed afterwards but keeps its state for inspection.
    """
    system = build_system(
        scenario_settings(scenario),
        notification_online=scenario.notification_online,
    )
    try:
        # Consumer groups already exist, so the order (and a cancellation)
        # queue up in partition order before anything consumes them.
        correlation_id = place_scenario_order(system, scenario, order_id)
        system.start()
        system.wait_until_settled(correlation_id, timeout=settle_timeout)
        return system, collect_result(system, scenario, order_id, correlation_id)
    finally:
        system.close()


def run_scenario(name: str, order_id: str = "ord-001", settle_timeout: float = 15.0) -> ScenarioResult:
    """
    Run one scenario by name.

    Raises:
        KeyError: If the scenario is unknown.
    """
    _, result = execute_scenario(SCENARIOS[name], order_id, settle_timeout)
    return result
