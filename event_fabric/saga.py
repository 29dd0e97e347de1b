"""
Saga coordinator for multi-step business transactions.

A saga type is declared as a root trigger plus an ordered list of steps. Each
step is reported by a completion event (or a failure event) emitted by the
service that performed it:

    OrderPlaced -> InventoryReserved -> PaymentCharged -> NotificationSent
      STARTED     STEP_COMPLETED(1)   STEP_COMPLETED(2)    COMPLETED

When a step fails, the saga times out, or it is cancelled before any step
completed, the coordinator moves to COMPENSATING and emits one compensating
event per completed step, most recent first. Compensation is sequential:
the next compensating event is emitted once the previous one has been
acknowledged. When every compensation is acknowledged the saga is FAILED.

Rules:
- Steps must complete in definition order; anything else is an anomaly
- Terminal sagas (COMPLETED, FAILED) are never mutated again
- Each envelope id is applied at most once (history)
- State is written with compare-and-set, events are emitted only after the
  state that requires them was persisted (a per-instance outbox), so a
  publish failure never loses an emission; the timeout sweep re-drives it

Ordering: the publisher uses correlation_id as the partition key, so all
envelopes of one saga arrive on one ordered partition. The coordinator does
not re-sequence.
"""

import copy
import logging
import threading
from abc import ABC, abstractmethod
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Optional
from uuid import UUID, uuid4

from event_fabric.config import SagaSettings
from event_fabric.envelope import Envelope
from event_fabric.events import EventType
from event_fabric.exceptions import PublishFailed, SagaAnomaly, SagaTimeout
from event_fabric.observability import LoggingObservabilitySink, ObservabilitySink, RecordKind
from event_fabric.publisher import Publisher
from event_fabric.registry import HandlerResult, SubscriptionHandle, SubscriptionRegistry

logger = logging.getLogger("saga_coordinator")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# Saga definitions
# =============================================================================

@dataclass(frozen=True)
class SagaStep:
    """
    One step of a saga.

    Attributes:
        name: Step name, for logs (e.g. "ReserveInventory")
        completed: Event reporting the step succeeded
        failed: Event reporting the step failed permanently
        compensation: Event that undoes the step, None if nothing to undo
        compensated: Event acknowledging the compensation. None means the
            compensation counts as acknowledged once published.
    """
    name: str
    completed: EventType
    failed: Optional[EventType] = None
    compensation: Optional[EventType] = None
    compensated: Optional[EventType] = None


@dataclass(frozen=True)
class SagaDefinition:
    """A saga type: trigger, ordered steps and optional outcome events."""
    name: str
    trigger: EventType
    steps: tuple[SagaStep, ...]
    cancel_event: Optional[EventType] = None
    completion_event: Optional[EventType] = None
    failure_event: Optional[EventType] = None
    root_compensation: Optional[EventType] = None
    root_compensated: Optional[EventType] = None

    def __post_init__(self):
        if not self.steps:
            raise ValueError(f"Saga '{self.name}' needs at least one step")
        consumed = [self.trigger, self.cancel_event, self.root_compensated]
        for step in self.steps:
            consumed.extend([step.completed, step.failed, step.compensated])
        consumed = [t for t in consumed if t is not None]
        duplicates = {t for t in consumed if consumed.count(t) > 1}
        if duplicates:
            names = sorted(t.value for t in duplicates)
            raise ValueError(f"Saga '{self.name}' uses event types in more than one role: {names}")


class _Role(str, Enum):
    TRIGGER = "trigger"
    STEP_COMPLETED = "step_completed"
    STEP_FAILED = "step_failed"
    CANCEL = "cancel"
    COMPENSATED = "compensated"


@dataclass(frozen=True)
class _Route:
    definition: SagaDefinition
    role: _Role
    step_index: Optional[int] = None


# =============================================================================
# Saga instances
# =============================================================================

class SagaState(str, Enum):
    STARTED = "STARTED"
    STEP_COMPLETED = "STEP_COMPLETED"
    COMPENSATING = "COMPENSATING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


TERMINAL_STATES = frozenset({SagaState.COMPLETED, SagaState.FAILED})


@dataclass
class PendingCompensation:
    """A compensating event queued for emission."""
    event_type: EventType
    step_name: str
    payload: bytes
    acknowledged_by: Optional[EventType] = None
    event_id: str = field(default_factory=lambda: str(uuid4()))
    emitted: bool = False


@dataclass
class OutboxEntry:
    """An outcome event waiting to be published."""
    event_type: EventType
    payload: bytes
    event_id: str = field(default_factory=lambda: str(uuid4()))


@dataclass
class SagaInstance:
    """
    State of one saga, keyed by correlation id.

    `updated_at` is the progress clock used for timeouts; `version` is the
    compare-and-set token.
    """
    correlation_id: str
    saga_type: str
    state: SagaState
    trigger_payload: bytes = b""
    completed_steps: int = 0
    history: list[str] = field(default_factory=list)
    step_payloads: list[bytes] = field(default_factory=list)
    compensations: list[PendingCompensation] = field(default_factory=list)
    outbox: list[OutboxEntry] = field(default_factory=list)
    failure_reason: Optional[str] = None
    started_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)
    finished_at: Optional[datetime] = None
    version: int = 0

    @property
    def label(self) -> str:
        """State as written in logs, e.g. STEP_COMPLETED(2)."""
        if self.state == SagaState.STEP_COMPLETED:
            return f"STEP_COMPLETED({self.completed_steps})"
        return self.state.value

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def has_pending_work(self) -> bool:
        head_waiting = bool(self.compensations) and not self.compensations[0].emitted
        return head_waiting or bool(self.outbox)

    def to_dict(self) -> dict[str, Any]:
        return {
            "correlation_id": self.correlation_id,
            "saga_type": self.saga_type,
            "state": self.label,
            "completed_steps": self.completed_steps,
            "history": list(self.history),
            "pending_compensations": [c.event_type.value for c in self.compensations],
            "failure_reason": self.failure_reason,
            "started_at": self.started_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "version": self.version,
        }


# =============================================================================
# Saga store
# =============================================================================

class SagaStore(ABC):
    """
    Storage for saga instances with atomic conditional writes.

    Implementations must make `create` an insert-if-absent and
    `compare_and_set` a version-checked write.
    """

    @abstractmethod
    def create(self, instance: SagaInstance) -> bool:
        """Insert unless the correlation id exists (live or archived)."""
        ...

    @abstractmethod
    def get(self, correlation_id: str) -> Optional[SagaInstance]:
        """A copy of the live instance, or None."""
        ...

    @abstractmethod
    def compare_and_set(self, instance: SagaInstance, expected_version: int) -> bool:
        """Replace the instance if its stored version is still `expected_version`."""
        ...

    @abstractmethod
    def list(self, states: Optional[Iterable[SagaState]] = None) -> list[SagaInstance]:
        ...

    @abstractmethod
    def archive(self, correlation_id: str) -> bool:
        """Move a live instance to the archive."""
        ...

    @abstractmethod
    def get_archived(self, correlation_id: str) -> Optional[SagaInstance]:
        ...


class InMemorySagaStore(SagaStore):
    """Lock-protected dict store. Returns copies so callers cannot mutate it."""

    def __init__(self):
        self._live: dict[str, SagaInstance] = {}
        self._archived: dict[str, SagaInstance] = {}
        self._lock = threading.Lock()

    def create(self, instance: SagaInstance) -> bool:
        with self._lock:
            cid = instance.correlation_id
            if cid in self._live or cid in self._archived:
                return False
            self._live[cid] = copy.deepcopy(instance)
            return True

    def get(self, correlation_id: str) -> Optional[SagaInstance]:
        with self._lock:
            instance = self._live.get(correlation_id)
            return copy.deepcopy(instance) if instance else None

    def compare_and_set(self, instance: SagaInstance, expected_version: int) -> bool:
        with self._lock:
            current = self._live.get(instance.correlation_id)
            if current is None or current.version != expected_version:
                return False
            instance.version = expected_version + 1
            self._live[instance.correlation_id] = copy.deepcopy(instance)
            return True

    def list(self, states: Optional[Iterable[SagaState]] = None) -> list[SagaInstance]:
        wanted = set(states) if states is not None else None
        with self._lock:
            return [
                copy.deepcopy(instance)
                for instance in self._live.values()
                if wanted is None or instance.state in wanted
            ]

    def archive(self, correlation_id: str) -> bool:
        with self._lock:
            instance = self._live.pop(correlation_id, None)
            if instance is None:
                return False
            self._archived[correlation_id] = instance
            return True

    def get_archived(self, correlation_id: str) -> Optional[SagaInstance]:
        with self._lock:
            instance = self._archived.get(correlation_id)
            return copy.deepcopy(instance) if instance else None


# =============================================================================
# Coordinator
# =============================================================================

_CONFLICT = object()


class SagaCoordinator:
    """
    Drives saga instances from the envelopes delivered to it.

    Example:
        coordinator = SagaCoordinator([ORDER_FULFILLMENT], publisher=publisher)
        coordinator.register(registry)      # subscribe to every saga event
        monitor = SagaTimeoutMonitor(coordinator)
        monitor.start()                     # stuck sagas compensate on their own
    """

    HANDLER_ID = "saga-coordinator"
    LOCK_STRIPES = 64

    def __init__(
        self,
        definitions: Iterable[SagaDefinition],
        publisher: Publisher,
        store: Optional[SagaStore] = None,
        settings: Optional[SagaSettings] = None,
        observability: Optional[ObservabilitySink] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.definitions = list(definitions)
        self.publisher = publisher
        self.store = store or InMemorySagaStore()
        self.settings = settings or SagaSettings()
        self.observability = observability or LoggingObservabilitySink()
        self._clock = clock

        self._routes: dict[EventType, _Route] = {}
        for definition in self.definitions:
            self._add_routes(definition)

        self._locks = [threading.Lock() for _ in range(self.LOCK_STRIPES)]

    @property
    def timeout(self) -> timedelta:
        return timedelta(seconds=self.settings.timeout_seconds)

    def _add_routes(self, definition: SagaDefinition) -> None:
        routes = [(definition.trigger, _Route(definition, _Role.TRIGGER))]
        for index, step in enumerate(definition.steps):
            routes.append((step.completed, _Route(definition, _Role.STEP_COMPLETED, index)))
            if step.failed:
                routes.append((step.failed, _Route(definition, _Role.STEP_FAILED, index)))
            if step.compensated:
                routes.append((step.compensated, _Route(definition, _Role.COMPENSATED, index)))
        if definition.cancel_event:
            routes.append((definition.cancel_event, _Route(definition, _Role.CANCEL)))
        if definition.root_compensated:
            routes.append((definition.root_compensated, _Route(definition, _Role.COMPENSATED)))

        for event_type, route in routes:
            if event_type in self._routes:
                raise ValueError(
                    f"Event type {event_type.value} used by sagas "
                    f"'{self._routes[event_type].definition.name}' and '{definition.name}'"
                )
            self._routes[event_type] = route

    def register(self, registry: SubscriptionRegistry) -> list[SubscriptionHandle]:
        """
        Subscribe the coordinator to every event its sagas react to.

        The coordinator is naturally idempotent (it records applied envelope
        ids), so it bypasses the idempotency tracker.
        """
        return [
            registry.register(
                event_type,
                self.handle,
                ordered=True,
                handler_id=self.HANDLER_ID,
                idempotent=True,
            )
            for event_type in self._routes
        ]

    def get(self, correlation_id: Any) -> Optional[SagaInstance]:
        """Live or archived instance for a correlation id."""
        cid = str(correlation_id)
        return self.store.get(cid) or self.store.get_archived(cid)

    def _lock_for(self, correlation_id: str) -> threading.Lock:
        # Striped by correlation id; callers hold at most one at a time.
        return self._locks[hash(correlation_id) % len(self._locks)]

    # =========================================================================
    # Envelope handling
    # =========================================================================

    def handle(self, envelope: Envelope) -> HandlerResult:
        """Apply one envelope to its saga. Never raises for domain outcomes."""
        event_type = EventType.parse(envelope.type)
        route = self._routes.get(event_type) if event_type else None
        if route is None:
            return HandlerResult.ACK

        cid = str(envelope.correlation_id)
        with self._lock_for(cid):
            for _ in range(self.settings.max_cas_attempts):
                result = self._apply(route, envelope, cid)
                if result is not _CONFLICT:
                    self._flush(cid)
                    return result
            logger.warning(f"Saga {cid}: write contention persisted, asking for redelivery of {envelope}")
            return HandlerResult.RETRY

    def _apply(self, route: _Route, envelope: Envelope, cid: str):
        event_id = str(envelope.id)
        definition = route.definition

        if route.role == _Role.TRIGGER:
            return self._start(definition, envelope, cid)

        instance = self.store.get(cid)
        if instance is None:
            reason = "saga archived" if self.store.get_archived(cid) else "no saga for correlation id"
            return self._anomaly(cid, envelope, reason)
        if event_id in instance.history:
            logger.debug(f"Saga {cid}: {envelope} already applied")
            return HandlerResult.ACK
        if instance.is_terminal:
            return self._anomaly(cid, envelope, f"saga is {instance.label}")

        expected_version = instance.version
        previous = instance.label

        if route.role == _Role.STEP_COMPLETED:
            if not self._complete_step(definition, instance, route.step_index, envelope):
                return self._anomaly(
                    cid, envelope,
                    f"step {route.step_index + 1} out of order in {instance.label}",
                )
        elif route.role == _Role.STEP_FAILED:
            if instance.state == SagaState.COMPENSATING:
                return self._anomaly(cid, envelope, "already compensating")
            step = definition.steps[route.step_index]
            self._begin_compensation(definition, instance, f"{step.name} failed")
        elif route.role == _Role.CANCEL:
            if instance.state != SagaState.STARTED or instance.completed_steps:
                return self._anomaly(cid, envelope, f"cannot cancel saga in {instance.label}")
            self._begin_compensation(definition, instance, "cancelled")
        elif route.role == _Role.COMPENSATED:
            head = instance.compensations[0] if instance.compensations else None
            if (
                instance.state != SagaState.COMPENSATING
                or head is None
                or not head.emitted
                or head.acknowledged_by != EventType(envelope.type)
            ):
                return self._anomaly(cid, envelope, "unexpected compensation acknowledgement")
            instance.compensations.pop(0)
            logger.info(f"Saga {cid}: compensation {head.event_type.value} acknowledged")
            self._finish_if_compensated(definition, instance)

        instance.history.append(event_id)
        instance.updated_at = self._clock()
        if not self.store.compare_and_set(instance, expected_version):
            return _CONFLICT
        self._transitioned(instance, previous, envelope.type)
        return HandlerResult.ACK

    def _start(self, definition: SagaDefinition, envelope: Envelope, cid: str):
        now = self._clock()
        instance = SagaInstance(
            correlation_id=cid,
            saga_type=definition.name,
            state=SagaState.STARTED,
            trigger_payload=envelope.payload,
            history=[str(envelope.id)],
            started_at=now,
            updated_at=now,
        )
        if self.store.create(instance):
            logger.info(f"Saga {cid} ({definition.name}) STARTED by {envelope}")
            self._transitioned(instance, None, envelope.type)
            return HandlerResult.ACK

        existing = self.store.get(cid)
        if existing is not None and str(envelope.id) in existing.history:
            return HandlerResult.ACK
        return self._anomaly(cid, envelope, "saga already started")

    def _complete_step(
        self,
        definition: SagaDefinition,
        instance: SagaInstance,
        step_index: int,
        envelope: Envelope,
    ) -> bool:
        if step_index != instance.completed_steps:
            return False

        step = definition.steps[step_index]
        instance.completed_steps += 1
        instance.step_payloads.append(envelope.payload)

        if instance.state == SagaState.COMPENSATING:
            # The step finished after compensation began; undo it first.
            if step.compensation:
                position = 1 if instance.compensations and instance.compensations[0].emitted else 0
                instance.compensations.insert(
                    position,
                    PendingCompensation(
                        event_type=step.compensation,
                        step_name=step.name,
                        payload=envelope.payload,
                        acknowledged_by=step.compensated,
                    ),
                )
            logger.warning(f"Saga {instance.correlation_id}: {step.name} completed late, compensating it")
            return True

        if instance.completed_steps == len(definition.steps):
            instance.state = SagaState.COMPLETED
            instance.finished_at = self._clock()
            if definition.completion_event:
                instance.outbox.append(OutboxEntry(definition.completion_event, instance.trigger_payload))
        else:
            instance.state = SagaState.STEP_COMPLETED
        return True

    def _begin_compensation(self, definition: SagaDefinition, instance: SagaInstance, reason: str) -> None:
        completed = list(zip(definition.steps[: instance.completed_steps], instance.step_payloads))
        pending = [
            PendingCompensation(
                event_type=step.compensation,
                step_name=step.name,
                payload=payload,
                acknowledged_by=step.compensated,
            )
            for step, payload in reversed(completed)
            if step.compensation
        ]
        if definition.root_compensation:
            pending.append(
                PendingCompensation(
                    event_type=definition.root_compensation,
                    step_name=definition.trigger.value,
                    payload=instance.trigger_payload,
                    acknowledged_by=definition.root_compensated,
                )
            )

        instance.state = SagaState.COMPENSATING
        instance.failure_reason = reason
        instance.compensations = pending
        logger.warning(
            f"Saga {instance.correlation_id} COMPENSATING ({reason}): "
            f"{[c.event_type.value for c in pending]}"
        )
        self._finish_if_compensated(definition, instance)

    def _finish_if_compensated(self, definition: SagaDefinition, instance: SagaInstance) -> None:
        if instance.compensations:
            return
        instance.state = SagaState.FAILED
        instance.finished_at = self._clock()
        if definition.failure_event:
            instance.outbox.append(OutboxEntry(definition.failure_event, instance.trigger_payload))

    def _anomaly(self, cid: str, envelope: Envelope, reason: str) -> HandlerResult:
        anomaly = SagaAnomaly(cid, envelope.type, reason)
        logger.warning(str(anomaly))
        self.observability.emit(
            RecordKind.SAGA_ANOMALY,
            envelope.type,
            cid,
            event_id=str(envelope.id),
            reason=reason,
        )
        return HandlerResult.ACK

    def _transitioned(self, instance: SagaInstance, previous: Optional[str], cause: str) -> None:
        if previous == instance.label:
            return
        if previous is not None:
            logger.info(f"Saga {instance.correlation_id}: {previous} -> {instance.label} on {cause}")
        self.observability.emit(
            RecordKind.SAGA_TRANSITION,
            cause,
            instance.correlation_id,
            saga_type=instance.saga_type,
            from_state=previous,
            to_state=instance.label,
        )

    # =========================================================================
    # Emission
    # =========================================================================

    def _flush(self, cid: str) -> None:
        """
        Publish whatever the persisted instance still owes the world.

        Called with the instance lock held. Stops at the first publish
        failure; the timeout sweep retries later.
        """
        for _ in range(self.settings.max_cas_attempts * 4):
            instance = self.store.get(cid)
            if instance is None or not instance.has_pending_work:
                return
            definition = self._definition(instance.saga_type)
            expected_version = instance.version
            previous = instance.label
            cause = UUID(instance.history[-1]) if instance.history else None

            head = instance.compensations[0] if instance.compensations else None
            if head is not None and not head.emitted:
                if not self._emit(head.event_type, head.event_id, head.payload, cid, cause):
                    return
                head.emitted = True
                if head.acknowledged_by is None:
                    instance.compensations.pop(0)
                    self._finish_if_compensated(definition, instance)
            else:
                entry = instance.outbox[0]
                if not self._emit(entry.event_type, entry.event_id, entry.payload, cid, cause):
                    return
                instance.outbox.pop(0)

            if self.store.compare_and_set(instance, expected_version):
                self._transitioned(instance, previous, "compensation emitted")
        logger.error(f"Saga {cid}: giving up flushing for now, sweep will retry")

    def _emit(
        self,
        event_type: EventType,
        event_id: str,
        payload: bytes,
        cid: str,
        cause: Optional[UUID],
    ) -> bool:
        envelope = Envelope(
            id=UUID(event_id),
            type=event_type,
            correlation_id=UUID(cid),
            causation_id=cause,
            payload=payload,
        )
        try:
            self.publisher.publish(envelope)
        except PublishFailed as e:
            logger.error(f"Saga {cid}: could not emit {event_type.value}: {e}")
            return False
        return True

    def _definition(self, name: str) -> SagaDefinition:
        for definition in self.definitions:
            if definition.name == name:
                return definition
        raise KeyError(f"Unknown saga type: {name}")

    # =========================================================================
    # Housekeeping
    # =========================================================================

    def check_timeouts(self) -> list[str]:
        """
        Compensate sagas that made no progress before the deadline.

        Also re-drives emissions that failed earlier.

        Returns:
            Correlation ids of the sagas that timed out.
        """
        now = self._clock()
        timed_out = []
        for instance in self.store.list():
            cid = instance.correlation_id
            with self._lock_for(cid):
                for _ in range(self.settings.max_cas_attempts):
                    current = self.store.get(cid)
                    if current is None or current.state not in (SagaState.STARTED, SagaState.STEP_COMPLETED):
                        break
                    waited = now - current.updated_at
                    if waited <= self.timeout:
                        break
                    expected_version = current.version
                    previous = current.label
                    timeout = SagaTimeout(cid, previous, waited.total_seconds())
                    self._begin_compensation(self._definition(current.saga_type), current, str(timeout))
                    current.updated_at = now
                    if self.store.compare_and_set(current, expected_version):
                        logger.warning(str(timeout))
                        self._transitioned(current, previous, "SagaTimeout")
                        timed_out.append(cid)
                        break
                self._flush(cid)
        return timed_out

    def archive_finished(self) -> int:
        """Archive terminal sagas older than the retention period."""
        cutoff = self._clock() - timedelta(hours=self.settings.retention_hours)
        archived = 0
        for instance in self.store.list(TERMINAL_STATES):
            if instance.outbox or instance.finished_at is None or instance.finished_at > cutoff:
                continue
            if self.store.archive(instance.correlation_id):
                archived += 1
        if archived:
            logger.info(f"Archived {archived} finished saga(s)")
        return archived


class SagaTimeoutMonitor:
    """
    Background sweep: timeouts, failed emissions and archiving.

    Runs on its own thread so a stuck saga compensates without any inbound
    envelope.
    """

    def __init__(self, coordinator: SagaCoordinator, interval: Optional[float] = None):
        self.coordinator = coordinator
        self.interval = interval if interval is not None else coordinator.settings.sweep_interval
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def sweep(self) -> list[str]:
        """One pass. Returns the correlation ids that timed out."""
        timed_out = self.coordinator.check_timeouts()
        self.coordinator.archive_finished()
        return timed_out

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="saga-timeout-monitor", daemon=True)
        self._thread.start()
        logger.info("Saga timeout monitor started")

    def stop(self, timeout: float = 5.0) -> None:
        if self._thread is None:
            return
        self._stop_event.set()
        self._thread.join(timeout)
        self._thread = None
        logger.info("Saga timeout monitor stopped")

    def _run(self) -> None:
        while not self._stop_event.wait(self.interval):
            try:
                self.sweep()
            except Exception:
                logger.exception("Saga sweep failed")
