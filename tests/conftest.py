"""
Shared pytest fixtures for the event fabric tests.

These fixtures provide fresh infrastructure for every test and deterministic
replacements for time: a manual clock for sagas and idempotency records, and
a recorded sleep for publisher backoff.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest

from event_fabric.codec import EnvelopeCodec
from event_fabric.config import DispatcherSettings
from event_fabric.dead_letter import InMemoryDeadLetterSink
from event_fabric.dispatcher import Dispatcher
from event_fabric.envelope import Envelope
from event_fabric.events import order_placed
from event_fabric.exceptions import PublishFailed
from event_fabric.idempotency import IdempotencyTracker
from event_fabric.observability import RecordingObservabilitySink
from event_fabric.publisher import BackoffPolicy, Publisher
from event_fabric.registry import SubscriptionRegistry
from event_fabric.transport import InMemoryBroker, RawMessage


# =============================================================================
# Test doubles
# =============================================================================

class ManualClock:
    """A clock that only moves when told to."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeMessage(RawMessage):
    """A raw message that records how it was settled."""

    def __init__(self, data: bytes, key: str = "key", delivery_attempt: int = 1):
        self.data = data
        self.key = key
        self.delivery_attempt = delivery_attempt
        self.acked = False
        self.requeued: Optional[bool] = None

    def ack(self) -> None:
        self.acked = True

    def nack(self, requeue: bool = True) -> None:
        self.requeued = requeue


class RecordingPublisher:
    """Stands in for a Publisher; keeps what was published."""

    def __init__(self):
        self.published: list[Envelope] = []
        self.fail = False

    def publish(self, envelope: Envelope, options=None):
        if self.fail:
            raise PublishFailed(str(envelope.id), 1)
        self.published.append(envelope)

    @property
    def types(self) -> list[str]:
        return [e.type for e in self.published]


# =============================================================================
# Infrastructure Fixtures
# =============================================================================

@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def codec() -> EnvelopeCodec:
    return EnvelopeCodec()


@pytest.fixture
def broker() -> InMemoryBroker:
    """Fresh broker with a few partitions."""
    return InMemoryBroker(partitions=4)


@pytest.fixture
def dead_letters() -> InMemoryDeadLetterSink:
    return InMemoryDeadLetterSink()


@pytest.fixture
def observability() -> RecordingObservabilitySink:
    return RecordingObservabilitySink()


@pytest.fixture
def registry() -> SubscriptionRegistry:
    return SubscriptionRegistry()


@pytest.fixture
def tracker(clock: ManualClock) -> IdempotencyTracker:
    return IdempotencyTracker(clock=clock)


@pytest.fixture
def sleeps() -> list[float]:
    """Delays the publisher asked to sleep, in order."""
    return []


@pytest.fixture
def publisher(broker, dead_letters, observability, sleeps) -> Publisher:
    """Publisher without jitter that records its backoff instead of sleeping."""
    return Publisher(
        broker,
        dead_letters=dead_letters,
        backoff=BackoffPolicy(max_attempts=5, base_delay=0.2, max_delay=30.0, jitter=0.0),
        observability=observability,
        sleep=sleeps.append,
    )


@pytest.fixture
def recording_publisher() -> RecordingPublisher:
    return RecordingPublisher()


@pytest.fixture
def make_dispatcher(registry, dead_letters, tracker, observability):
    """
    Factory for dispatchers sharing this test's registry, tracker and sinks.

    Every dispatcher created is closed at teardown.
    """
    created: list[Dispatcher] = []

    def factory(**overrides) -> Dispatcher:
        kwargs = {
            "registry": registry,
            "dead_letters": dead_letters,
            "tracker": tracker,
            "observability": observability,
            "settings": DispatcherSettings(worker_pool_size=4),
        }
        kwargs.update(overrides)
        dispatcher = Dispatcher(**kwargs)
        created.append(dispatcher)
        return dispatcher

    yield factory
    for dispatcher in created:
        dispatcher.close()


# =============================================================================
# Envelope Fixtures
# =============================================================================

@pytest.fixture
def order_envelope() -> Envelope:
    """A root OrderPlaced envelope for ord-001."""
    return order_placed(
        order_id="ord-001",
        customer_id="cust-001",
        line_items=[{"product_id": "sku-keyboard", "quantity": 1}],
        total_amount=49.99,
    )


@pytest.fixture
def message_for(codec):
    """Build a FakeMessage carrying an encoded envelope."""

    def factory(envelope: Envelope, delivery_attempt: int = 1) -> FakeMessage:
        return FakeMessage(codec.encode(envelope), str(envelope.correlation_id), delivery_attempt)

    return factory


@pytest.fixture
def raw_message():
    """Build a FakeMessage from arbitrary bytes."""

    def factory(data: bytes, key: str = "key", delivery_attempt: int = 1) -> FakeMessage:
        return FakeMessage(data, key, delivery_attempt)

    return factory
