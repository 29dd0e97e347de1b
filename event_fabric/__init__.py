"""
Event fabric: an event-driven coordination core.

Services exchange immutable envelopes over an at-least-once transport:
- Publisher: delivery guarantees, retries with backoff, dead-lettering
- Dispatcher: decodes, routes to registered handlers, settles messages
- IdempotencyTracker: turns redeliveries into effectively-once side effects
- SagaCoordinator: drives multi-step transactions and their compensation
"""

from event_fabric.codec import EnvelopeCodec
from event_fabric.config import FabricSettings, load_settings
from event_fabric.dead_letter import DeadLetter, DeadLetterSink, InMemoryDeadLetterSink
from event_fabric.dispatcher import DispatchOutcome, Dispatcher
from event_fabric.envelope import Envelope
from event_fabric.events import EventType
from event_fabric.idempotency import IdempotencyTracker
from event_fabric.publisher import DeliveryGuarantee, PublishOptions, Publisher
from event_fabric.registry import HandlerResult, SubscriptionRegistry
from event_fabric.saga import SagaCoordinator, SagaDefinition, SagaState, SagaStep, SagaTimeoutMonitor
from event_fabric.transport import InMemoryBroker

__all__ = [
    "DeadLetter",
    "DeadLetterSink",
    "DeliveryGuarantee",
    "DispatchOutcome",
    "Dispatcher",
    "Envelope",
    "EnvelopeCodec",
    "EventType",
    "FabricSettings",
    "HandlerResult",
    "IdempotencyTracker",
    "InMemoryBroker",
    "InMemoryDeadLetterSink",
    "PublishOptions",
    "Publisher",
    "SagaCoordinator",
    "SagaDefinition",
    "SagaState",
    "SagaStep",
    "SagaTimeoutMonitor",
    "SubscriptionRegistry",
    "load_settings",
]
