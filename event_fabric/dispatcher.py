"""
Dispatcher: turns raw transport messages into handler invocations.

For each inbound message:
1. Decode it. A DecodeError dead-letters the raw bytes and acknowledges the
   message so a poison message is not redelivered forever.
2. Look up the registrations for the envelope's type.
3. Start unordered handlers on the worker pool, then run the ordered chain
   in registration order. A `retry` stops the ordered chain.
4. Settle the message: if any handler asked for a retry the message is
   nacked for redelivery; otherwise it is acknowledged. Handlers that
   returned `fail` are dead-lettered with their handler id.

Non-idempotent handlers are guarded by the idempotency tracker: the
dispatcher claims (handler_id, event_id) before invoking the handler and
skips the call if another delivery already claimed it. A claim is released
when the handler does not succeed so the event can be processed again.
"""

import logging
import os
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional

from event_fabric.codec import EnvelopeCodec
from event_fabric.config import DispatcherSettings
from event_fabric.dead_letter import DeadLetter, DeadLetterSink
from event_fabric.envelope import Envelope
from event_fabric.events import EventType
from event_fabric.exceptions import (
    DecodeError,
    DuplicateSuppressed,
    HandlerFailure,
    PublishFailed,
    TransientTransportError,
)
from event_fabric.idempotency import IdempotencyTracker
from event_fabric.observability import LoggingObservabilitySink, ObservabilitySink, RecordKind
from event_fabric.registry import HandlerResult, Registration, SubscriptionRegistry
from event_fabric.transport import Consumer, RawMessage

logger = logging.getLogger("dispatcher")


class DispatchOutcome(str, Enum):
    """How a raw message was settled."""
    ACKED = "acked"
    REQUEUED = "requeued"
    DEAD_LETTERED = "dead_lettered"


@dataclass
class DispatchReport:
    """What happened to one message."""
    outcome: DispatchOutcome
    envelope: Optional[Envelope] = None
    results: dict[str, HandlerResult] = field(default_factory=dict)
    suppressed: list[str] = field(default_factory=list)


class Dispatcher:
    """
    Consumes messages for one service process.

    Example:
        registry = SubscriptionRegistry()
        registry.register(EventType.ORDER_PLACED, handle_order_placed)

        with Dispatcher(registry, dead_letters=sink, consumer=broker.consumer("inventory")) as dispatcher:
            dispatcher.start()
            ...
            dispatcher.stop()
    """

    def __init__(
        self,
        registry: SubscriptionRegistry,
        dead_letters: DeadLetterSink,
        tracker: Optional[IdempotencyTracker] = None,
        consumer: Optional[Consumer] = None,
        codec: Optional[EnvelopeCodec] = None,
        settings: Optional[DispatcherSettings] = None,
        observability: Optional[ObservabilitySink] = None,
        name: str = "dispatcher",
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            registry: Handler registrations for this service
            dead_letters: Where failed and undecodable messages go
            tracker: Duplicate suppression (shared across replicas)
            consumer: Transport consumer, needed for run_once/start
            codec: Envelope codec
            settings: Worker pool size, redelivery limit, poll timeout
            observability: Sink for consume records
            name: Used in log lines and the worker thread name
        """
        self.registry = registry
        self.dead_letters = dead_letters
        self.tracker = tracker or IdempotencyTracker()
        self.consumer = consumer
        self.codec = codec or EnvelopeCodec()
        self.settings = settings or DispatcherSettings()
        self.observability = observability or LoggingObservabilitySink()
        self.name = name
        self._clock = clock

        pool_size = self.settings.worker_pool_size or os.cpu_count() or 1
        self._executor = ThreadPoolExecutor(max_workers=pool_size, thread_name_prefix=f"{name}-worker")
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # =========================================================================
    # Message processing
    # =========================================================================

    def dispatch(self, message: RawMessage) -> DispatchReport:
        """Process and settle one raw message."""
        started = self._clock()
        try:
            envelope = self.codec.decode(message.data)
        except DecodeError as e:
            logger.error(f"[{self.name}] Undecodable message (key={message.key}): {e}")
            self.dead_letters.put(
                DeadLetter(reason=str(e), raw=message.data, attempt_count=message.delivery_attempt)
            )
            message.ack()
            return DispatchReport(outcome=DispatchOutcome.DEAD_LETTERED)

        event_type = EventType.parse(envelope.type)
        if event_type is None:
            logger.warning(f"[{self.name}] Unknown event type '{envelope.type}'; acknowledging")
        registrations = self.registry.handlers_for(event_type) if event_type else []
        if not registrations:
            logger.debug(f"[{self.name}] No handlers for event type '{envelope.type}'")
            message.ack()
            return DispatchReport(outcome=DispatchOutcome.ACKED, envelope=envelope)

        report = DispatchReport(outcome=DispatchOutcome.ACKED, envelope=envelope)
        final_delivery = message.delivery_attempt >= self.settings.max_deliveries

        futures = [
            (registration, self._executor.submit(self._invoke, registration, envelope, message, final_delivery, report))
            for registration in registrations
            if not registration.ordered
        ]

        for registration in registrations:
            if not registration.ordered:
                continue
            result = self._invoke(registration, envelope, message, final_delivery, report)
            report.results[registration.handler_id] = result
            if result == HandlerResult.RETRY:
                logger.info(
                    f"[{self.name}] {registration.handler_id} asked to retry {envelope}; "
                    "stopping ordered chain"
                )
                break

        for registration, future in futures:
            report.results[registration.handler_id] = future.result()

        if HandlerResult.RETRY in report.results.values():
            message.nack(requeue=True)
            report.outcome = DispatchOutcome.REQUEUED
        else:
            message.ack()

        self.observability.emit(
            RecordKind.CONSUME,
            envelope.type,
            envelope.correlation_id,
            consumer=self.name,
            outcome=report.outcome.value,
            attempt=message.delivery_attempt,
            handlers=len(report.results),
            latency_ms=round((self._clock() - started) * 1000, 3),
        )
        return report

    def _invoke(
        self,
        registration: Registration,
        envelope: Envelope,
        message: RawMessage,
        final_delivery: bool,
        report: DispatchReport,
    ) -> HandlerResult:
        handler_id = registration.handler_id
        event_id = str(envelope.id)

        claimed = False
        if not registration.idempotent:
            if not self.tracker.mark_processed(handler_id, event_id):
                skipped = DuplicateSuppressed(handler_id, event_id)
                logger.info(f"[{self.name}] {skipped}")
                report.suppressed.append(handler_id)
                self.observability.emit(
                    RecordKind.DUPLICATE_SUPPRESSED,
                    envelope.type,
                    envelope.correlation_id,
                    handler_id=handler_id,
                    event_id=event_id,
                )
                return HandlerResult.ACK
            claimed = True

        reason = "handler returned fail"
        try:
            outcome = registration.handler(envelope)
            result = HandlerResult.ACK if outcome is None else HandlerResult(outcome)
        except HandlerFailure as e:
            result, reason = HandlerResult.FAIL, str(e)
        except (TransientTransportError, PublishFailed) as e:
            logger.warning(f"[{self.name}] {handler_id} hit a transient error on {envelope}: {e}")
            result = HandlerResult.RETRY
        except Exception as e:
            logger.exception(f"[{self.name}] {handler_id} raised on {envelope}")
            result, reason = HandlerResult.FAIL, f"unhandled {type(e).__name__}: {e}"

        if result == HandlerResult.RETRY and final_delivery:
            result = HandlerResult.FAIL
            reason = f"retry limit exhausted after {message.delivery_attempt} deliveries"

        if result != HandlerResult.ACK and claimed:
            self.tracker.release(handler_id, event_id)

        if result == HandlerResult.FAIL:
            self.dead_letters.put(
                DeadLetter(
                    reason=reason,
                    envelope=envelope,
                    raw=message.data,
                    handler_id=handler_id,
                    attempt_count=message.delivery_attempt,
                )
            )
        return result

    # =========================================================================
    # Consumption loop
    # =========================================================================

    def run_once(self, timeout: Optional[float] = None) -> Optional[DispatchReport]:
        """Receive and dispatch at most one message."""
        if self.consumer is None:
            raise RuntimeError(f"Dispatcher '{self.name}' has no consumer")
        message = self.consumer.receive(self.settings.poll_timeout if timeout is None else timeout)
        if message is None:
            return None
        try:
            return self.dispatch(message)
        except Exception as e:
            if message.delivery_attempt >= self.settings.max_deliveries:
                logger.exception(f"[{self.name}] Dispatch crashed on final delivery; dead-lettering message")
                self.dead_letters.put(
                    DeadLetter(
                        reason=f"dispatch crashed: {type(e).__name__}: {e}",
                        raw=message.data,
                        attempt_count=message.delivery_attempt,
                    )
                )
                message.ack()
                return DispatchReport(outcome=DispatchOutcome.DEAD_LETTERED)
            logger.exception(f"[{self.name}] Dispatch crashed; requeueing message")
            message.nack(requeue=True)
            return None

    def start(self) -> None:
        """Consume on a background thread until stop() is called."""
        if self._thread is not None:
            logger.warning(f"Dispatcher '{self.name}' already started")
            return
        if self.consumer is None:
            raise RuntimeError(f"Dispatcher '{self.name}' has no consumer")
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
        self._thread.start()
        logger.info(f"Dispatcher '{self.name}' started")

    def stop(self, timeout: float = 5.0) -> None:
        if self._thread is None:
            return
        self._stop_event.set()
        self._thread.join(timeout)
        self._thread = None
        logger.info(f"Dispatcher '{self.name}' stopped")

    def close(self) -> None:
        """Stop consuming and shut down the worker pool."""
        self.stop()
        self._executor.shutdown(wait=True)
        if self.consumer is not None:
            self.consumer.close()

    def _run(self) -> None:
        while not self._stop_event.is_set():
            self.run_once()

    def __enter__(self) -> "Dispatcher":
        return self

    def __exit__(self, *args: object) -> None:
        self.close()
