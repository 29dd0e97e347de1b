"""
Publisher: hands envelopes to the transport with delivery guarantees.

At-least-once (default): transient transport failures are retried with
exponential backoff. When attempts run out the envelope is dead-lettered and
PublishFailed is raised. A caller must not treat its own transaction as
committed until publish returns.

At-most-once: one attempt. A failure is logged and dead-lettered but not
raised; the caller has explicitly accepted best-effort delivery.

The partition key is always the correlation id so every envelope of one
business transaction lands on the same ordered partition.
"""

import logging
import random
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from event_fabric.codec import EnvelopeCodec
from event_fabric.config import PublisherSettings
from event_fabric.dead_letter import DeadLetter, DeadLetterSink
from event_fabric.envelope import Envelope
from event_fabric.exceptions import PublishFailed, TransientTransportError
from event_fabric.observability import LoggingObservabilitySink, ObservabilitySink, RecordKind
from event_fabric.transport import Transport

logger = logging.getLogger("publisher")


class DeliveryGuarantee(str, Enum):
    AT_LEAST_ONCE = "atLeastOnce"
    AT_MOST_ONCE = "atMostOnce"


@dataclass(frozen=True)
class PublishOptions:
    delivery_guarantee: DeliveryGuarantee = DeliveryGuarantee.AT_LEAST_ONCE


@dataclass
class PublishResult:
    """Outcome of a publish call."""
    event_id: str
    delivered: bool
    attempts: int
    latency_ms: float


@dataclass
class BackoffPolicy:
    """Exponential backoff with a cap and relative jitter."""
    max_attempts: int = 5
    base_delay: float = 0.2
    max_delay: float = 30.0
    jitter: float = 0.2

    @classmethod
    def from_settings(cls, settings: PublisherSettings) -> "BackoffPolicy":
        return cls(
            max_attempts=settings.max_attempts,
            base_delay=settings.base_delay,
            max_delay=settings.max_delay,
            jitter=settings.jitter,
        )

    def compute_delay(self, attempt: int) -> float:
        """Delay in seconds after failed attempt number `attempt` (1-based)."""
        capped = min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)
        if self.jitter:
            return capped * (1 - self.jitter + random.random() * 2 * self.jitter)
        return capped


class Publisher:
    """
    Publishes envelopes for one service process.

    Construct one per process and hand it to domain code; there is no
    module-level default instance.

    Example:
        publisher = Publisher(transport=broker, dead_letters=sink)
        result = publisher.publish(order_placed(...))
        assert result.delivered
    """

    def __init__(
        self,
        transport: Transport,
        dead_letters: DeadLetterSink,
        codec: Optional[EnvelopeCodec] = None,
        backoff: Optional[BackoffPolicy] = None,
        observability: Optional[ObservabilitySink] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            transport: Producer side of the broker
            dead_letters: Where undeliverable envelopes go
            codec: Envelope codec (defaults to the current schema version)
            backoff: Retry policy (defaults to 5 attempts, 200ms base, 30s cap)
            observability: Sink for publish records
            sleep: Injected for tests
            clock: Monotonic clock used for latency, injected for tests
        """
        self.transport = transport
        self.dead_letters = dead_letters
        self.codec = codec or EnvelopeCodec()
        self.backoff = backoff or BackoffPolicy()
        self.observability = observability or LoggingObservabilitySink()
        self._sleep = sleep
        self._clock = clock

    def publish(self, envelope: Envelope, options: Optional[PublishOptions] = None) -> PublishResult:
        """
        Publish an envelope.

        Returns:
            PublishResult with the number of attempts made.

        Raises:
            PublishFailed: At-least-once delivery exhausted its attempts.
        """
        options = options or PublishOptions()
        best_effort = options.delivery_guarantee == DeliveryGuarantee.AT_MOST_ONCE
        max_attempts = 1 if best_effort else self.backoff.max_attempts

        data = self.codec.encode(envelope)
        key = str(envelope.correlation_id)
        started = self._clock()
        last_error: Optional[TransientTransportError] = None

        for attempt in range(1, max_attempts + 1):
            try:
                self.transport.send(data, key)
            except TransientTransportError as e:
                last_error = e
                logger.warning(f"Publish attempt {attempt}/{max_attempts} failed for {envelope}: {e}")
                self.observability.emit(
                    RecordKind.PUBLISH_RETRY,
                    envelope.type,
                    envelope.correlation_id,
                    attempt=attempt,
                    error=str(e),
                )
                if attempt < max_attempts:
                    self._sleep(self.backoff.compute_delay(attempt))
                continue

            latency_ms = (self._clock() - started) * 1000
            logger.info(f"Published {envelope} after {attempt} attempt(s)")
            self.observability.emit(
                RecordKind.PUBLISH,
                envelope.type,
                envelope.correlation_id,
                attempts=attempt,
                latency_ms=round(latency_ms, 3),
            )
            return PublishResult(
                event_id=str(envelope.id),
                delivered=True,
                attempts=attempt,
                latency_ms=latency_ms,
            )

        self.dead_letters.put(
            DeadLetter(
                reason=f"publish failed: {last_error}",
                envelope=envelope,
                raw=data,
                attempt_count=max_attempts,
            )
        )
        if best_effort:
            logger.warning(f"Best-effort publish of {envelope} dropped")
            return PublishResult(
                event_id=str(envelope.id),
                delivered=False,
                attempts=max_attempts,
                latency_ms=(self._clock() - started) * 1000,
            )
        raise PublishFailed(str(envelope.id), max_attempts, last_error)
