"""
Structured observability records.

The core emits records describing publish/consume latency, retries and saga
transitions. It does not persist or visualize them; a collector behind an
ObservabilitySink does. The default sink writes them to the
"observability" logger.
"""

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

logger = logging.getLogger("observability")


class RecordKind(str, Enum):
    """Kinds of observability records."""
    PUBLISH = "publish"
    PUBLISH_RETRY = "publish_retry"
    CONSUME = "consume"
    DUPLICATE_SUPPRESSED = "duplicate_suppressed"
    SAGA_TRANSITION = "saga_transition"
    SAGA_ANOMALY = "saga_anomaly"


@dataclass
class ObservabilityRecord:
    kind: RecordKind
    event_type: Optional[str] = None
    correlation_id: Optional[str] = None
    fields: dict[str, Any] = field(default_factory=dict)
    recorded_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class ObservabilitySink(ABC):
    """Destination for observability records."""

    @abstractmethod
    def record(self, record: ObservabilityRecord) -> None:
        ...

    def emit(
        self,
        kind: RecordKind,
        event_type: Optional[str] = None,
        correlation_id: Optional[Any] = None,
        **fields: Any,
    ) -> None:
        """Build and record a record. Sink failures never reach the caller."""
        record = ObservabilityRecord(
            kind=kind,
            event_type=event_type,
            correlation_id=str(correlation_id) if correlation_id is not None else None,
            fields=fields,
        )
        try:
            self.record(record)
        except Exception as e:
            logger.warning(f"Observability sink dropped {kind.value} record: {e}")


class LoggingObservabilitySink(ObservabilitySink):
    """Writes records as key=value log lines."""

    def record(self, record: ObservabilityRecord) -> None:
        details = " ".join(f"{key}={value}" for key, value in sorted(record.fields.items()))
        logger.info(
            f"{record.kind.value} type={record.event_type} "
            f"correlation={record.correlation_id} {details}".rstrip()
        )


class RecordingObservabilitySink(ObservabilitySink):
    """Keeps records in memory for inspection."""

    def __init__(self):
        self.records: list[ObservabilityRecord] = []
        self._lock = threading.Lock()

    def record(self, record: ObservabilityRecord) -> None:
        with self._lock:
            self.records.append(record)

    def of_kind(self, kind: RecordKind) -> list[ObservabilityRecord]:
        with self._lock:
            return [r for r in self.records if r.kind == kind]
