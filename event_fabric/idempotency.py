"""
Idempotency tracker: turns at-least-once delivery into effectively-once
side effects.

A processed-event record is keyed by (handler_id, event_id). Marking is a
conditional insert: the first writer wins and every later attempt for the
same key observes "already processed". Several dispatcher replicas can share
one store safely as long as the store's insert is atomic.
"""

import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

logger = logging.getLogger("idempotency")

IdempotencyKey = tuple[str, str]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ProcessedEventStore(ABC):
    """Storage for processed-event records."""

    @abstractmethod
    def insert_if_absent(self, key: IdempotencyKey, processed_at: datetime, expired_before: datetime) -> bool:
        """
        Atomically insert a record.

        A record processed before `expired_before` counts as absent and is
        replaced.

        Returns:
            True if this call inserted the record, False if a live record exists.
        """
        ...

    @abstractmethod
    def get(self, key: IdempotencyKey) -> Optional[datetime]:
        """processed_at for a key, or None."""
        ...

    @abstractmethod
    def delete(self, key: IdempotencyKey) -> bool:
        ...

    @abstractmethod
    def purge_before(self, cutoff: datetime) -> int:
        """Delete records processed before `cutoff`. Returns the count."""
        ...


class InMemoryProcessedEventStore(ProcessedEventStore):
    """Lock-protected dict store, shared by replicas in one process."""

    def __init__(self):
        self._records: dict[IdempotencyKey, datetime] = {}
        self._lock = threading.Lock()

    def insert_if_absent(self, key: IdempotencyKey, processed_at: datetime, expired_before: datetime) -> bool:
        with self._lock:
            existing = self._records.get(key)
            if existing is not None and existing >= expired_before:
                return False
            self._records[key] = processed_at
            return True

    def get(self, key: IdempotencyKey) -> Optional[datetime]:
        with self._lock:
            return self._records.get(key)

    def delete(self, key: IdempotencyKey) -> bool:
        with self._lock:
            return self._records.pop(key, None) is not None

    def purge_before(self, cutoff: datetime) -> int:
        with self._lock:
            expired = [key for key, at in self._records.items() if at < cutoff]
            for key in expired:
                del self._records[key]
            return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)


class IdempotencyTracker:
    """
    Records which handler has processed which event.

    Example:
        tracker = IdempotencyTracker()
        if tracker.mark_processed("payment.charge", event_id):
            charge_card()
        else:
            pass  # duplicate delivery, skip
    """

    def __init__(
        self,
        store: Optional[ProcessedEventStore] = None,
        retention: timedelta = timedelta(hours=24),
        clock: Callable[[], datetime] = _utcnow,
    ):
        """
        Args:
            store: Shared record store (defaults to in-memory)
            retention: How long a record suppresses redeliveries. Must cover
                the longest plausible redelivery delay.
            clock: Injected for tests
        """
        if retention <= timedelta(0):
            raise ValueError("retention must be positive")
        self.store = store or InMemoryProcessedEventStore()
        self.retention = retention
        self._clock = clock

    def should_process(self, handler_id: str, event_id: str) -> bool:
        """True unless a live record exists for (handler_id, event_id)."""
        processed_at = self.store.get((handler_id, str(event_id)))
        if processed_at is None:
            return True
        return processed_at < self._clock() - self.retention

    def mark_processed(self, handler_id: str, event_id: str) -> bool:
        """
        Claim (handler_id, event_id).

        Returns:
            True if this caller won the claim, False if the event was already
            processed (or claimed) by someone else.
        """
        now = self._clock()
        won = self.store.insert_if_absent((handler_id, str(event_id)), now, now - self.retention)
        if not won:
            logger.info(f"Already processed: handler={handler_id} event={event_id}")
        return won

    def release(self, handler_id: str, event_id: str) -> None:
        """Drop a claim so the event can be processed again."""
        if self.store.delete((handler_id, str(event_id))):
            logger.debug(f"Released claim: handler={handler_id} event={event_id}")

    def purge_expired(self) -> int:
        """Remove records older than the retention window."""
        removed = self.store.purge_before(self._clock() - self.retention)
        if removed:
            logger.info(f"Purged {removed} expired processed-event record(s)")
        return removed
