"""
Dead-letter sink: where events go when they cannot be processed.

A dead letter records what failed and why so it can be inspected and
replayed by an operator or an automated remediation job.
"""

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional
from uuid import uuid4

from event_fabric.envelope import Envelope

logger = logging.getLogger("dead_letter")


@dataclass
class DeadLetter:
    """
    A message that could not be processed.

    Attributes:
        reason: Human-readable cause
        envelope: The decoded envelope, or None if decoding failed
        raw: The raw wire bytes (always kept, needed when decoding failed)
        handler_id: The failing handler, None for decode/publish failures
        attempt_count: Delivery or publish attempts made before giving up
    """
    reason: str
    envelope: Optional[Envelope] = None
    raw: bytes = b""
    handler_id: Optional[str] = None
    attempt_count: int = 1
    letter_id: str = field(default_factory=lambda: str(uuid4()))
    dead_lettered_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        """JSON-friendly view, for the inspection API."""
        return {
            "letter_id": self.letter_id,
            "reason": self.reason,
            "handler_id": self.handler_id,
            "attempt_count": self.attempt_count,
            "dead_lettered_at": self.dead_lettered_at.isoformat(),
            "event_id": str(self.envelope.id) if self.envelope else None,
            "event_type": self.envelope.type if self.envelope else None,
            "correlation_id": str(self.envelope.correlation_id) if self.envelope else None,
        }

    def __str__(self) -> str:
        subject = str(self.envelope) if self.envelope else f"<{len(self.raw)} raw bytes>"
        handler = f" handler={self.handler_id}" if self.handler_id else ""
        return f"DeadLetter({subject}{handler}, attempts={self.attempt_count}: {self.reason})"


class DeadLetterSink(ABC):
    """Destination for dead letters."""

    @abstractmethod
    def put(self, letter: DeadLetter) -> None:
        """Store a dead letter. Must not raise for ordinary input."""
        ...


class InMemoryDeadLetterSink(DeadLetterSink):
    """
    Inspectable in-memory sink.

    Tracks letters for test assertions and the inspection API.
    """

    def __init__(self):
        self._letters: list[DeadLetter] = []
        self._lock = threading.Lock()

    def put(self, letter: DeadLetter) -> None:
        with self._lock:
            self._letters.append(letter)
        logger.error(f"[DEAD-LETTER] {letter}")

    @property
    def letters(self) -> list[DeadLetter]:
        with self._lock:
            return list(self._letters)

    def get_count(self) -> int:
        with self._lock:
            return len(self._letters)

    def find_by_handler(self, handler_id: str) -> list[DeadLetter]:
        """All letters produced by a given handler."""
        return [letter for letter in self.letters if letter.handler_id == handler_id]
