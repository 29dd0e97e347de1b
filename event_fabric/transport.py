"""
Transport boundary and an in-memory partitioned broker.

The core does not implement a broker. It needs a producer that can `send`
bytes under a partition key and consumers whose messages expose `ack()` and
`nack(requeue)`. In production these wrap a real topic/queue client.

The in-memory broker is a test double and demo substrate:
- Messages are routed to a partition by key (the correlation id)
- Every consumer group receives its own copy of each message
- At most one message per partition per group is in flight, which gives
  per-key ordering the same way a partitioned log does
- Transient send failures can be simulated for retry testing
"""

import logging
import random
import threading
import time
import zlib
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from event_fabric.exceptions import TransientTransportError

logger = logging.getLogger("transport")


class RawMessage(ABC):
    """A message received from the transport, not yet settled."""

    data: bytes
    key: str
    delivery_attempt: int

    @abstractmethod
    def ack(self) -> None:
        """Mark the message consumed."""
        ...

    @abstractmethod
    def nack(self, requeue: bool = True) -> None:
        """Reject the message, redelivering it later if `requeue`."""
        ...


class Transport(ABC):
    """Producer side of the transport."""

    @abstractmethod
    def send(self, data: bytes, key: str) -> None:
        """
        Hand bytes to the broker.

        Raises:
            TransientTransportError: If the broker is temporarily unavailable.
        """
        ...


class Consumer(ABC):
    """Consumer side of the transport."""

    @abstractmethod
    def receive(self, timeout: float = 0.1) -> Optional[RawMessage]:
        """Return the next message, or None if none arrived within `timeout`."""
        ...

    def close(self) -> None:
        """Release consumer resources."""


# =============================================================================
# In-memory broker
# =============================================================================

@dataclass
class _Delivery:
    data: bytes
    key: str
    attempt: int = 1


@dataclass
class _GroupState:
    partitions: list[deque]
    in_flight: set[int] = field(default_factory=set)
    next_partition: int = 0


@dataclass
class DeadLetteredMessage:
    """A message rejected without requeue, kept by the broker for inspection."""
    group_id: str
    data: bytes
    key: str
    attempts: int
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class InMemoryMessage(RawMessage):
    """A delivery from the in-memory broker."""

    def __init__(self, broker: "InMemoryBroker", group_id: str, partition: int, delivery: _Delivery):
        self._broker = broker
        self._group_id = group_id
        self._partition = partition
        self._delivery = delivery
        self._settled = False
        self.data = delivery.data
        self.key = delivery.key
        self.delivery_attempt = delivery.attempt

    @property
    def partition(self) -> int:
        return self._partition

    @property
    def settled(self) -> bool:
        return self._settled

    def ack(self) -> None:
        if self._settle():
            self._broker._release(self._group_id, self._partition, None)

    def nack(self, requeue: bool = True) -> None:
        if not self._settle():
            return
        if requeue:
            redelivery = _Delivery(self.data, self.key, self.delivery_attempt + 1)
            self._broker._release(self._group_id, self._partition, redelivery)
        else:
            self._broker._dead_letter(self._group_id, self._delivery)
            self._broker._release(self._group_id, self._partition, None)

    def _settle(self) -> bool:
        if self._settled:
            logger.warning(f"Message on partition {self._partition} already settled")
            return False
        self._settled = True
        return True


class InMemoryConsumer(Consumer):
    """Consumer bound to one consumer group. Replicas share the group's queues."""

    def __init__(self, broker: "InMemoryBroker", group_id: str):
        self._broker = broker
        self.group_id = group_id

    def receive(self, timeout: float = 0.1) -> Optional[RawMessage]:
        return self._broker._receive(self.group_id, timeout)


class InMemoryBroker(Transport):
    """
    Partitioned in-memory broker with consumer groups.

    Example:
        broker = InMemoryBroker(partitions=4)
        consumer = broker.consumer("inventory-service")
        broker.send(b"...", key=str(correlation_id))
        message = consumer.receive()
        message.ack()
    """

    def __init__(self, partitions: int = 8, fail_rate: float = 0.0):
        """
        Args:
            partitions: Number of partitions per consumer group.
            fail_rate: Probability (0.0 to 1.0) that a send raises
                TransientTransportError, for testing.
        """
        if partitions < 1:
            raise ValueError("partitions must be >= 1")
        self.partitions = partitions
        self.fail_rate = fail_rate
        self._groups: dict[str, _GroupState] = {}
        self._condition = threading.Condition()
        self._fail_next = 0
        self.send_attempts = 0
        self.sent: list[tuple[str, bytes]] = []
        self.dead_lettered: list[DeadLetteredMessage] = []

    # =========================================================================
    # Producer side
    # =========================================================================

    def fail_next(self, count: int) -> None:
        """Make the next `count` sends raise TransientTransportError."""
        with self._condition:
            self._fail_next = count

    def send(self, data: bytes, key: str) -> None:
        with self._condition:
            self.send_attempts += 1
            if self._fail_next > 0:
                self._fail_next -= 1
                raise TransientTransportError("Simulated broker unavailability")
            if self.fail_rate and random.random() < self.fail_rate:
                raise TransientTransportError("Simulated broker unavailability")

            partition = self.partition_for(key)
            for group in self._groups.values():
                group.partitions[partition].append(_Delivery(data, key))
            self.sent.append((key, data))
            self._condition.notify_all()

    def partition_for(self, key: str) -> int:
        """Stable partition for a key."""
        return zlib.crc32(key.encode("utf-8")) % self.partitions

    # =========================================================================
    # Consumer side
    # =========================================================================

    def consumer(self, group_id: str) -> InMemoryConsumer:
        """
        Create a consumer for a group.

        A group only receives messages sent after it was first created.
        """
        with self._condition:
            if group_id not in self._groups:
                self._groups[group_id] = _GroupState(
                    partitions=[deque() for _ in range(self.partitions)]
                )
        return InMemoryConsumer(self, group_id)

    def pending_count(self, group_id: Optional[str] = None) -> int:
        """Messages queued or in flight, for one group or all groups."""
        with self._condition:
            groups = [self._groups[group_id]] if group_id else list(self._groups.values())
            return sum(
                sum(len(q) for q in group.partitions) + len(group.in_flight)
                for group in groups
            )

    def _receive(self, group_id: str, timeout: float) -> Optional[InMemoryMessage]:
        deadline = time.monotonic() + timeout
        with self._condition:
            group = self._groups[group_id]
            while True:
                for offset in range(self.partitions):
                    index = (group.next_partition + offset) % self.partitions
                    if index in group.in_flight or not group.partitions[index]:
                        continue
                    delivery = group.partitions[index].popleft()
                    group.in_flight.add(index)
                    group.next_partition = (index + 1) % self.partitions
                    return InMemoryMessage(self, group_id, index, delivery)

                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return None
                self._condition.wait(remaining)

    def _release(self, group_id: str, partition: int, redelivery: Optional[_Delivery]) -> None:
        with self._condition:
            group = self._groups[group_id]
            if redelivery is not None:
                group.partitions[partition].appendleft(redelivery)
            group.in_flight.discard(partition)
            self._condition.notify_all()

    def _dead_letter(self, group_id: str, delivery: _Delivery) -> None:
        with self._condition:
            self.dead_lettered.append(
                DeadLetteredMessage(group_id, delivery.data, delivery.key, delivery.attempt)
            )
        logger.warning(f"[{group_id}] Message with key {delivery.key} routed to broker dead-letter")
