"""
Tests for the in-memory broker.
"""

import pytest

from event_fabric.exceptions import TransientTransportError
from event_fabric.transport import InMemoryBroker


class TestInMemoryBroker:
    """Tests for partitioning, consumer groups and settlement."""

    def test_send_and_receive(self, broker: InMemoryBroker):
        consumer = broker.consumer("inventory")
        broker.send(b"hello", "key-1")

        message = consumer.receive(timeout=0)

        assert message.data == b"hello"
        assert message.key == "key-1"
        assert message.delivery_attempt == 1

    def test_receive_times_out(self, broker):
        consumer = broker.consumer("inventory")
        assert consumer.receive(timeout=0) is None

    def test_each_group_gets_a_copy(self, broker):
        inventory = broker.consumer("inventory")
        payment = broker.consumer("payment")
        broker.send(b"hello", "key-1")

        assert inventory.receive(timeout=0).data == b"hello"
        assert payment.receive(timeout=0).data == b"hello"

    def test_group_only_sees_later_messages(self, broker):
        broker.send(b"before", "key-1")
        consumer = broker.consumer("late")

        assert consumer.receive(timeout=0) is None

    def test_replicas_share_a_group(self, broker):
        first = broker.consumer("inventory")
        second = broker.consumer("inventory")
        broker.send(b"hello", "key-1")

        assert first.receive(timeout=0) is not None
        assert second.receive(timeout=0) is None

    def test_partition_is_stable_per_key(self, broker):
        assert broker.partition_for("abc") == broker.partition_for("abc")
        assert 0 <= broker.partition_for("abc") < broker.partitions

    def test_one_in_flight_message_per_partition(self, broker):
        """Test that a key's second message waits until the first is settled."""
        consumer = broker.consumer("inventory")
        broker.send(b"first", "key-1")
        broker.send(b"second", "key-1")

        first = consumer.receive(timeout=0)
        assert consumer.receive(timeout=0) is None

        first.ack()
        assert consumer.receive(timeout=0).data == b"second"

    def test_other_partitions_are_not_blocked(self):
        broker = InMemoryBroker(partitions=64)
        key_a = "key-0"
        key_b = next(k for k in (f"key-{i}" for i in range(1, 100)) if broker.partition_for(k) != broker.partition_for(key_a))
        consumer = broker.consumer("inventory")
        broker.send(b"a", key_a)
        broker.send(b"b", key_b)

        first = consumer.receive(timeout=0)
        second = consumer.receive(timeout=0)

        assert {first.data, second.data} == {b"a", b"b"}

    def test_nack_requeues_at_head_with_next_attempt(self, broker):
        consumer = broker.consumer("inventory")
        broker.send(b"first", "key-1")
        broker.send(b"second", "key-1")

        consumer.receive(timeout=0).nack(requeue=True)
        redelivered = consumer.receive(timeout=0)

        assert redelivered.data == b"first"
        assert redelivered.delivery_attempt == 2

    def test_nack_without_requeue_dead_letters(self, broker):
        consumer = broker.consumer("inventory")
        broker.send(b"poison", "key-1")

        consumer.receive(timeout=0).nack(requeue=False)

        assert consumer.receive(timeout=0) is None
        assert len(broker.dead_lettered) == 1
        assert broker.dead_lettered[0].group_id == "inventory"
        assert broker.dead_lettered[0].data == b"poison"

    def test_double_settle_is_ignored(self, broker):
        consumer = broker.consumer("inventory")
        broker.send(b"first", "key-1")
        message = consumer.receive(timeout=0)

        message.ack()
        message.nack(requeue=True)

        assert message.settled
        assert consumer.receive(timeout=0) is None

    def test_pending_count(self, broker):
        consumer = broker.consumer("inventory")
        broker.consumer("payment")
        broker.send(b"hello", "key-1")

        assert broker.pending_count() == 2
        message = consumer.receive(timeout=0)
        assert broker.pending_count("inventory") == 1
        message.ack()
        assert broker.pending_count("inventory") == 0
        assert broker.pending_count() == 1

    def test_fail_next(self, broker):
        broker.fail_next(2)

        for _ in range(2):
            with pytest.raises(TransientTransportError):
                broker.send(b"hello", "key-1")
        broker.send(b"hello", "key-1")

        assert broker.send_attempts == 3
        assert len(broker.sent) == 1

    def test_fail_rate_one_always_fails(self):
        broker = InMemoryBroker(partitions=1, fail_rate=1.0)
        with pytest.raises(TransientTransportError):
            broker.send(b"hello", "key-1")

    def test_partitions_must_be_positive(self):
        with pytest.raises(ValueError):
            InMemoryBroker(partitions=0)
