"""
Tests for the SubscriptionRegistry.
"""

import pytest

from event_fabric.events import EventType
from event_fabric.registry import HandlerResult, SubscriptionRegistry


def reserve(envelope):
    return HandlerResult.ACK


def audit(envelope):
    return HandlerResult.ACK


class TestSubscriptionRegistry:
    """Tests for register/unregister/lookup."""

    def test_register_and_lookup(self, registry: SubscriptionRegistry):
        registry.register(EventType.ORDER_PLACED, reserve, handler_id="inventory.reserve")

        registrations = registry.handlers_for(EventType.ORDER_PLACED)
        assert len(registrations) == 1
        assert registrations[0].handler_id == "inventory.reserve"
        assert registrations[0].handler is reserve
        assert registrations[0].ordered
        assert not registrations[0].idempotent

    def test_lookup_preserves_registration_order(self, registry):
        registry.register(EventType.ORDER_PLACED, reserve, handler_id="first")
        registry.register(EventType.ORDER_PLACED, audit, handler_id="second", ordered=False)
        registry.register(EventType.ORDER_PLACED, audit, handler_id="third")

        ids = [r.handler_id for r in registry.handlers_for(EventType.ORDER_PLACED)]
        assert ids == ["first", "second", "third"]

    def test_string_event_type_is_accepted(self, registry):
        handle = registry.register("OrderPlaced", reserve, handler_id="inventory.reserve")

        assert handle.event_type == EventType.ORDER_PLACED
        assert registry.subscriber_count(EventType.ORDER_PLACED) == 1

    def test_unknown_event_type_is_rejected(self, registry):
        with pytest.raises(ValueError):
            registry.register("NoSuchEvent", reserve)

    def test_default_handler_id_is_qualified_name(self, registry):
        handle = registry.register(EventType.ORDER_PLACED, reserve)

        assert handle.handler_id.endswith("test_registry.reserve")

    def test_duplicate_handler_id_raises(self, registry):
        """Test that one handler id cannot subscribe twice to one type."""
        registry.register(EventType.ORDER_PLACED, reserve, handler_id="inventory.reserve")

        with pytest.raises(ValueError, match="already registered"):
            registry.register(EventType.ORDER_PLACED, audit, handler_id="inventory.reserve")

    def test_same_handler_id_on_different_types(self, registry):
        registry.register(EventType.ORDER_PLACED, reserve, handler_id="saga")
        registry.register(EventType.PAYMENT_CHARGED, reserve, handler_id="saga")

        assert set(registry.event_types()) == {EventType.ORDER_PLACED, EventType.PAYMENT_CHARGED}

    def test_unregister(self, registry):
        handle = registry.register(EventType.ORDER_PLACED, reserve, handler_id="inventory.reserve")

        assert registry.unregister(handle)
        assert registry.handlers_for(EventType.ORDER_PLACED) == []
        assert registry.event_types() == []

    def test_unregister_unknown_returns_false(self, registry):
        handle = registry.register(EventType.ORDER_PLACED, reserve, handler_id="inventory.reserve")
        registry.unregister(handle)

        assert not registry.unregister(handle)

    def test_unregister_keeps_other_handlers(self, registry):
        handle = registry.register(EventType.ORDER_PLACED, reserve, handler_id="first")
        registry.register(EventType.ORDER_PLACED, audit, handler_id="second")

        registry.unregister(handle)

        assert [r.handler_id for r in registry.handlers_for(EventType.ORDER_PLACED)] == ["second"]

    def test_lookup_returns_a_copy(self, registry):
        registry.register(EventType.ORDER_PLACED, reserve, handler_id="first")

        registry.handlers_for(EventType.ORDER_PLACED).clear()

        assert registry.subscriber_count(EventType.ORDER_PLACED) == 1

    def test_no_handlers(self, registry):
        assert registry.handlers_for(EventType.ORDER_PLACED) == []
        assert registry.subscriber_count(EventType.ORDER_PLACED) == 0

    def test_clear(self, registry):
        registry.register(EventType.ORDER_PLACED, reserve, handler_id="first")
        registry.clear()
        assert registry.event_types() == []
