"""
Subscription registry: which handlers run for which event type.

Each service process owns its own registry; registrations are not shared
across processes. Lookup is a dict keyed by EventType.
"""

import logging
import threading
from collections import defaultdict
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from event_fabric.envelope import Envelope
from event_fabric.events import EventType

logger = logging.getLogger("registry")


class HandlerResult(str, Enum):
    """What a handler tells the dispatcher about an envelope."""
    ACK = "ack"        # Done (or nothing to do)
    RETRY = "retry"    # Try again later, do not acknowledge
    FAIL = "fail"      # Permanent failure, dead-letter and move on


# A handler is a plain function from envelope to result
Handler = Callable[[Envelope], HandlerResult]


@dataclass(frozen=True)
class SubscriptionHandle:
    """Returned by register, used to unregister."""
    event_type: EventType
    handler_id: str


@dataclass(frozen=True)
class Registration:
    """
    A handler subscribed to an event type.

    Attributes:
        ordered: Run sequentially in registration order (True) or
            concurrently with the other unordered handlers (False)
        idempotent: Side effects are naturally idempotent, so the
            dispatcher skips the idempotency tracker for this handler
    """
    event_type: EventType
    handler_id: str
    handler: Handler
    ordered: bool = True
    idempotent: bool = False


def _default_handler_id(handler: Handler) -> str:
    module = getattr(handler, "__module__", None) or "handler"
    name = getattr(handler, "__qualname__", None) or type(handler).__name__
    return f"{module}.{name}"


class SubscriptionRegistry:
    """
    Maps event types to handler registrations.

    Example:
        registry = SubscriptionRegistry()
        handle = registry.register(EventType.ORDER_PLACED, reserve_stock, handler_id="inventory.reserve")
        registry.handlers_for(EventType.ORDER_PLACED)  # [Registration(...)]
        registry.unregister(handle)
    """

    def __init__(self):
        self._registrations: dict[EventType, list[Registration]] = defaultdict(list)
        self._lock = threading.Lock()

    def register(
        self,
        event_type: EventType,
        handler: Handler,
        ordered: bool = True,
        handler_id: Optional[str] = None,
        idempotent: bool = False,
    ) -> SubscriptionHandle:
        """
        Subscribe a handler to an event type.

        Args:
            event_type: The type of event to handle
            handler: Function called with each matching envelope
            ordered: Whether the handler runs in the ordered chain
            handler_id: Stable identity used for idempotency and dead letters.
                Defaults to the handler's qualified name.
            idempotent: Skip duplicate tracking for this handler

        Raises:
            ValueError: If handler_id is already registered for event_type.
        """
        event_type = EventType(event_type)
        handler_id = handler_id or _default_handler_id(handler)
        registration = Registration(
            event_type=event_type,
            handler_id=handler_id,
            handler=handler,
            ordered=ordered,
            idempotent=idempotent,
        )
        with self._lock:
            if any(r.handler_id == handler_id for r in self._registrations[event_type]):
                raise ValueError(f"Handler '{handler_id}' already registered for {event_type.value}")
            self._registrations[event_type].append(registration)
        logger.debug(f"Registered {handler_id} for '{event_type.value}' (ordered={ordered})")
        return SubscriptionHandle(event_type=event_type, handler_id=handler_id)

    def unregister(self, handle: SubscriptionHandle) -> bool:
        """
        Remove a registration.

        Returns:
            True if it was found and removed, False otherwise
        """
        with self._lock:
            registrations = self._registrations.get(handle.event_type, [])
            for index, registration in enumerate(registrations):
                if registration.handler_id == handle.handler_id:
                    del registrations[index]
                    if not registrations:
                        del self._registrations[handle.event_type]
                    logger.debug(f"Unregistered {handle.handler_id} from '{handle.event_type.value}'")
                    return True
        return False

    def handlers_for(self, event_type: EventType) -> list[Registration]:
        """Registrations for a type, in registration order."""
        with self._lock:
            return list(self._registrations.get(event_type, ()))

    def subscriber_count(self, event_type: EventType) -> int:
        with self._lock:
            return len(self._registrations.get(event_type, ()))

    def event_types(self) -> list[EventType]:
        """Event types with at least one registration."""
        with self._lock:
            return [t for t, regs in self._registrations.items() if regs]

    def clear(self) -> None:
        """Remove all registrations."""
        with self._lock:
            self._registrations.clear()
