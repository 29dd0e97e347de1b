"""
The event envelope: wire-level wrapper around a business event.

An envelope carries routing and tracing metadata next to an opaque payload:

- id: globally unique, assigned once when the envelope is created
- correlation_id: shared by every envelope of one business transaction
- causation_id: the envelope that triggered this one (None for root events)
- schema_version: version of the envelope/payload contract

Unknown fields received from newer producers are kept as model extras so a
consumer that does not understand them still re-emits them unchanged.
"""

import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Union
from uuid import UUID, uuid4, uuid5

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

CURRENT_SCHEMA_VERSION = 1


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def encode_json_payload(data: Any) -> bytes:
    """Serialize a JSON-compatible value into payload bytes."""
    return json.dumps(data, separators=(",", ":"), sort_keys=True, default=str).encode("utf-8")


def derived_event_id(correlation_id: UUID, event_type: Union[str, Enum], business_key: str = "") -> UUID:
    """
    Deterministic event id for a fact about one business key.

    A handler that is redelivered and emits the same fact again produces the
    same id, so downstream duplicate suppression recognises it.
    """
    if isinstance(event_type, Enum):
        event_type = event_type.value
    return uuid5(correlation_id, f"{event_type}:{business_key}")


class Envelope(BaseModel):
    """
    Immutable event envelope.

    Example:
        root = Envelope(type="OrderPlaced", payload=encode_json_payload({"order_id": "ord-1"}))
        child = Envelope.caused_by(root, "InventoryReserved", {"order_id": "ord-1"})
        assert child.correlation_id == root.correlation_id
        assert child.causation_id == root.id
    """
    id: UUID = Field(default_factory=uuid4)
    type: str = Field(..., min_length=1)
    occurred_at: datetime = Field(default_factory=_utcnow)
    correlation_id: UUID = Field(default_factory=uuid4)
    causation_id: Optional[UUID] = Field(default=None)
    payload: bytes = Field(default=b"")
    schema_version: int = Field(default=CURRENT_SCHEMA_VERSION, ge=1)

    model_config = ConfigDict(
        frozen=True,
        extra="allow",
        alias_generator=to_camel,
        populate_by_name=True,
    )

    @field_validator("type", mode="before")
    @classmethod
    def _enum_to_value(cls, value: Any) -> Any:
        if isinstance(value, Enum):
            return value.value
        return value

    @classmethod
    def caused_by(
        cls,
        parent: "Envelope",
        event_type: Union[str, Enum],
        payload: Union[bytes, dict[str, Any], None] = None,
        event_id: Optional[UUID] = None,
    ) -> "Envelope":
        """
        Create an envelope triggered by `parent`.

        The new envelope joins the parent's business transaction (same
        correlation_id) and records the parent as its cause.

        Args:
            event_id: Fixed id, for producers that must re-emit the same
                fact with the same identity (see derived_event_id)
        """
        if payload is None:
            payload = b""
        elif not isinstance(payload, bytes):
            payload = encode_json_payload(payload)
        return cls(
            id=event_id or uuid4(),
            type=event_type,
            correlation_id=parent.correlation_id,
            causation_id=parent.id,
            payload=payload,
        )

    @property
    def is_root(self) -> bool:
        """True if nothing caused this envelope."""
        return self.causation_id is None

    @property
    def unknown_fields(self) -> dict[str, Any]:
        """Fields received on the wire that this version does not model."""
        return dict(self.model_extra or {})

    def json_payload(self) -> dict[str, Any]:
        """Decode the payload as a JSON object. Empty payloads decode to {}."""
        if not self.payload:
            return {}
        return json.loads(self.payload)

    def __str__(self) -> str:
        return (
            f"Envelope({self.type}, id={str(self.id)[:8]}, "
            f"correlation={str(self.correlation_id)[:8]})"
        )
