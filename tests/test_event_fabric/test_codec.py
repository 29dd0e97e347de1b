"""
Tests for envelopes and the envelope codec.

The codec must round-trip every field, keep fields it does not understand,
and reject anything it cannot safely decode.
"""

import base64
import json
from uuid import uuid4

import pytest

from event_fabric.codec import EnvelopeCodec
from event_fabric.envelope import Envelope, derived_event_id, encode_json_payload
from event_fabric.events import EventType
from event_fabric.exceptions import DecodeError


class TestEnvelope:
    """Tests for the Envelope model."""

    def test_defaults(self):
        """Test that ids and timestamps are assigned at creation."""
        envelope = Envelope(type="OrderPlaced")

        assert envelope.id is not None
        assert envelope.correlation_id is not None
        assert envelope.causation_id is None
        assert envelope.is_root
        assert envelope.schema_version == 1
        assert envelope.occurred_at.tzinfo is not None

    def test_event_type_enum_is_stored_as_value(self):
        envelope = Envelope(type=EventType.ORDER_PLACED)
        assert envelope.type == "OrderPlaced"

    def test_envelopes_are_immutable(self, order_envelope):
        with pytest.raises(Exception):
            order_envelope.type = "Other"

    def test_caused_by_links_to_parent(self, order_envelope):
        """Test that derived envelopes join the parent's transaction."""
        child = Envelope.caused_by(order_envelope, EventType.INVENTORY_RESERVED, {"order_id": "ord-001"})

        assert child.correlation_id == order_envelope.correlation_id
        assert child.causation_id == order_envelope.id
        assert child.id != order_envelope.id
        assert not child.is_root
        assert child.json_payload() == {"order_id": "ord-001"}

    def test_caused_by_with_fixed_id(self, order_envelope):
        event_id = derived_event_id(order_envelope.correlation_id, EventType.INVENTORY_RESERVED, "ord-001")
        child = Envelope.caused_by(order_envelope, EventType.INVENTORY_RESERVED, event_id=event_id)
        assert child.id == event_id

    def test_derived_event_id_is_deterministic(self):
        correlation_id = uuid4()
        first = derived_event_id(correlation_id, EventType.PAYMENT_CHARGED, "ord-1")

        assert first == derived_event_id(correlation_id, "PaymentCharged", "ord-1")
        assert first != derived_event_id(correlation_id, EventType.PAYMENT_CHARGED, "ord-2")
        assert first != derived_event_id(uuid4(), EventType.PAYMENT_CHARGED, "ord-1")

    def test_empty_payload_decodes_to_empty_dict(self):
        assert Envelope(type="Ping").json_payload() == {}

    def test_str(self, order_envelope):
        assert "OrderPlaced" in str(order_envelope)


class TestEnvelopeCodec:
    """Tests for encode/decode."""

    def test_round_trip(self, codec: EnvelopeCodec, order_envelope: Envelope):
        """Test that decode(encode(v)) == v field for field."""
        decoded = codec.decode(codec.encode(order_envelope))

        assert decoded.model_dump() == order_envelope.model_dump()
        assert decoded.payload == order_envelope.payload
        assert decoded.occurred_at == order_envelope.occurred_at

    def test_round_trip_with_causation(self, codec, order_envelope):
        child = Envelope.caused_by(order_envelope, EventType.INVENTORY_RESERVED, b"\x00\xffbinary")
        assert codec.decode(codec.encode(child)).model_dump() == child.model_dump()

    def test_wire_format_is_camel_case_json(self, codec, order_envelope):
        """Test the documented wire layout."""
        wire = json.loads(codec.encode(order_envelope))

        assert wire["type"] == "OrderPlaced"
        assert wire["correlationId"] == str(order_envelope.correlation_id)
        assert wire["causationId"] is None
        assert wire["schemaVersion"] == 1
        assert "occurredAt" in wire
        assert base64.b64decode(wire["payload"]) == order_envelope.payload

    def test_unknown_fields_are_preserved(self, codec, order_envelope):
        """Test forward compatibility: fields from newer producers survive a hop."""
        wire = json.loads(codec.encode(order_envelope))
        wire["traceFlags"] = "01"
        wire["tenant"] = {"id": "t-9", "region": "eu"}

        decoded = codec.decode(json.dumps(wire).encode())
        assert decoded.unknown_fields == {"traceFlags": "01", "tenant": {"id": "t-9", "region": "eu"}}

        re_encoded = json.loads(codec.encode(decoded))
        assert re_encoded["traceFlags"] == "01"
        assert re_encoded["tenant"] == {"id": "t-9", "region": "eu"}
        assert codec.decode(codec.encode(decoded)).model_dump() == decoded.model_dump()

    def test_corrupt_json_raises(self, codec):
        with pytest.raises(DecodeError):
            codec.decode(b"{not json")

    def test_deeply_nested_json_raises(self, codec):
        """Test that input too deep for the JSON parser is a decode error."""
        with pytest.raises(DecodeError, match="Corrupt envelope"):
            codec.decode(b"[" * 100_000 + b"]" * 100_000)

    def test_non_object_raises(self, codec):
        with pytest.raises(DecodeError):
            codec.decode(b"[1, 2, 3]")

    def test_unsupported_schema_version_raises(self, codec):
        """Test that the codec never accepts versions it was not built for."""
        envelope = Envelope(type="OrderPlaced", schema_version=2)
        with pytest.raises(DecodeError, match="Schema mismatch"):
            codec.decode(codec.encode(envelope))

    def test_supported_versions_are_configurable(self):
        codec = EnvelopeCodec(supported_versions=[1, 2])
        envelope = Envelope(type="OrderPlaced", schema_version=2)
        assert codec.decode(codec.encode(envelope)).schema_version == 2

    def test_missing_schema_version_raises(self, codec, order_envelope):
        wire = json.loads(codec.encode(order_envelope))
        del wire["schemaVersion"]
        with pytest.raises(DecodeError):
            codec.decode(json.dumps(wire).encode())

    def test_corrupt_payload_raises(self, codec, order_envelope):
        wire = json.loads(codec.encode(order_envelope))
        wire["payload"] = "***not base64***"
        with pytest.raises(DecodeError, match="Corrupt payload"):
            codec.decode(json.dumps(wire).encode())

    def test_missing_required_field_raises(self, codec, order_envelope):
        wire = json.loads(codec.encode(order_envelope))
        del wire["type"]
        with pytest.raises(DecodeError, match="Invalid envelope"):
            codec.decode(json.dumps(wire).encode())

    def test_invalid_uuid_raises(self, codec, order_envelope):
        wire = json.loads(codec.encode(order_envelope))
        wire["correlationId"] = "not-a-uuid"
        with pytest.raises(DecodeError):
            codec.decode(json.dumps(wire).encode())

    def test_decode_error_keeps_raw_bytes(self, codec):
        with pytest.raises(DecodeError) as exc_info:
            codec.decode(b"garbage")
        assert exc_info.value.raw == b"garbage"

    def test_encode_json_payload_is_compact_and_sorted(self):
        assert encode_json_payload({"b": 1, "a": [1, 2]}) == b'{"a":[1,2],"b":1}'
