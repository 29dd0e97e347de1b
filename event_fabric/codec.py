"""
Envelope codec: envelopes to and from wire bytes.

Wire format is UTF-8 JSON with camelCase keys:

    {"id": "...", "type": "OrderPlaced", "occurredAt": "2026-...Z",
     "correlationId": "...", "causationId": null,
     "payload": "<base64>", "schemaVersion": 1, ...unknown fields...}

The codec never upgrades payloads. An envelope whose schemaVersion is not
supported is rejected; migrating old versions is the caller's job.
"""

import base64
import binascii
import json
import logging
from collections.abc import Iterable
from typing import Optional

from pydantic import ValidationError

from event_fabric.envelope import CURRENT_SCHEMA_VERSION, Envelope
from event_fabric.exceptions import DecodeError

logger = logging.getLogger("codec")


class EnvelopeCodec:
    """
    JSON envelope codec.

    Example:
        codec = EnvelopeCodec()
        raw = codec.encode(envelope)
        assert codec.decode(raw) == envelope
    """

    def __init__(self, supported_versions: Optional[Iterable[int]] = None):
        """
        Args:
            supported_versions: schemaVersion values accepted by decode.
                Defaults to the current version only.
        """
        versions = frozenset(supported_versions or (CURRENT_SCHEMA_VERSION,))
        if not versions:
            raise ValueError("supported_versions must not be empty")
        self.supported_versions = versions

    def encode(self, envelope: Envelope) -> bytes:
        """Serialize an envelope, unknown fields included."""
        data = envelope.model_dump(mode="json", by_alias=True, exclude={"payload"})
        data["payload"] = base64.b64encode(envelope.payload).decode("ascii")
        return json.dumps(data, separators=(",", ":")).encode("utf-8")

    def decode(self, raw: bytes) -> Envelope:
        """
        Parse wire bytes into an envelope.

        Raises:
            DecodeError: If the bytes are not a JSON object, the schema version
                is unsupported, or a field is missing or malformed.
        """
        try:
            data = json.loads(raw)
        except (ValueError, RecursionError) as e:
            raise DecodeError(f"Corrupt envelope: {e}", raw=raw) from e

        if not isinstance(data, dict):
            raise DecodeError("Envelope must be a JSON object", raw=raw)

        version = data.get("schemaVersion")
        if not isinstance(version, int) or isinstance(version, bool):
            raise DecodeError(f"Missing or invalid schemaVersion: {version!r}", raw=raw)
        if version not in self.supported_versions:
            raise DecodeError(
                f"Schema mismatch: version {version} not in {sorted(self.supported_versions)}",
                raw=raw,
            )

        encoded_payload = data.get("payload", "")
        if not isinstance(encoded_payload, str):
            raise DecodeError("Payload must be a base64 string", raw=raw)
        try:
            data["payload"] = base64.b64decode(encoded_payload, validate=True)
        except binascii.Error as e:
            raise DecodeError(f"Corrupt payload: {e}", raw=raw) from e

        try:
            envelope = Envelope.model_validate(data)
        except ValidationError as e:
            raise DecodeError(f"Invalid envelope: {e.error_count()} validation error(s)", raw=raw) from e

        if envelope.model_extra:
            logger.debug(f"Preserving unknown fields {sorted(envelope.model_extra)} on {envelope}")
        return envelope
