"""
Error taxonomy for the coordination core.

Every runtime failure category resolves to a retry, a dead-letter deposit or
a saga state transition. Only programmer errors (bad configuration, duplicate
handler ids) are allowed to raise out of the core at startup.

- DecodeError: malformed envelope, never retried
- TransientTransportError: broker/network unavailable, retried with backoff
- HandlerFailure: domain logic signalled a permanent failure
- DuplicateSuppressed: informational, a redelivered event was skipped
- SagaTimeout: a saga made no progress before its deadline
- SagaAnomaly: an envelope arrived that a saga cannot apply
- PublishFailed: publish retries exhausted, the event was dead-lettered
"""

from typing import Optional


class FabricError(Exception):
    """Base class for all coordination core errors."""


class DecodeError(FabricError):
    """Raised when raw bytes cannot be decoded into an envelope."""

    def __init__(self, message: str, raw: bytes = b""):
        super().__init__(message)
        self.raw = raw


class TransientTransportError(FabricError):
    """The transport is temporarily unavailable. Safe to retry."""


class HandlerFailure(FabricError):
    """
    A handler hit a permanent failure.

    Handlers may raise this instead of returning HandlerResult.FAIL when the
    failure is detected deep inside domain code.
    """

    def __init__(self, message: str, handler_id: Optional[str] = None):
        super().__init__(message)
        self.handler_id = handler_id


class DuplicateSuppressed(FabricError):
    """An already processed (handler, event) pair was delivered again."""

    def __init__(self, handler_id: str, event_id: str):
        super().__init__(f"Duplicate suppressed: handler={handler_id} event={event_id}")
        self.handler_id = handler_id
        self.event_id = event_id


class SagaTimeout(FabricError):
    """A saga exceeded its progress deadline."""

    def __init__(self, correlation_id: str, state: str, waited_seconds: float):
        super().__init__(
            f"Saga {correlation_id} stuck in {state} for {waited_seconds:.1f}s"
        )
        self.correlation_id = correlation_id
        self.state = state
        self.waited_seconds = waited_seconds


class SagaAnomaly(FabricError):
    """An envelope could not be applied to its saga and was discarded."""

    def __init__(self, correlation_id: str, event_type: str, reason: str):
        super().__init__(f"Saga {correlation_id}: {event_type} discarded ({reason})")
        self.correlation_id = correlation_id
        self.event_type = event_type
        self.reason = reason


class PublishFailed(FabricError):
    """Publishing gave up after exhausting its attempts."""

    def __init__(self, event_id: str, attempts: int, cause: Optional[Exception] = None):
        super().__init__(f"Publish of {event_id} failed after {attempts} attempts: {cause}")
        self.event_id = event_id
        self.attempts = attempts
        if cause is not None:
            self.__cause__ = cause


class ConfigErrorCodes:
    """ConfigError codes."""

    READ_FILE: str = "READ_FILE"
    PARSE_YAML: str = "PARSE_YAML"
    VALIDATION: str = "VALIDATION"


class ConfigError(FabricError):
    """Invalid configuration, raised at startup."""

    def __init__(self, code: str, message: str, cause: Optional[Exception] = None):
        super().__init__(message)
        self.code = code
        if cause is not None:
            self.__cause__ = cause

    def __str__(self) -> str:
        return f"{self.code}: {super().__str__()}"
