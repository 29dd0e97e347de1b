"""
Settings for a service's coordination core.

Settings are plain pydantic models with sensible defaults, so a service can
run with `FabricSettings()` and only override what its deployment needs.
`load_settings` reads overrides from a YAML file.

Example YAML:

    publisher:
      max_attempts: 7
    saga:
      timeout_seconds: 120
"""

from pathlib import Path
from typing import Any, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from event_fabric.exceptions import ConfigError, ConfigErrorCodes


class PublisherSettings(BaseModel):
    """Retry policy for publishing."""
    max_attempts: int = Field(default=5, ge=1)
    base_delay: float = Field(default=0.2, gt=0, description="Seconds before the first retry")
    max_delay: float = Field(default=30.0, gt=0, description="Backoff cap in seconds")
    jitter: float = Field(default=0.2, ge=0, lt=1, description="Relative jitter, 0.2 means ±20%")

    model_config = ConfigDict(extra="forbid")


class DispatcherSettings(BaseModel):
    """Consumption settings."""
    worker_pool_size: Optional[int] = Field(
        default=None,
        ge=1,
        description="Unordered handler pool size, None means os.cpu_count()",
    )
    max_deliveries: int = Field(default=10, ge=1)
    poll_timeout: float = Field(default=0.1, gt=0)

    model_config = ConfigDict(extra="forbid")


class IdempotencySettings(BaseModel):
    """Processed-event retention."""
    retention_hours: float = Field(default=24.0, gt=0)

    model_config = ConfigDict(extra="forbid")


class SagaSettings(BaseModel):
    """Saga deadlines and housekeeping."""
    timeout_seconds: float = Field(default=300.0, gt=0)
    retention_hours: float = Field(default=24.0, gt=0)
    sweep_interval: float = Field(default=1.0, gt=0)
    max_cas_attempts: int = Field(default=5, ge=1)

    model_config = ConfigDict(extra="forbid")


class CodecSettings(BaseModel):
    """Accepted envelope schema versions."""
    supported_schema_versions: list[int] = Field(default_factory=lambda: [1], min_length=1)

    model_config = ConfigDict(extra="forbid")


class TransportSettings(BaseModel):
    """In-memory transport layout."""
    partitions: int = Field(default=8, ge=1)

    model_config = ConfigDict(extra="forbid")


class FabricSettings(BaseModel):
    """All settings for one service process."""
    service_name: str = Field(default="service")
    publisher: PublisherSettings = Field(default_factory=PublisherSettings)
    dispatcher: DispatcherSettings = Field(default_factory=DispatcherSettings)
    idempotency: IdempotencySettings = Field(default_factory=IdempotencySettings)
    saga: SagaSettings = Field(default_factory=SagaSettings)
    codec: CodecSettings = Field(default_factory=CodecSettings)
    transport: TransportSettings = Field(default_factory=TransportSettings)

    model_config = ConfigDict(extra="forbid")


def _read_yaml(path: Path) -> dict[str, Any]:
    """Read a YAML mapping from disk."""
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(
            code=ConfigErrorCodes.READ_FILE,
            message=f"Failed to read config file: {path}",
            cause=e,
        ) from e
    try:
        data = yaml.safe_load(text) or {}
    except yaml.YAMLError as e:
        raise ConfigError(
            code=ConfigErrorCodes.PARSE_YAML,
            message=f"Failed to parse YAML: {path}",
            cause=e,
        ) from e
    if not isinstance(data, dict):
        raise ConfigError(
            code=ConfigErrorCodes.PARSE_YAML,
            message=f"Config root must be a mapping: {path}",
        )
    return data


def load_settings(path: Optional[Union[str, Path]] = None) -> FabricSettings:
    """
    Load settings from a YAML file.

    Args:
        path: YAML file to read. When None, defaults are returned.

    Raises:
        ConfigError: If the file is unreadable, not YAML, or fails validation.
    """
    if path is None:
        return FabricSettings()

    data = _read_yaml(Path(path))
    try:
        return FabricSettings.model_validate(data)
    except ValidationError as e:
        raise ConfigError(
            code=ConfigErrorCodes.VALIDATION,
            message=f"Config validation failed: {e}",
            cause=e,
        ) from e
