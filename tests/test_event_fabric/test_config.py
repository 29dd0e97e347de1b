"""
Tests for settings loading.
"""

import pytest

from event_fabric.config import FabricSettings, load_settings
from event_fabric.exceptions import ConfigError, ConfigErrorCodes


class TestLoadSettings:
    """Tests for YAML settings."""

    def test_defaults(self):
        settings = load_settings()

        assert settings == FabricSettings()
        assert settings.publisher.max_attempts == 5
        assert settings.publisher.base_delay == 0.2
        assert settings.publisher.max_delay == 30.0
        assert settings.dispatcher.max_deliveries == 10
        assert settings.saga.timeout_seconds == 300.0
        assert settings.codec.supported_schema_versions == [1]

    def test_yaml_overrides(self, tmp_path):
        path = tmp_path / "fabric.yaml"
        path.write_text(
            "service_name: payment\n"
            "publisher:\n"
            "  max_attempts: 7\n"
            "saga:\n"
            "  timeout_seconds: 120\n"
        )

        settings = load_settings(path)

        assert settings.service_name == "payment"
        assert settings.publisher.max_attempts == 7
        assert settings.publisher.base_delay == 0.2
        assert settings.saga.timeout_seconds == 120.0

    def test_empty_file_gives_defaults(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("")

        assert load_settings(str(path)) == FabricSettings()

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError) as exc_info:
            load_settings(tmp_path / "missing.yaml")

        assert exc_info.value.code == ConfigErrorCodes.READ_FILE
        assert str(exc_info.value).startswith("READ_FILE:")

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "broken.yaml"
        path.write_text("publisher: [unclosed\n")

        with pytest.raises(ConfigError) as exc_info:
            load_settings(path)

        assert exc_info.value.code == ConfigErrorCodes.PARSE_YAML

    def test_root_must_be_a_mapping(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- one\n- two\n")

        with pytest.raises(ConfigError) as exc_info:
            load_settings(path)

        assert exc_info.value.code == ConfigErrorCodes.PARSE_YAML

    @pytest.mark.parametrize(
        "body",
        [
            "publisher:\n  max_attempts: 0\n",
            "publisher:\n  jitter: 1.5\n",
            "saga:\n  timeout_seconds: -1\n",
            "unknown_section: {}\n",
        ],
    )
    def test_validation_errors(self, tmp_path, body):
        path = tmp_path / "invalid.yaml"
        path.write_text(body)

        with pytest.raises(ConfigError) as exc_info:
            load_settings(path)

        assert exc_info.value.code == ConfigErrorCodes.VALIDATION
        assert exc_info.value.__cause__ is not None
