"""
Tests for settings loading.

Environment variables override the YAML file, which overrides defaults.
"""

from pathlib import Path

import pytest

from paytrail.config import Settings, get_settings, load_config_file, reload_settings


class TestDefaults:
    """Test default values."""

    def test_defaults(self):
        settings = get_settings()

        assert settings.service_name == "unknown-service"
        assert settings.log_level == "INFO"
        assert settings.instrumentation.performance_threshold_ms == 1000
        assert settings.correlation.header_name == "X-Correlation-ID"
        assert settings.correlation.fallback_header_name == "X-Request-ID"
        assert settings.log.max_stack_trace_depth == 50
        assert settings.masking.extra_rules == []

    def test_log_level_normalized(self):
        assert Settings(log_level="debug").log_level == "DEBUG"

    def test_invalid_log_level(self):
        with pytest.raises(ValueError):
            Settings(log_level="LOUD")


class TestConfigFile:
    """Test YAML configuration."""

    @pytest.fixture
    def config_file(self, tmp_path: Path) -> Path:
        path = tmp_path / "config.yaml"
        path.write_text(
            """
service:
  name: payment-service
  environment: staging
instrumentation:
  performance_threshold_ms: 250
correlation:
  generate_if_missing: false
masking:
  extra_rules:
    - name: merchant_token
      pattern: "mtok_[A-Za-z0-9]+"
      replacement: "mtok_***"
"""
        )
        return path

    def test_missing_file_is_empty(self, tmp_path: Path):
        assert load_config_file(str(tmp_path / "absent.yaml")) == {}

    def test_file_values_applied(self, monkeypatch: pytest.MonkeyPatch, config_file: Path):
        monkeypatch.setenv("PAYTRAIL_CONFIG_FILE", str(config_file))
        # Values exported from the file land in os.environ; let monkeypatch undo them
        for name in (
            "PAYTRAIL_SERVICE_NAME",
            "PAYTRAIL_ENVIRONMENT",
            "PAYTRAIL_INSTRUMENTATION_PERFORMANCE_THRESHOLD_MS",
            "PAYTRAIL_CORRELATION_GENERATE_IF_MISSING",
            "PAYTRAIL_MASKING_EXTRA_RULES",
        ):
            monkeypatch.setenv(name, "placeholder")
            monkeypatch.delenv(name)

        settings = reload_settings()

        assert settings.service_name == "payment-service"
        assert settings.environment == "staging"
        assert settings.instrumentation.performance_threshold_ms == 250
        assert settings.correlation.generate_if_missing is False
        assert settings.masking.extra_rules[0].name == "merchant_token"

    def test_environment_wins_over_file(self, monkeypatch: pytest.MonkeyPatch, config_file: Path):
        monkeypatch.setenv("PAYTRAIL_CONFIG_FILE", str(config_file))
        monkeypatch.setenv("PAYTRAIL_SERVICE_NAME", "from-env")
        for name in (
            "PAYTRAIL_ENVIRONMENT",
            "PAYTRAIL_INSTRUMENTATION_PERFORMANCE_THRESHOLD_MS",
            "PAYTRAIL_CORRELATION_GENERATE_IF_MISSING",
            "PAYTRAIL_MASKING_EXTRA_RULES",
        ):
            monkeypatch.setenv(name, "placeholder")
            monkeypatch.delenv(name)

        assert reload_settings().service_name == "from-env"
