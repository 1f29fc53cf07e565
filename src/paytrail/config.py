"""
Configuration management with hot-reload capability.

Uses Pydantic Settings for environment variable handling and validation.
A ``config.yaml`` file, when present, only provides defaults: environment
variables always win.
"""

import json
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def load_config_file(config_path: Optional[str] = None) -> Dict[str, Any]:
    """Load configuration from YAML file."""
    if config_path is None:
        config_path = os.environ.get("PAYTRAIL_CONFIG_FILE")

    if config_path is None:
        # Look for config.yaml in common locations
        possible_paths = [
            "config.yaml",  # Current directory
            "../../config.yaml",  # Project root from src/paytrail
        ]

        for path in possible_paths:
            if os.path.exists(path):
                config_path = path
                break
        else:
            return {}

    if os.path.exists(config_path):
        with open(config_path, "r") as f:
            config_data = yaml.safe_load(f) or {}
            return config_data
    return {}


class MaskingRuleConfig(BaseModel):
    """A user supplied masking rule, appended after the defaults."""

    name: str = Field(description="Rule identifier used in logs and metrics")
    pattern: str = Field(description="Regular expression detecting the sensitive value")
    replacement: str = Field(description="Replacement template, may reference groups as \\1")


class MaskingSettings(BaseSettings):
    """Sensitive data masking configuration."""

    enabled: bool = Field(default=True, description="Mask every emitted payload")
    replace_defaults: bool = Field(
        default=False,
        description="Use only extra_rules instead of the built-in rule set",
    )
    extra_rules: List[MaskingRuleConfig] = Field(
        default_factory=list,
        description="Additional rules evaluated after the built-in ones",
    )

    @field_validator("extra_rules", mode="before")
    def parse_extra_rules(cls, v: Any) -> Any:
        """Parse extra rules from a JSON string if needed."""
        if isinstance(v, str):
            parsed = json.loads(v) if v.strip() else []
            return parsed if isinstance(parsed, list) else []
        return v

    model_config = SettingsConfigDict(env_prefix="PAYTRAIL_MASKING_")


class InstrumentationSettings(BaseSettings):
    """Operation interceptor configuration."""

    enabled: bool = Field(default=True, description="Wrap instrumented operations")
    performance_threshold_ms: int = Field(
        default=1000,
        ge=1,
        description="Default duration above which a slow-operation warning is logged",
    )

    model_config = SettingsConfigDict(env_prefix="PAYTRAIL_INSTRUMENTATION_")


class CorrelationSettings(BaseSettings):
    """Inbound request boundary configuration."""

    enabled: bool = Field(default=True, description="Install the boundary middleware")
    header_name: str = Field(default="X-Correlation-ID", description="Primary correlation header")
    fallback_header_name: str = Field(default="X-Request-ID", description="Fallback correlation header")
    transaction_header_name: str = Field(default="X-Transaction-ID", description="Transaction id header")
    generate_if_missing: bool = Field(default=True, description="Generate a UUID when no header is present")
    include_client_ip: bool = Field(default=True, description="Resolve the proxy-aware client IP")
    include_request_uri: bool = Field(default=True, description="Record request URI and method")

    model_config = SettingsConfigDict(env_prefix="PAYTRAIL_CORRELATION_")


class PropagationSettings(BaseSettings):
    """Outbound header propagation per transport."""

    httpx_enabled: bool = Field(default=True, description="Inject headers into blocking httpx calls")
    aiohttp_enabled: bool = Field(default=True, description="Inject headers into aiohttp calls")

    model_config = SettingsConfigDict(env_prefix="PAYTRAIL_PROPAGATION_")


class LogFormatSettings(BaseSettings):
    """Structured log rendering and sinks."""

    json_format: bool = Field(default=True, description="Render records as JSON lines")
    include_context: bool = Field(default=True, description="Add the request context object")
    include_stack_trace: bool = Field(default=True, description="Add exception stack frames")
    max_stack_trace_depth: int = Field(default=50, ge=1, description="Maximum frames per exception")
    audit_log_path: Optional[Path] = Field(default=None, description="Audit trail file, stderr if unset")
    audit_retention_days: int = Field(default=365, ge=1, description="Daily audit files kept")

    model_config = SettingsConfigDict(env_prefix="PAYTRAIL_LOG_")


class Settings(BaseSettings):
    """Main application settings."""

    # Service identity
    service_name: str = Field(default="unknown-service", description="Service name in every record")
    environment: str = Field(default="unknown", description="Deployment environment")

    # Server configuration
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8080, description="Server port")
    debug: bool = Field(default=False, description="Debug mode")
    log_level: str = Field(default="INFO", description="Log level")

    # Component settings
    masking: MaskingSettings = Field(default_factory=MaskingSettings)
    instrumentation: InstrumentationSettings = Field(default_factory=InstrumentationSettings)
    correlation: CorrelationSettings = Field(default_factory=CorrelationSettings)
    propagation: PropagationSettings = Field(default_factory=PropagationSettings)
    log: LogFormatSettings = Field(default_factory=LogFormatSettings)

    @field_validator("log_level")
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unsupported log level: {v}")
        return level

    model_config = SettingsConfigDict(env_prefix="PAYTRAIL_", case_sensitive=False)


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance with config file and env support."""

    # Load config file data
    config_data = load_config_file()

    # Config file provides defaults, env vars override
    if config_data:
        _set_env_from_config(config_data)

    return Settings()


_SCALAR_MAPPINGS = {
    ("service", "name"): "PAYTRAIL_SERVICE_NAME",
    ("service", "environment"): "PAYTRAIL_ENVIRONMENT",
    ("server", "host"): "PAYTRAIL_HOST",
    ("server", "port"): "PAYTRAIL_PORT",
    ("server", "debug"): "PAYTRAIL_DEBUG",
    ("server", "log_level"): "PAYTRAIL_LOG_LEVEL",
    ("masking", "enabled"): "PAYTRAIL_MASKING_ENABLED",
    ("masking", "replace_defaults"): "PAYTRAIL_MASKING_REPLACE_DEFAULTS",
    ("instrumentation", "enabled"): "PAYTRAIL_INSTRUMENTATION_ENABLED",
    ("instrumentation", "performance_threshold_ms"): "PAYTRAIL_INSTRUMENTATION_PERFORMANCE_THRESHOLD_MS",
    ("correlation", "enabled"): "PAYTRAIL_CORRELATION_ENABLED",
    ("correlation", "header_name"): "PAYTRAIL_CORRELATION_HEADER_NAME",
    ("correlation", "fallback_header_name"): "PAYTRAIL_CORRELATION_FALLBACK_HEADER_NAME",
    ("correlation", "transaction_header_name"): "PAYTRAIL_CORRELATION_TRANSACTION_HEADER_NAME",
    ("correlation", "generate_if_missing"): "PAYTRAIL_CORRELATION_GENERATE_IF_MISSING",
    ("correlation", "include_client_ip"): "PAYTRAIL_CORRELATION_INCLUDE_CLIENT_IP",
    ("correlation", "include_request_uri"): "PAYTRAIL_CORRELATION_INCLUDE_REQUEST_URI",
    ("propagation", "httpx_enabled"): "PAYTRAIL_PROPAGATION_HTTPX_ENABLED",
    ("propagation", "aiohttp_enabled"): "PAYTRAIL_PROPAGATION_AIOHTTP_ENABLED",
    ("log", "json_format"): "PAYTRAIL_LOG_JSON_FORMAT",
    ("log", "include_context"): "PAYTRAIL_LOG_INCLUDE_CONTEXT",
    ("log", "include_stack_trace"): "PAYTRAIL_LOG_INCLUDE_STACK_TRACE",
    ("log", "max_stack_trace_depth"): "PAYTRAIL_LOG_MAX_STACK_TRACE_DEPTH",
    ("log", "audit_log_path"): "PAYTRAIL_LOG_AUDIT_LOG_PATH",
    ("log", "audit_retention_days"): "PAYTRAIL_LOG_AUDIT_RETENTION_DAYS",
}


def _set_env_from_config(config_data: Dict[str, Any]) -> None:
    """Set environment variables from config file if not already set."""
    for (section, key), env_var in _SCALAR_MAPPINGS.items():
        if env_var not in os.environ:
            value = (config_data.get(section) or {}).get(key)
            if value is not None:
                if isinstance(value, bool):
                    value = "true" if value else "false"
                os.environ[env_var] = str(value)

    # Rule lists travel as JSON
    if "PAYTRAIL_MASKING_EXTRA_RULES" not in os.environ:
        extra_rules = (config_data.get("masking") or {}).get("extra_rules")
        if extra_rules:
            os.environ["PAYTRAIL_MASKING_EXTRA_RULES"] = json.dumps(extra_rules)


def reload_settings() -> Settings:
    """Reload settings (clears cache)."""
    get_settings.cache_clear()
    return get_settings()
