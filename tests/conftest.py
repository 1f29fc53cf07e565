"""
Pytest configuration and shared fixtures.

Contains common test fixtures and setup for all test modules.
"""

import logging
import os
from typing import Any, Callable, Dict, Generator, List

import pytest
import structlog
from structlog.testing import capture_logs

from paytrail.config import Settings, get_settings
from paytrail.core.context import request_context
from paytrail.core.interceptor import OperationInterceptor, reset_interceptor
from paytrail.core.masking import MaskingEngine, reset_masking_engine
from paytrail.core.metrics import MetricsCollector


@pytest.fixture(autouse=True)
def isolated_environment(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    """Fresh settings, singletons, structlog config and context for every test."""
    for name in list(os.environ):
        if name.startswith("PAYTRAIL_"):
            monkeypatch.delenv(name)
    # Never pick up a config.yaml from the working directory
    monkeypatch.setenv("PAYTRAIL_CONFIG_FILE", os.path.join(os.devnull, "paytrail-missing.yaml"))

    get_settings.cache_clear()
    reset_masking_engine()
    reset_interceptor()
    structlog.reset_defaults()
    logging.getLogger("paytrail").setLevel(logging.DEBUG)
    request_context.clear_all()

    yield

    request_context.clear_all()
    structlog.reset_defaults()
    reset_interceptor()
    reset_masking_engine()
    get_settings.cache_clear()


class SteppingClock:
    """Deterministic clock advancing a fixed number of milliseconds per reading."""

    def __init__(self, step_ms: float) -> None:
        self.step_seconds = step_ms / 1000
        self.now = 0.0

    def __call__(self) -> float:
        value = self.now
        self.now += self.step_seconds
        return value


@pytest.fixture
def stepping_clock() -> Callable[[float], SteppingClock]:
    """Factory for clocks where each call is ``step_ms`` after the previous one."""
    return SteppingClock


@pytest.fixture
def masker() -> MaskingEngine:
    """Masking engine with the built-in rules."""
    return MaskingEngine()


@pytest.fixture
def metrics() -> MetricsCollector:
    """Collector on its own registry."""
    return MetricsCollector()


@pytest.fixture
def interceptor(masker: MaskingEngine, metrics: MetricsCollector) -> OperationInterceptor:
    """Interceptor with a fast clock (1ms per reading) and a 1s threshold."""
    return OperationInterceptor(
        masker=masker,
        default_threshold_ms=1000,
        metrics=metrics,
        clock=SteppingClock(1),
    )


@pytest.fixture
def captured_logs() -> Generator[List[Dict[str, Any]], None, None]:
    """Events emitted through structlog during the test."""
    with capture_logs() as logs:
        yield logs


@pytest.fixture
def test_settings() -> Settings:
    """Settings for the app factory, independent of the environment."""
    return Settings(service_name="payment-service", environment="test", log_level="DEBUG")


@pytest.fixture
def card_number() -> str:
    return "4532015112345678"


@pytest.fixture
def sensitive_payload() -> Dict[str, Any]:
    """Payment payload with every default sensitive value."""
    return {
        "customer_email": "jean.dupont@email.com",
        "card": "4532015112345678",
        "cvv": "123",
        "iban": "FR7630006000011234567890189",
        "phone": "0612345678",
        "national_id": "1 85 12 75 108 123 45",
        "amount": 4200,
        "currency": "EUR",
    }
