"""
Integration tests for the HTTP boundary.

Runs the app factory behind ``TestClient`` with extra routes that report the
request context they observe.
"""

import json
import logging
import uuid
from pathlib import Path
from typing import Dict, Generator

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from paytrail.api.metrics import render_metrics
from paytrail.config import Settings
from paytrail.core.boundary import HeaderIdentityProvider
from paytrail.core.context import CORRELATION_ID, OPERATION, TRANSACTION_ID, USER_ID, request_context
from paytrail.core.exceptions import ConfigurationError
from paytrail.core.interceptor import OperationConfig, OperationInterceptor
from paytrail.core.masking import MaskingEngine
from paytrail.main import configure_audit_logging, create_app


def add_context_routes(app: FastAPI) -> None:
    interceptor = OperationInterceptor(masker=MaskingEngine())

    @app.get("/context")
    async def async_context() -> Dict[str, str]:
        return request_context.as_dict()

    @app.get("/context-sync")
    def sync_context() -> Dict[str, str]:
        return request_context.as_dict()

    def authorize() -> Dict[str, str]:
        return request_context.as_dict()

    wrapped_authorize = interceptor.wrap(authorize, OperationConfig(operation="AUTHORIZE"))

    @app.post("/authorize")
    def authorize_route() -> Dict[str, str]:
        return wrapped_authorize()

    @app.get("/misconfigured")
    async def misconfigured() -> None:
        raise ConfigurationError("masking rule rejected", details={"rule": "x"})


@pytest.fixture(autouse=True)
def detach_audit_handlers() -> Generator[None, None, None]:
    """Drop the audit sink that create_app installs."""
    yield
    audit_logger = logging.getLogger("paytrail.audit")
    for handler in list(audit_logger.handlers):
        audit_logger.removeHandler(handler)
        handler.close()
    audit_logger.propagate = True


@pytest.fixture
def client(test_settings: Settings):
    app = create_app(test_settings, identity_provider=HeaderIdentityProvider())
    add_context_routes(app)
    with TestClient(app) as test_client:
        yield test_client


class TestCorrelationHeaders:
    """Test correlation id resolution and echo."""

    def test_inbound_id_is_echoed(self, client: TestClient):
        response = client.get("/context", headers={"X-Correlation-ID": "abc-123"})

        assert response.status_code == 200
        assert response.headers["X-Correlation-ID"] == "abc-123"
        assert response.json()[CORRELATION_ID] == "abc-123"

    def test_request_id_fallback(self, client: TestClient):
        response = client.get("/context", headers={"X-Request-ID": "req-9"})
        assert response.headers["X-Correlation-ID"] == "req-9"

    def test_generated_when_missing(self, client: TestClient):
        response = client.get("/context")

        generated = response.headers["X-Correlation-ID"]
        assert uuid.UUID(generated).version == 4
        assert response.json()[CORRELATION_ID] == generated

    def test_client_ip_and_request_fields(self, client: TestClient):
        response = client.get("/context", headers={"X-Forwarded-For": "203.0.113.7, 10.0.0.1"})
        body = response.json()

        assert body["client_ip"] == "203.0.113.7"
        assert body["request_uri"] == "/context"
        assert body["request_method"] == "GET"


class TestRequestIsolation:
    """Nothing leaks from one request to the next."""

    def test_sequential_requests(self, client: TestClient):
        first = client.get(
            "/context",
            headers={"X-Correlation-ID": "first", "X-Transaction-ID": "tx-1", "X-User-ID": "user-1"},
        ).json()
        second = client.get("/context").json()

        assert first[TRANSACTION_ID] == "tx-1"
        assert first[USER_ID] == "user-1"
        assert TRANSACTION_ID not in second
        assert USER_ID not in second
        assert second[CORRELATION_ID] != "first"

    def test_sync_endpoint_sees_context(self, client: TestClient):
        response = client.get("/context-sync", headers={"X-Correlation-ID": "abc-123"})
        assert response.json()[CORRELATION_ID] == "abc-123"

    def test_instrumented_operation_inside_request(self, client: TestClient):
        response = client.post("/authorize", headers={"X-Correlation-ID": "abc-123"})
        body = response.json()

        assert body[CORRELATION_ID] == "abc-123"
        assert body[OPERATION] == "AUTHORIZE"
        assert response.headers["X-Correlation-ID"] == "abc-123"


class TestRoutes:
    """Test the bundled routes and error handling."""

    def test_healthz(self, client: TestClient):
        response = client.get("/healthz")

        assert response.status_code == 200
        assert response.json()["status"] == "alive"
        assert response.json()["service"] == "payment-service"

    def test_metrics(self, client: TestClient):
        client.get("/healthz")
        response = client.get("/metrics")

        assert response.status_code == 200
        assert "paytrail_http_requests_total" in response.text
        assert "paytrail_operations_total" in response.text

    def test_metrics_without_collector(self):
        assert render_metrics(None) == b"# Metrics collector not initialized\n"

    def test_unhandled_error_keeps_correlation(self, test_settings: Settings, caplog, card_number: str):
        app = create_app(test_settings)

        @app.get("/boom")
        async def boom() -> None:
            raise RuntimeError(f"card {card_number} declined")

        with TestClient(app, raise_server_exceptions=False) as client:
            with caplog.at_level(logging.DEBUG):
                response = client.get("/boom", headers={"X-Correlation-ID": "abc-123"})

        assert response.status_code == 500
        assert response.headers["X-Correlation-ID"] == "abc-123"
        assert response.json()["error"] == "internal_server_error"

        records = [json.loads(message) for message in caplog.messages if "Unexpected exception occurred" in message]
        assert len(records) == 1
        assert records[0]["context"][CORRELATION_ID] == "abc-123"
        assert records[0]["service"] == "payment-service"
        assert records[0]["exception"]["message"] == "card 453201******5678 declined"
        assert card_number not in caplog.text

    def test_paytrail_exception_mapped(self, client: TestClient):
        response = client.get("/misconfigured", headers={"X-Correlation-ID": "abc-123"})

        assert response.status_code == 500
        assert response.json() == {
            "error": "configuration_error",
            "message": "masking rule rejected",
            "details": {"rule": "x"},
        }
        assert response.headers["X-Correlation-ID"] == "abc-123"


class TestMiddlewareToggle:
    """Test the correlation switch."""

    def test_middleware_disabled(self, test_settings: Settings):
        test_settings.correlation.enabled = False
        app = create_app(test_settings)
        add_context_routes(app)

        with TestClient(app) as client:
            response = client.get("/context", headers={"X-Correlation-ID": "abc-123"})

        assert "X-Correlation-ID" not in response.headers
        assert response.json() == {}


class TestAuditLogging:
    """Test the dedicated audit sink."""

    def test_audit_file_handler(self, tmp_path: Path):
        settings = Settings()
        settings.log.audit_log_path = tmp_path / "audit" / "audit.log"

        audit_logger = configure_audit_logging(settings)
        try:
            assert audit_logger.propagate is False
            assert len(audit_logger.handlers) == 1
            assert audit_logger.handlers[0].baseFilename == str(settings.log.audit_log_path)

            # Reconfiguring replaces the handler instead of stacking a second one
            configure_audit_logging(settings)
            assert len(audit_logger.handlers) == 1
        finally:
            for handler in list(audit_logger.handlers):
                audit_logger.removeHandler(handler)
                handler.close()
            audit_logger.propagate = True
