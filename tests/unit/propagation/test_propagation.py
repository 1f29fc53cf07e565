"""
Tests for outbound header propagation.

The blocking adapter is exercised through a real ``httpx.Client`` with a mock
transport; the async adapter through its aiohttp trace callback.
"""

import asyncio
from types import SimpleNamespace
from typing import Dict, List

import aiohttp
import httpx
import pytest

from paytrail.config import CorrelationSettings
from paytrail.core.boundary import BoundaryEntryHandler, InboundRequest
from paytrail.core.context import CORRELATION_ID, TRANSACTION_ID, USER_ID, request_context
from paytrail.core.metrics import MetricsCollector
from paytrail.core.propagation import (
    AiohttpPropagation,
    HttpxPropagationHook,
    build_aiohttp_propagation,
    build_httpx_hook,
    propagation_headers,
)


def recording_client(hook: HttpxPropagationHook, seen: List[httpx.Headers]) -> httpx.Client:
    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.headers)
        return httpx.Response(200, json={"ok": True})

    return httpx.Client(transport=httpx.MockTransport(handler), event_hooks={"request": [hook]})


class TestPropagationHeaders:
    """Test the shared field to header mapping."""

    def test_all_fields(self):
        fields = {CORRELATION_ID: "abc", TRANSACTION_ID: "tx-1", USER_ID: "user-7", "client_ip": "10.0.0.1"}
        assert propagation_headers(fields) == {
            "X-Correlation-ID": "abc",
            "X-Transaction-ID": "tx-1",
            "X-User-ID": "user-7",
        }

    def test_absent_fields_skipped(self):
        assert propagation_headers({CORRELATION_ID: "abc"}) == {"X-Correlation-ID": "abc"}
        assert propagation_headers({}) == {}


class TestHttpxPropagation:
    """Test the blocking adapter."""

    def test_round_trip_from_inbound_request(self, metrics: MetricsCollector):
        seen: List[httpx.Headers] = []
        handler = BoundaryEntryHandler(CorrelationSettings())
        inbound = InboundRequest(method="POST", path="/payments", headers={"X-Correlation-ID": "abc-123"})

        with recording_client(HttpxPropagationHook(metrics=metrics), seen) as client:
            with handler.scope(inbound):
                client.get("http://ledger.internal/entries")

        assert seen[0]["X-Correlation-ID"] == "abc-123"
        assert "X-Transaction-ID" not in seen[0]
        assert metrics.registry.get_sample_value("paytrail_propagated_requests_total", {"transport": "httpx"}) == 1.0

    def test_no_context_no_headers(self):
        seen: List[httpx.Headers] = []
        with recording_client(HttpxPropagationHook(), seen) as client:
            client.get("http://ledger.internal/entries")

        assert "X-Correlation-ID" not in seen[0]

    def test_disabled_hook(self):
        seen: List[httpx.Headers] = []
        request_context.set(CORRELATION_ID, "abc-123")

        with recording_client(HttpxPropagationHook(enabled=False), seen) as client:
            client.get("http://ledger.internal/entries")

        assert "X-Correlation-ID" not in seen[0]

    def test_hook_from_settings(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("PAYTRAIL_PROPAGATION_HTTPX_ENABLED", "false")
        assert build_httpx_hook().enabled is False


class TestAiohttpPropagation:
    """Test the async adapter."""

    @staticmethod
    def request_start() -> SimpleNamespace:
        return SimpleNamespace(headers={}, url="http://ledger.internal/entries", method="GET")

    @pytest.mark.asyncio
    async def test_snapshot_taken_at_scheduling_point(self):
        propagation = AiohttpPropagation()
        request_context.set(CORRELATION_ID, "scheduled")
        ctx = propagation.request_ctx()
        request_context.set(CORRELATION_ID, "changed-later")

        params = self.request_start()
        await propagation.on_request_start(None, SimpleNamespace(trace_request_ctx=ctx), params)

        assert params.headers == {"X-Correlation-ID": "scheduled"}

    @pytest.mark.asyncio
    async def test_falls_back_to_current_context(self, metrics: MetricsCollector):
        propagation = AiohttpPropagation(metrics=metrics)
        request_context.update({CORRELATION_ID: "live", USER_ID: "user-7"})

        params = self.request_start()
        await propagation.on_request_start(None, SimpleNamespace(trace_request_ctx=None), params)

        assert params.headers == {"X-Correlation-ID": "live", "X-User-ID": "user-7"}
        assert metrics.registry.get_sample_value("paytrail_propagated_requests_total", {"transport": "aiohttp"}) == 1.0

    @pytest.mark.asyncio
    async def test_disabled_adapter(self):
        propagation = AiohttpPropagation(enabled=False)
        request_context.set(CORRELATION_ID, "live")

        params = self.request_start()
        await propagation.on_request_start(None, SimpleNamespace(trace_request_ctx=None), params)

        assert params.headers == {}

    def test_request_ctx_keeps_extra_keys(self):
        request_context.set(CORRELATION_ID, "abc")
        ctx = AiohttpPropagation().request_ctx(attempt=2)

        assert ctx["attempt"] == 2
        assert dict(ctx["paytrail_context"]) == {CORRELATION_ID: "abc"}

    def test_trace_config_registers_callback(self):
        propagation = AiohttpPropagation()
        trace_config = propagation.trace_config()

        assert isinstance(trace_config, aiohttp.TraceConfig)
        assert propagation.on_request_start in trace_config.on_request_start

    @pytest.mark.asyncio
    async def test_schedule_restores_snapshot_in_task(self):
        propagation = AiohttpPropagation()
        release = asyncio.Event()
        request_context.set(CORRELATION_ID, "scheduled")

        async def call_downstream(path: str) -> Dict[str, str]:
            await release.wait()
            return {"path": path, **request_context.as_dict()}

        task = propagation.schedule(call_downstream, "/entries")
        request_context.set(CORRELATION_ID, "changed-later")
        release.set()

        assert await task == {"path": "/entries", CORRELATION_ID: "scheduled"}
        assert request_context.get(CORRELATION_ID) == "changed-later"

    def test_propagation_from_settings(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("PAYTRAIL_PROPAGATION_AIOHTTP_ENABLED", "false")
        assert build_aiohttp_propagation().enabled is False
