"""
Outbound header propagation.

Copies the request identity from the context store into outbound HTTP
requests so downstream services log under the same correlation id.

- HttpxPropagationHook: blocking ``httpx.Client`` request event hook
- AiohttpPropagation: ``aiohttp.TraceConfig`` for ``ClientSession``

The blocking hook runs on the calling thread at dispatch, so it reads the live
context. Async calls can run in a task that outlives or never saw the
scheduling context, so they carry a snapshot taken where the call was
scheduled.

Usage:
    client = httpx.Client(event_hooks={"request": [HttpxPropagationHook()]})

    propagation = AiohttpPropagation()
    async with aiohttp.ClientSession(trace_configs=[propagation.trace_config()]) as session:
        await session.get(url, trace_request_ctx=propagation.request_ctx())
"""

import asyncio
from types import SimpleNamespace
from typing import Any, Awaitable, Callable, Dict, Mapping, MutableMapping, Optional, TypeVar

import aiohttp
import httpx
import structlog

from ..config import get_settings
from .context import (
    CORRELATION_ID,
    HEADER_CORRELATION_ID,
    HEADER_TRANSACTION_ID,
    HEADER_USER_ID,
    TRANSACTION_ID,
    USER_ID,
    ContextSnapshot,
    RequestContextStore,
    request_context,
)
from .metrics import MetricsCollector, get_metrics_collector

logger = structlog.get_logger(__name__)

T = TypeVar("T")

PROPAGATED_FIELDS = (
    (CORRELATION_ID, HEADER_CORRELATION_ID),
    (TRANSACTION_ID, HEADER_TRANSACTION_ID),
    (USER_ID, HEADER_USER_ID),
)

# Key under which the snapshot travels in aiohttp's trace_request_ctx
SNAPSHOT_KEY = "paytrail_context"


def propagation_headers(fields: Mapping[str, str]) -> Dict[str, str]:
    """Map context fields to outbound header names; absent fields are skipped."""
    headers: Dict[str, str] = {}
    for key, header in PROPAGATED_FIELDS:
        value = fields.get(key)
        if value:
            headers[header] = value
    return headers


def inject_headers(target: MutableMapping[str, str], fields: Mapping[str, str]) -> int:
    """Write propagation headers into ``target``; returns how many were set."""
    headers = propagation_headers(fields)
    for name, value in headers.items():
        target[name] = value
    return len(headers)


class HttpxPropagationHook:
    """Request event hook for ``httpx.Client``."""

    transport = "httpx"

    def __init__(
        self,
        enabled: bool = True,
        store: Optional[RequestContextStore] = None,
        metrics: Optional[MetricsCollector] = None,
    ) -> None:
        self.enabled = enabled
        self.store = store or request_context
        self.metrics = metrics

    def __call__(self, request: httpx.Request) -> None:
        if not self.enabled:
            return
        injected = inject_headers(request.headers, self.store.snapshot())
        if injected:
            if self.metrics is not None:
                self.metrics.record_propagation(self.transport)
            logger.debug("Context headers propagated", transport=self.transport, url=str(request.url))


class AiohttpPropagation:
    """Header propagation for ``aiohttp.ClientSession`` via request tracing."""

    transport = "aiohttp"

    def __init__(
        self,
        enabled: bool = True,
        store: Optional[RequestContextStore] = None,
        metrics: Optional[MetricsCollector] = None,
    ) -> None:
        self.enabled = enabled
        self.store = store or request_context
        self.metrics = metrics

    def request_ctx(self, **extra: Any) -> Dict[str, Any]:
        """
        Snapshot the current context for one outbound call.

        Pass the result as ``trace_request_ctx=`` when making the request.
        """
        ctx: Dict[str, Any] = dict(extra)
        ctx[SNAPSHOT_KEY] = self.store.snapshot()
        return ctx

    def trace_config(self) -> aiohttp.TraceConfig:
        trace_config = aiohttp.TraceConfig()
        trace_config.on_request_start.append(self.on_request_start)
        return trace_config

    async def on_request_start(
        self,
        session: aiohttp.ClientSession,
        trace_config_ctx: SimpleNamespace,
        params: aiohttp.TraceRequestStartParams,
    ) -> None:
        if not self.enabled:
            return

        snapshot: Optional[ContextSnapshot] = None
        request_ctx = getattr(trace_config_ctx, "trace_request_ctx", None)
        if isinstance(request_ctx, Mapping):
            snapshot = request_ctx.get(SNAPSHOT_KEY)
        if snapshot is None:
            snapshot = self.store.snapshot()

        injected = inject_headers(params.headers, snapshot)
        if injected:
            if self.metrics is not None:
                self.metrics.record_propagation(self.transport)
            logger.debug("Context headers propagated", transport=self.transport, url=str(params.url))

    def schedule(self, coro_fn: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> "asyncio.Task[T]":
        """
        Run ``coro_fn(*args, **kwargs)`` as a task seeded with the current context.

        The snapshot is taken now, in the scheduling unit, and restored inside
        the task, which clears it when done.
        """
        snapshot = self.store.snapshot()

        async def run() -> T:
            with self.store.scope(snapshot):
                return await coro_fn(*args, **kwargs)

        return asyncio.ensure_future(run())


def build_httpx_hook() -> HttpxPropagationHook:
    """Blocking hook configured from settings."""
    settings = get_settings()
    return HttpxPropagationHook(
        enabled=settings.propagation.httpx_enabled,
        metrics=get_metrics_collector(),
    )


def build_aiohttp_propagation() -> AiohttpPropagation:
    """Async propagation configured from settings."""
    settings = get_settings()
    return AiohttpPropagation(
        enabled=settings.propagation.aiohttp_enabled,
        metrics=get_metrics_collector(),
    )
