"""
ASGI boundary middleware.

Runs the boundary entry handler around every HTTP request: fills the request
context before the application sees the request, echoes the correlation id in
the response headers and clears the context once the application is done,
whether it returned, raised or was cancelled.
"""

from typing import Any, Awaitable, Callable, Dict, MutableMapping, Optional

import structlog

from ..core.boundary import BoundaryEntryHandler, InboundRequest
from ..core.metrics import MetricsCollector

logger = structlog.get_logger(__name__)

Scope = MutableMapping[str, Any]
Message = MutableMapping[str, Any]
Receive = Callable[[], Awaitable[Message]]
Send = Callable[[Message], Awaitable[None]]
ASGIApp = Callable[[Scope, Receive, Send], Awaitable[None]]


def inbound_request_from_scope(scope: Scope) -> InboundRequest:
    """Build the transport-independent request view from an ASGI HTTP scope."""
    headers: Dict[str, str] = {}
    for raw_name, raw_value in scope.get("headers", []):
        name = raw_name.decode("latin-1")
        value = raw_value.decode("latin-1")
        # Repeated headers are joined the way HTTP folds them
        headers[name] = f"{headers[name]}, {value}" if name in headers else value

    client = scope.get("client")
    return InboundRequest(
        method=scope.get("method", "GET"),
        path=scope.get("path", "/"),
        headers=headers,
        peer_address=client[0] if client else None,
    )


class CorrelationMiddleware:
    """
    Pure ASGI middleware, so the context it sets is the one the endpoint runs
    in (including sync endpoints dispatched to the threadpool).
    """

    def __init__(
        self,
        app: ASGIApp,
        handler: BoundaryEntryHandler,
        metrics: Optional[MetricsCollector] = None,
    ) -> None:
        self.app = app
        self.handler = handler
        self.metrics = metrics

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        request = inbound_request_from_scope(scope)
        status_code = 500

        async def send_with_correlation(message: Message) -> None:
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = message["status"]
                extra = self.handler.response_headers()
                if extra:
                    headers = list(message.get("headers", []))
                    for name, value in extra.items():
                        headers.append((name.lower().encode("latin-1"), value.encode("latin-1")))
                    message["headers"] = headers
            await send(message)

        with self.handler.scope(request):
            logger.debug("Request boundary entered", method=request.method, path=request.path)
            try:
                await self.app(scope, receive, send_with_correlation)
            finally:
                if self.metrics is not None:
                    self.metrics.record_request(request.method, status_code)
