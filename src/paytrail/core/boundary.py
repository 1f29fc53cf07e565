"""
Inbound request boundary handling.

Resolves the request identity from inbound headers, fills the request context
for the duration of the request, echoes the correlation id into the response
and clears the context when the request is done. Transport independent: the
ASGI middleware in ``paytrail.api.middleware`` adapts it to HTTP servers.
"""

import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Dict, Iterator, Mapping, MutableMapping, Optional, Protocol, Sequence

import structlog

from ..config import CorrelationSettings
from .context import (
    CLIENT_IP,
    CORRELATION_ID,
    HEADER_CORRELATION_ID,
    HEADER_REQUEST_ID,
    HEADER_TRANSACTION_ID,
    REQUEST_METHOD,
    REQUEST_URI,
    TRANSACTION_ID,
    USER_ID,
    RequestContextStore,
    request_context,
)

logger = structlog.get_logger(__name__)

CLIENT_IP_HEADERS: Sequence[str] = (
    "X-Forwarded-For",
    "X-Real-IP",
    "Proxy-Client-IP",
    "WL-Proxy-Client-IP",
    "HTTP_X_FORWARDED_FOR",
    "HTTP_CLIENT_IP",
)


@dataclass
class InboundRequest:
    """What the boundary needs to know about an inbound request."""

    method: str
    path: str
    headers: Mapping[str, str] = field(default_factory=dict)
    peer_address: Optional[str] = None

    def __post_init__(self) -> None:
        # Header lookups are case-insensitive
        self._lower_headers = {key.lower(): value for key, value in self.headers.items()}

    def header(self, name: str) -> Optional[str]:
        value = self._lower_headers.get(name.lower())
        if value is None or not value.strip():
            return None
        return value.strip()


class IdentityProvider(Protocol):
    """Resolves the authenticated user of a request, or ``None``."""

    def __call__(self, request: InboundRequest) -> Optional[str]:
        ...


class HeaderIdentityProvider:
    """Reads the user id from a header set by an upstream gateway."""

    def __init__(self, header_name: str = "X-User-ID") -> None:
        self.header_name = header_name

    def __call__(self, request: InboundRequest) -> Optional[str]:
        return request.header(self.header_name)


class BoundaryEntryHandler:
    """
    Populates and tears down the request context around one inbound request.

    Args:
        settings: Header names and feature toggles
        identity_provider: Optional user resolver, declared once at setup
        store: Context store, the process-wide one by default
    """

    def __init__(
        self,
        settings: Optional[CorrelationSettings] = None,
        identity_provider: Optional[IdentityProvider] = None,
        store: Optional[RequestContextStore] = None,
    ) -> None:
        self.settings = settings or CorrelationSettings()
        self.identity_provider = identity_provider
        self.store = store or request_context

    def resolve_correlation_id(self, request: InboundRequest) -> Optional[str]:
        correlation_id = request.header(self.settings.header_name)
        if correlation_id is None:
            correlation_id = request.header(self.settings.fallback_header_name or HEADER_REQUEST_ID)
        if correlation_id is None and self.settings.generate_if_missing:
            correlation_id = str(uuid.uuid4())
        return correlation_id

    def resolve_client_ip(self, request: InboundRequest) -> Optional[str]:
        """Proxy-aware client address: the left-most forwarded entry wins."""
        for header in CLIENT_IP_HEADERS:
            value = request.header(header)
            if value is None or value.lower() == "unknown":
                continue
            return value.split(",")[0].strip() if "," in value else value
        return request.peer_address

    def resolve_user_id(self, request: InboundRequest) -> Optional[str]:
        if self.identity_provider is None:
            return None
        try:
            return self.identity_provider(request) or None
        except Exception as e:
            # An identity lookup problem never fails the request
            logger.debug("Identity provider failed", error_type=type(e).__name__)
            return None

    def enter(self, request: InboundRequest) -> Dict[str, str]:
        """
        Start a new unit of work for ``request``.

        Returns:
            The fields written to the context
        """
        fields: Dict[str, Optional[str]] = {
            CORRELATION_ID: self.resolve_correlation_id(request),
            TRANSACTION_ID: request.header(
                self.settings.transaction_header_name or HEADER_TRANSACTION_ID
            ),
        }

        if self.settings.include_client_ip:
            fields[CLIENT_IP] = self.resolve_client_ip(request)

        if self.settings.include_request_uri:
            fields[REQUEST_URI] = request.path
            fields[REQUEST_METHOD] = request.method

        fields[USER_ID] = self.resolve_user_id(request)

        self.store.clear_all()
        self.store.update(fields)
        return self.store.as_dict()

    def response_headers(self) -> Dict[str, str]:
        """Headers to add to the response for the current request."""
        correlation_id = self.store.get(CORRELATION_ID)
        if correlation_id is None:
            return {}
        return {self.settings.header_name or HEADER_CORRELATION_ID: correlation_id}

    def exit(self, response_headers: Optional[MutableMapping[str, str]] = None) -> None:
        """Echo the correlation id, then clear the whole context."""
        try:
            if response_headers is not None:
                response_headers.update(self.response_headers())
        finally:
            self.store.clear_all()

    @contextmanager
    def scope(
        self,
        request: InboundRequest,
        response_headers: Optional[MutableMapping[str, str]] = None,
    ) -> Iterator[Dict[str, str]]:
        """Wrap a request handler; cleanup runs on success, failure and cancellation."""
        fields = self.enter(request)
        try:
            yield fields
        finally:
            self.exit(response_headers)
