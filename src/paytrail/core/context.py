"""
Request context store.

Holds the identity of the logical request being processed (correlation id,
transaction id, user, client IP, current operation) for the current thread or
asyncio task. Values live in a ``ContextVar`` as an immutable mapping and every
write replaces the mapping, so a unit of work never mutates what another unit
sees.

Nothing is handed to worker threads implicitly: code that forks work takes a
``snapshot()`` at the fork point and runs the work through
``run_with_snapshot`` / ``arun_with_snapshot``, which restore the snapshot
inside the new unit and clear it when the unit finishes.

Usage:
    # boundary
    with request_context.scope():
        request_context.set(CORRELATION_ID, "abc-123")
        ...

    # fork onto a pool
    snapshot = request_context.snapshot()
    executor.submit(run_with_snapshot, snapshot, settle_payment, payment_id)
"""

import functools
from contextlib import contextmanager
from contextvars import ContextVar
from types import MappingProxyType
from typing import Any, Awaitable, Callable, Dict, Iterator, Mapping, Optional, TypeVar

# Context keys
CORRELATION_ID = "correlation_id"
TRANSACTION_ID = "transaction_id"
USER_ID = "user_id"
CLIENT_IP = "client_ip"
REQUEST_URI = "request_uri"
REQUEST_METHOD = "request_method"
OPERATION = "operation"
OPERATION_ID = "operation_id"

# HTTP headers
HEADER_CORRELATION_ID = "X-Correlation-ID"
HEADER_TRANSACTION_ID = "X-Transaction-ID"
HEADER_USER_ID = "X-User-ID"
HEADER_REQUEST_ID = "X-Request-ID"

ContextSnapshot = Mapping[str, str]

_EMPTY: ContextSnapshot = MappingProxyType({})

T = TypeVar("T")


class RequestContextStore:
    """Execution-unit-local mapping of request context fields."""

    def __init__(self, name: str = "paytrail_request_context") -> None:
        self._fields: ContextVar[ContextSnapshot] = ContextVar(name, default=_EMPTY)

    def get(self, key: str) -> Optional[str]:
        return self._fields.get().get(key)

    def set(self, key: str, value: Optional[str]) -> None:
        """Set ``key``; ``None`` or an empty value clears it."""
        if value is None or value == "":
            self.clear(key)
            return
        current = dict(self._fields.get())
        current[key] = str(value)
        self._fields.set(MappingProxyType(current))

    def update(self, fields: Mapping[str, Optional[str]]) -> None:
        current = dict(self._fields.get())
        for key, value in fields.items():
            if value is None or value == "":
                current.pop(key, None)
            else:
                current[key] = str(value)
        self._fields.set(MappingProxyType(current))

    def clear(self, key: str) -> None:
        current = self._fields.get()
        if key in current:
            remaining = {k: v for k, v in current.items() if k != key}
            self._fields.set(MappingProxyType(remaining))

    def clear_all(self) -> None:
        self._fields.set(_EMPTY)

    def snapshot(self) -> ContextSnapshot:
        """Immutable copy of the current fields, safe to hand to another unit."""
        return MappingProxyType(dict(self._fields.get()))

    def restore(self, snapshot: Optional[ContextSnapshot]) -> None:
        """Replace the current fields with ``snapshot``."""
        if not snapshot:
            self._fields.set(_EMPTY)
            return
        self._fields.set(MappingProxyType(dict(snapshot)))

    def as_dict(self) -> Dict[str, str]:
        return dict(self._fields.get())

    def is_empty(self) -> bool:
        return not self._fields.get()

    @contextmanager
    def bound(self, **fields: Optional[str]) -> Iterator[None]:
        """
        Set ``fields`` for the duration of the block.

        On exit each key gets back the value it had before the block, or is
        removed if it had none. Other keys set inside the block are kept.
        """
        previous = {key: self.get(key) for key in fields}
        self.update(fields)
        try:
            yield
        finally:
            self.update(previous)

    @contextmanager
    def scope(self, snapshot: Optional[ContextSnapshot] = None) -> Iterator[None]:
        """
        Run a unit of work, optionally seeded from ``snapshot``.

        The context is cleared on exit whatever happens, including
        cancellation.
        """
        self.restore(snapshot)
        try:
            yield
        finally:
            self.clear_all()


request_context = RequestContextStore()


def run_with_snapshot(snapshot: ContextSnapshot, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    """Run ``func`` with ``snapshot`` restored, clearing the context afterwards."""
    with request_context.scope(snapshot):
        return func(*args, **kwargs)


async def arun_with_snapshot(snapshot: ContextSnapshot, awaitable: Awaitable[T]) -> T:
    """Await ``awaitable`` with ``snapshot`` restored, clearing the context afterwards."""
    with request_context.scope(snapshot):
        return await awaitable


def wrap_with_snapshot(func: Callable[..., T]) -> Callable[..., T]:
    """
    Capture the current context now and replay it when ``func`` runs.

    Handy for ``executor.submit(wrap_with_snapshot(fn), ...)`` or callbacks
    registered on another thread.
    """
    snapshot = request_context.snapshot()

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> T:
        return run_with_snapshot(snapshot, func, *args, **kwargs)

    return wrapper
