"""
Structured log rendering.

``StructuredLogSerializer`` is the last processor of the structlog chain in
JSON mode: it turns an event dict into one line of the fixed record schema,
masking every value on the way. ``MaskingEventProcessor`` does the masking
for the human-readable console renderer.
"""

import json
import sys
import threading
import traceback
from datetime import datetime, timezone
from types import TracebackType
from typing import Any, Dict, List, Optional, Tuple, Type

import structlog

from ..config import Settings, get_settings
from ..models.records import ExceptionInfo, StructuredLogRecord
from .context import RequestContextStore, request_context
from .masking import MaskingEngine, get_masking_engine

ExcInfo = Tuple[Type[BaseException], BaseException, Optional[TracebackType]]

# Event dict keys that map onto the fixed record fields
RESERVED_KEYS = frozenset(
    {"event", "level", "logger", "timestamp", "exc_info", "exception", "stack_info"}
)

SERIALIZATION_FAILED = "JSON serialization failed"


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _normalize_timestamp(value: Any) -> str:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).isoformat()
    if isinstance(value, str) and value:
        return value
    return _utc_now()


def _exc_info_tuple(value: Any) -> Optional[ExcInfo]:
    """Resolve the forms structlog accepts for ``exc_info``."""
    if value is None or value is False:
        return None
    if isinstance(value, BaseException):
        return type(value), value, value.__traceback__
    if isinstance(value, tuple) and len(value) == 3 and value[0] is not None:
        return value  # type: ignore[return-value]
    if value is True:
        current = sys.exc_info()
        if current[0] is not None:
            return current  # type: ignore[return-value]
    return None


class StructuredLogSerializer:
    """
    Final structlog renderer producing fixed-schema JSON lines.

    Args:
        service_name: ``service`` field of every record
        environment: ``environment`` field of every record
        masker: Masking engine, the process-wide one by default
        include_context: Add the request context object
        include_stack_trace: Add exception stack frames
        max_stack_trace_depth: Frames kept per exception, innermost first
        store: Context store read for the ``context`` object
    """

    def __init__(
        self,
        service_name: str = "unknown-service",
        environment: str = "unknown",
        masker: Optional[MaskingEngine] = None,
        include_context: bool = True,
        include_stack_trace: bool = True,
        max_stack_trace_depth: int = 50,
        store: Optional[RequestContextStore] = None,
    ) -> None:
        self.service_name = service_name
        self.environment = environment
        self.masker = masker or get_masking_engine()
        self.include_context = include_context
        self.include_stack_trace = include_stack_trace
        self.max_stack_trace_depth = max_stack_trace_depth
        self.store = store or request_context

    def __call__(self, logger: Any, method_name: str, event_dict: Dict[str, Any]) -> str:
        try:
            return self.build_record(logger, method_name, event_dict).to_json()
        except Exception as e:
            return self._fallback(method_name, event_dict, e)

    def build_record(self, logger: Any, method_name: str, event_dict: Dict[str, Any]) -> StructuredLogRecord:
        level = str(event_dict.get("level") or method_name).upper()
        if level == "WARN":
            level = "WARNING"

        message = event_dict.get("event")
        fields = {
            key: self.mask_field(value)
            for key, value in event_dict.items()
            if key not in RESERVED_KEYS
        }

        return StructuredLogRecord(
            timestamp=_normalize_timestamp(event_dict.get("timestamp")),
            level=level,
            logger=self._logger_name(logger, event_dict),
            thread=threading.current_thread().name,
            service=self.service_name,
            environment=self.environment,
            context=self._context(),
            message=self.masker.mask(str(message)) if message is not None else None,
            exception=self._exception(event_dict),
            fields=fields or None,
        )

    def mask_field(self, value: Any) -> Any:
        """Mask one event value, keeping JSON scalars and container shapes."""
        if isinstance(value, str):
            return self.masker.mask(value)
        if value is None or isinstance(value, (bool, int, float)):
            return value
        if isinstance(value, dict):
            return {str(key): self.mask_field(item) for key, item in value.items()}
        if isinstance(value, (list, tuple)):
            return [self.mask_field(item) for item in value]
        return self.masker.mask_value(value)

    def _logger_name(self, logger: Any, event_dict: Dict[str, Any]) -> Optional[str]:
        name = event_dict.get("logger")
        if name is None:
            name = getattr(logger, "name", None)
        return str(name) if name is not None else None

    def _context(self) -> Optional[Dict[str, str]]:
        if not self.include_context:
            return None
        fields = self.store.as_dict()
        if not fields:
            return None
        return {key: self.masker.mask(value) or "" for key, value in fields.items()}

    def _exception(self, event_dict: Dict[str, Any]) -> Optional[ExceptionInfo]:
        exc_info = _exc_info_tuple(event_dict.get("exc_info"))
        if exc_info is None:
            # Already rendered upstream (format_exc_info)
            rendered = event_dict.get("exception")
            if isinstance(rendered, str) and rendered:
                class_name, _, text = rendered.strip().splitlines()[-1].partition(":")
                return ExceptionInfo(class_name=class_name, message=self.masker.mask(text.strip()))
            return None

        exc_type, exc, tb = exc_info
        return ExceptionInfo(
            class_name=exc_type.__name__,
            message=self.masker.mask(str(exc)),
            stack_trace=self._stack_trace(tb) if self.include_stack_trace else [],
        )

    def _stack_trace(self, tb: Optional[TracebackType]) -> List[str]:
        if tb is None or self.max_stack_trace_depth <= 0:
            return []
        frames = traceback.extract_tb(tb)[-self.max_stack_trace_depth:]
        return [
            self.masker.mask(f'File "{frame.filename}", line {frame.lineno}, in {frame.name}') or ""
            for frame in frames
        ]

    def _fallback(self, method_name: str, event_dict: Dict[str, Any], error: Exception) -> str:
        try:
            message = self.masker.mask(str(event_dict.get("event", "")))
        except Exception:
            message = None
        return json.dumps(
            {
                "@timestamp": _utc_now(),
                "level": str(event_dict.get("level") or method_name).upper(),
                "logger": str(event_dict.get("logger", "")),
                "error": SERIALIZATION_FAILED,
                "error_type": type(error).__name__,
                "message": message,
            },
            ensure_ascii=False,
        )


class MaskingEventProcessor:
    """
    Console-mode processor: merge the request context and mask every value.

    ``exc_info`` is rendered to an ``exception`` string first so the
    traceback text is masked like any other value. Keys already on the event
    win over context keys.
    """

    def __init__(
        self,
        masker: Optional[MaskingEngine] = None,
        store: Optional[RequestContextStore] = None,
    ) -> None:
        self.masker = masker or get_masking_engine()
        self.store = store or request_context

    def __call__(self, logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
        event_dict = structlog.processors.format_exc_info(logger, method_name, event_dict)
        for key, value in self.store.as_dict().items():
            event_dict.setdefault(key, value)

        for key, value in list(event_dict.items()):
            if key in ("level", "logger", "timestamp"):
                continue
            if isinstance(value, str):
                event_dict[key] = self.masker.mask(value)
            elif isinstance(value, (dict, list, tuple)):
                event_dict[key] = self.masker.mask_value(value)
        return event_dict


def build_serializer(settings: Optional[Settings] = None) -> StructuredLogSerializer:
    """Serializer configured from ``settings``, the process settings by default."""
    settings = settings or get_settings()
    return StructuredLogSerializer(
        service_name=settings.service_name,
        environment=settings.environment,
        include_context=settings.log.include_context,
        include_stack_trace=settings.log.include_stack_trace,
        max_stack_trace_depth=settings.log.max_stack_trace_depth,
    )
