"""
Operation interceptor.

Wraps business callables with entry, exit, error, slow-operation and audit
logging. All logged values go through the masking engine, and the wrapped
callable's result or exception always reaches the caller unchanged.

Usage:
    @instrumented(operation="CAPTURE_PAYMENT", audit_enabled=True,
                  performance_threshold_ms=200)
    def capture(payment_id, amount):
        ...

    @instrumented_class()
    class RefundService:
        def refund(self, payment_id): ...

        @no_logging
        def ping(self): ...
"""

import functools
import inspect
import logging
import time
import uuid
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, Optional, TypeVar

import structlog

from ..config import get_settings
from ..models.records import AuditRecord, AuditStatus
from .context import CLIENT_IP, CORRELATION_ID, OPERATION, OPERATION_ID, USER_ID, RequestContextStore, request_context
from .masking import MaskingEngine, get_masking_engine
from .metrics import MetricsCollector, get_metrics_collector

F = TypeVar("F", bound=Callable[..., Any])

NO_LOGGING_ATTR = "__paytrail_no_logging__"
INSTRUMENTED_ATTR = "__paytrail_instrumented__"

LEVELS: Dict[str, int] = {
    "TRACE": logging.DEBUG,
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "WARNING": logging.WARNING,
}

_METHOD_NAMES = {
    logging.DEBUG: "debug",
    logging.INFO: "info",
    logging.WARNING: "warning",
}

_EXCLUDED_PARAMS = ("self", "cls")


@dataclass(frozen=True)
class OperationConfig:
    """How one operation is logged."""

    operation: Optional[str] = None
    log_params: bool = True
    log_result: bool = True
    audit_enabled: bool = False
    performance_threshold_ms: Optional[float] = None
    entry_level: str = "INFO"
    exit_level: str = "INFO"
    result_projection: Optional[Callable[[Any], Any]] = None
    skip: bool = False

    def __post_init__(self) -> None:
        for level in (self.entry_level, self.exit_level):
            if level.upper() not in LEVELS:
                raise ValueError(f"Unsupported operation log level: {level}")


def new_operation_id() -> str:
    return uuid.uuid4().hex[:8]


class OperationInterceptor:
    """
    Builds logging wrappers around callables.

    Args:
        masker: Masking engine applied to params, results and errors
        default_threshold_ms: Threshold used when an operation sets none
        enabled: When False, ``wrap`` returns callables untouched
        metrics: Optional collector for outcome counters and durations
        clock: Monotonic clock in seconds, injectable for tests
        store: Request context store the operation fields are bound into
    """

    def __init__(
        self,
        masker: Optional[MaskingEngine] = None,
        default_threshold_ms: float = 1000,
        enabled: bool = True,
        metrics: Optional[MetricsCollector] = None,
        clock: Callable[[], float] = time.perf_counter,
        store: Optional[RequestContextStore] = None,
        logger_name: str = "paytrail.operations",
        audit_logger_name: str = "paytrail.audit",
    ) -> None:
        self.masker = masker or get_masking_engine()
        self.default_threshold_ms = default_threshold_ms
        self.enabled = enabled
        self.metrics = metrics
        self.clock = clock
        self.store = store or request_context
        self.logger_name = logger_name
        self.audit_logger_name = audit_logger_name
        self.logger = structlog.get_logger(logger_name)
        self.audit_logger = structlog.get_logger(audit_logger_name)

    def wrap(self, func: F, config: Optional[OperationConfig] = None) -> F:
        """Return ``func`` wrapped according to ``config``; built once per operation."""
        config = config or OperationConfig()
        if not self.enabled or config.skip or getattr(func, NO_LOGGING_ATTR, False):
            return func

        operation = config.operation or func.__name__.upper()
        entry_level = LEVELS[config.entry_level.upper()]
        exit_level = LEVELS[config.exit_level.upper()]
        threshold_ms = self._threshold(config)
        try:
            signature: Optional[inspect.Signature] = inspect.signature(func)
        except (TypeError, ValueError):
            signature = None

        if inspect.iscoroutinefunction(func):

            @functools.wraps(func)
            async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
                operation_id = new_operation_id()
                with self.store.bound(**{OPERATION: operation, OPERATION_ID: operation_id}):
                    start = self.clock()
                    self._log_entry(operation, operation_id, config, entry_level, signature, args, kwargs)
                    try:
                        result = await func(*args, **kwargs)
                    except BaseException as e:
                        self._log_failure(operation, operation_id, config, start, e)
                        raise
                    self._log_success(operation, operation_id, config, exit_level, threshold_ms, start, result)
                    return result

            wrapper: Callable[..., Any] = async_wrapper
        else:

            @functools.wraps(func)
            def sync_wrapper(*args: Any, **kwargs: Any) -> Any:
                operation_id = new_operation_id()
                with self.store.bound(**{OPERATION: operation, OPERATION_ID: operation_id}):
                    start = self.clock()
                    self._log_entry(operation, operation_id, config, entry_level, signature, args, kwargs)
                    try:
                        result = func(*args, **kwargs)
                    except BaseException as e:
                        self._log_failure(operation, operation_id, config, start, e)
                        raise
                    self._log_success(operation, operation_id, config, exit_level, threshold_ms, start, result)
                    return result

            wrapper = sync_wrapper

        setattr(wrapper, INSTRUMENTED_ATTR, config)
        return wrapper  # type: ignore[return-value]

    def _threshold(self, config: OperationConfig) -> float:
        if config.performance_threshold_ms is None or config.performance_threshold_ms <= 0:
            return self.default_threshold_ms
        return config.performance_threshold_ms

    def _is_enabled_for(self, level: int) -> bool:
        return logging.getLogger(self.logger_name).isEnabledFor(level)

    def _elapsed_ms(self, start: float) -> float:
        return round((self.clock() - start) * 1000, 3)

    def _params(
        self,
        signature: Optional[inspect.Signature],
        args: tuple,
        kwargs: Dict[str, Any],
    ) -> Dict[str, Optional[str]]:
        """Masked ``name -> value`` map of the call arguments."""
        arguments: Dict[str, Any]
        if signature is not None:
            try:
                arguments = dict(signature.bind_partial(*args, **kwargs).arguments)
            except TypeError:
                arguments = {f"arg{i}": value for i, value in enumerate(args)}
                arguments.update(kwargs)
        else:
            arguments = {f"arg{i}": value for i, value in enumerate(args)}
            arguments.update(kwargs)

        return {
            name: self.masker.mask_value(value)
            for name, value in arguments.items()
            if name not in _EXCLUDED_PARAMS
        }

    def _emit(self, level: int, event: str, operation: str, **fields: Any) -> None:
        getattr(self.logger, _METHOD_NAMES[level])(event, operation=operation, **fields)

    def _fallback(
        self,
        level: int,
        event: str,
        operation: str,
        operation_id: str,
        error: Exception,
        logger_name: Optional[str] = None,
    ) -> None:
        # Minimal record straight to stdlib, bypassing the processor chain
        logging.getLogger(logger_name or self.logger_name).log(
            level,
            "%s operation=%s operation_id=%s (log formatting failed: %s)",
            event,
            operation,
            operation_id,
            type(error).__name__,
        )

    def _log_entry(
        self,
        operation: str,
        operation_id: str,
        config: OperationConfig,
        level: int,
        signature: Optional[inspect.Signature],
        args: tuple,
        kwargs: Dict[str, Any],
    ) -> None:
        if not self._is_enabled_for(level):
            return
        try:
            params = self._params(signature, args, kwargs) if config.log_params else {}
            if params:
                self._emit(level, "Operation started", operation, operation_id=operation_id, params=params)
            else:
                self._emit(level, "Operation started", operation, operation_id=operation_id)
        except Exception as e:
            self._fallback(level, "Operation started", operation, operation_id, e)

    def _log_success(
        self,
        operation: str,
        operation_id: str,
        config: OperationConfig,
        level: int,
        threshold_ms: float,
        start: float,
        result: Any,
    ) -> None:
        duration_ms = self._elapsed_ms(start)

        if self._is_enabled_for(level):
            try:
                fields: Dict[str, Any] = {"operation_id": operation_id, "duration_ms": duration_ms}
                if config.log_result and result is not None:
                    projected = config.result_projection(result) if config.result_projection else result
                    fields["result"] = self.masker.mask_value(projected)
                self._emit(level, "Operation completed", operation, **fields)
            except Exception as e:
                self._fallback(level, "Operation completed", operation, operation_id, e)

        slow = duration_ms > threshold_ms
        if slow and self._is_enabled_for(logging.WARNING):
            try:
                self._emit(
                    logging.WARNING,
                    "Operation exceeded performance threshold",
                    operation,
                    operation_id=operation_id,
                    duration_ms=duration_ms,
                    threshold_ms=threshold_ms,
                )
            except Exception as e:
                self._fallback(logging.WARNING, "Operation exceeded performance threshold", operation, operation_id, e)

        self._record_metrics(operation, "success", duration_ms, slow)

        if config.audit_enabled:
            self._audit(operation, operation_id, AuditStatus.SUCCESS, duration_ms)

    def _log_failure(
        self,
        operation: str,
        operation_id: str,
        config: OperationConfig,
        start: float,
        error: BaseException,
    ) -> None:
        duration_ms = self._elapsed_ms(start)

        if self._is_enabled_for(logging.ERROR):
            try:
                self.logger.error(
                    "Operation failed",
                    operation=operation,
                    operation_id=operation_id,
                    duration_ms=duration_ms,
                    error_type=type(error).__name__,
                    error_message=self.masker.mask(str(error)),
                    exc_info=error,
                )
            except Exception as e:
                self._fallback(logging.ERROR, "Operation failed", operation, operation_id, e)

        self._record_metrics(operation, "failure", duration_ms, False)

        if config.audit_enabled:
            self._audit(operation, operation_id, AuditStatus.FAILURE, duration_ms, error)

    def _record_metrics(self, operation: str, status: str, duration_ms: float, slow: bool) -> None:
        if self.metrics is None:
            return
        try:
            self.metrics.record_operation(operation, status, duration_ms / 1000)
            if slow:
                self.metrics.record_slow_operation(operation)
        except Exception as e:
            logger = structlog.get_logger(__name__)
            logger.debug("Operation metrics not recorded", operation=operation, error_type=type(e).__name__)

    def _audit(
        self,
        operation: str,
        operation_id: str,
        status: AuditStatus,
        duration_ms: float,
        error: Optional[BaseException] = None,
    ) -> None:
        try:
            record = AuditRecord(
                operation=operation,
                operation_id=operation_id,
                status=status,
                duration_ms=duration_ms,
                correlation_id=self.store.get(CORRELATION_ID),
                user_id=self.store.get(USER_ID),
                client_ip=self.store.get(CLIENT_IP),
                error_type=type(error).__name__ if error is not None else None,
                error_message=self.masker.mask(str(error)) if error is not None else None,
            )
            self.audit_logger.info("Audit record", audit=record.model_dump(mode="json", exclude_none=True))
        except Exception as e:
            self._fallback(logging.INFO, "Audit record", operation, operation_id, e, self.audit_logger_name)


# Global interceptor instance
_interceptor: Optional[OperationInterceptor] = None


def get_interceptor() -> OperationInterceptor:
    """Get or create the global interceptor from settings."""
    global _interceptor

    if _interceptor is None:
        settings = get_settings()
        _interceptor = OperationInterceptor(
            default_threshold_ms=settings.instrumentation.performance_threshold_ms,
            enabled=settings.instrumentation.enabled,
            metrics=get_metrics_collector(),
        )

    return _interceptor


def reset_interceptor() -> None:
    global _interceptor
    _interceptor = None


def no_logging(func: F) -> F:
    """Exclude a method from class-level instrumentation."""
    setattr(func, NO_LOGGING_ATTR, True)
    return func


def instrumented(
    func: Optional[F] = None,
    *,
    interceptor: Optional[OperationInterceptor] = None,
    **config: Any,
) -> Any:
    """
    Decorate a function as an instrumented operation.

    Works bare (``@instrumented``) or with ``OperationConfig`` fields
    (``@instrumented(operation="REFUND", audit_enabled=True)``).
    """
    operation_config = OperationConfig(**config)

    def decorator(target: F) -> F:
        return (interceptor or get_interceptor()).wrap(target, operation_config)

    if func is not None:
        return decorator(func)
    return decorator


def instrumented_class(
    cls: Optional[type] = None,
    *,
    interceptor: Optional[OperationInterceptor] = None,
    **config: Any,
) -> Any:
    """
    Instrument every public method defined on a class.

    Methods marked with ``no_logging`` or already decorated with
    ``instrumented`` keep their own behaviour. Operation names are
    ``PREFIX.METHOD`` in upper case, the prefix being ``operation`` or the
    class name.
    """
    base_config = OperationConfig(**config)

    def decorator(target: type) -> type:
        active = interceptor or get_interceptor()
        for name, attr in list(vars(target).items()):
            if name.startswith("_"):
                continue

            if isinstance(attr, (staticmethod, classmethod)):
                func = attr.__func__
                wrapper_type: Optional[type] = type(attr)
            elif inspect.isfunction(attr):
                func = attr
                wrapper_type = None
            else:
                continue

            if getattr(func, NO_LOGGING_ATTR, False) or hasattr(func, INSTRUMENTED_ATTR):
                continue

            method_config = replace(
                base_config,
                operation=f"{base_config.operation or target.__name__}.{name}".upper(),
            )
            wrapped = active.wrap(func, method_config)
            setattr(target, name, wrapper_type(wrapped) if wrapper_type else wrapped)
        return target

    if cls is not None:
        return decorator(cls)
    return decorator
