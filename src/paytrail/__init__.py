"""
PayTrail - correlated, privacy-safe operation logging for transaction services

Carries a request identity through in-process calls, worker forks and
outbound HTTP calls, wraps business operations with entry/exit/error/audit
logging and masks sensitive payment data before anything reaches a log sink.
"""

__version__ = "0.1.0"

from .core.context import request_context, run_with_snapshot, arun_with_snapshot, wrap_with_snapshot
from .core.interceptor import OperationConfig, OperationInterceptor, instrumented, instrumented_class, no_logging
from .core.masking import MaskingEngine, MaskingRule, get_masking_engine
from .main import configure_logging, create_app

__all__ = [
    "request_context",
    "run_with_snapshot",
    "arun_with_snapshot",
    "wrap_with_snapshot",
    "OperationConfig",
    "OperationInterceptor",
    "instrumented",
    "instrumented_class",
    "no_logging",
    "MaskingEngine",
    "MaskingRule",
    "get_masking_engine",
    "configure_logging",
    "create_app",
]
