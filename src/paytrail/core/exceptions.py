"""
Custom exceptions for PayTrail.

Only configuration problems are raised by the library itself; failures while
logging or masking are recovered locally and business exceptions always
propagate unchanged.
"""

from typing import Any, Dict, Optional


class PayTrailException(Exception):
    """Base exception for PayTrail."""

    def __init__(
        self,
        message: str,
        status_code: int = 500,
        error_code: str = "internal_error",
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.error_code = error_code
        self.details = details or {}


class ConfigurationError(PayTrailException):
    """Raised when the instrumentation is configured with invalid values."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(
            message=message,
            status_code=500,
            error_code="configuration_error",
            details=details,
        )


class InvalidMaskingRuleError(ConfigurationError):
    """Raised when a masking rule pattern does not compile."""

    def __init__(self, rule_name: str, pattern: str, reason: str) -> None:
        super().__init__(
            message=f"Invalid masking rule '{rule_name}': {reason}",
            details={"rule": rule_name, "pattern": pattern, "reason": reason},
        )
        self.rule_name = rule_name
