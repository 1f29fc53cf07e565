"""
Log and audit record models.

- StructuredLogRecord: the fixed JSON schema of every emitted log line
- ExceptionInfo: exception class, masked message and bounded stack trace
- AuditRecord: one line of the audit trail per audited operation call
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class ExceptionInfo(BaseModel):
    """Exception attached to a log record."""

    model_config = ConfigDict(populate_by_name=True)

    class_name: str = Field(alias="class", description="Exception class name")
    message: Optional[str] = Field(default=None, description="Masked exception message")
    stack_trace: List[str] = Field(
        default_factory=list,
        description="Innermost frames, bounded by max_stack_trace_depth",
    )


class StructuredLogRecord(BaseModel):
    """
    One structured log line.

    Field order is the serialization order.
    """

    model_config = ConfigDict(populate_by_name=True)

    timestamp: str = Field(alias="@timestamp", description="ISO-8601 UTC timestamp")
    level: str = Field(description="Upper-case level name")
    logger: Optional[str] = Field(default=None, description="Logger name")
    thread: str = Field(description="Name of the emitting thread")
    service: str = Field(description="Service name")
    environment: str = Field(description="Deployment environment")
    context: Optional[Dict[str, str]] = Field(default=None, description="Masked request context")
    message: Optional[str] = Field(default=None, description="Masked event message")
    exception: Optional[ExceptionInfo] = None
    fields: Optional[Dict[str, Any]] = Field(default=None, description="Masked extra event keys")

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)


class AuditStatus(str, Enum):
    """Outcome of an audited operation."""

    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"


class AuditRecord(BaseModel):
    """Audit trail entry for one operation call."""

    audit_type: str = Field(default="OPERATION", description="Kind of audited event")
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    operation: str
    operation_id: str
    status: AuditStatus
    duration_ms: float = Field(ge=0)
    correlation_id: Optional[str] = None
    user_id: Optional[str] = None
    client_ip: Optional[str] = None
    error_type: Optional[str] = None
    error_message: Optional[str] = Field(default=None, description="Masked error message")
