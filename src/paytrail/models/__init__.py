"""
Pydantic data models package.

Contains the record schemas written to log sinks:
- Structured log records and exception details
- Audit trail records
"""

from .records import AuditRecord, AuditStatus, ExceptionInfo, StructuredLogRecord

__all__ = [
    "AuditRecord",
    "AuditStatus",
    "ExceptionInfo",
    "StructuredLogRecord",
]
