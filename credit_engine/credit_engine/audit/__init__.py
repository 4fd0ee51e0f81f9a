"""Write-only audit trail for ledger and compliance events."""

from credit_engine.audit.sink import (
    AuditAction,
    AuditEvent,
    AuditSeverity,
    AuditSink,
    DatabaseAuditSink,
    LoggingAuditSink,
    SafeAuditSink,
    ensure_safe,
)

__all__ = [
    "AuditAction",
    "AuditEvent",
    "AuditSeverity",
    "AuditSink",
    "DatabaseAuditSink",
    "LoggingAuditSink",
    "SafeAuditSink",
    "ensure_safe",
]
