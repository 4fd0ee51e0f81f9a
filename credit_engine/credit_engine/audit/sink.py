"""Write-only audit sinks for ledger and compliance events.

Every balance change and every consent/opt-out transition is reported to an
:class:`AuditSink`.  Sinks never raise to the caller: a failed audit write is
logged locally and the core operation carries on.  Wrap any sink in
:class:`SafeAuditSink` to get that guarantee; the ledger and the compliance
gate do so automatically.
"""

from __future__ import annotations

import json
import logging
import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Protocol, runtime_checkable

from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from credit_engine.state.repository import AuditRepository

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Action constants
# ---------------------------------------------------------------------------


class AuditAction:
    """Well-known audit action identifiers."""

    CREDIT_DEDUCTED = "CREDIT_DEDUCTED"
    CREDIT_PURCHASED = "CREDIT_PURCHASED"
    CREDIT_RESET = "CREDIT_RESET"
    CREDITS_INITIALIZED = "CREDITS_INITIALIZED"
    SMS_OPT_OUT = "SMS_OPT_OUT"
    SMS_OPT_IN = "SMS_OPT_IN"
    SMS_SENT = "SMS_SENT"
    SMS_SEND_FAILED = "SMS_SEND_FAILED"


class AuditSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class AuditEvent(BaseModel):
    """A single structured audit event.

    Attributes
    ----------
    tenant_id:
        Tenant the event belongs to.  Phone-scoped events that span tenants
        (a global opt-out) use ``"platform"``.
    action:
        One of the :class:`AuditAction` identifiers.
    actor:
        Principal that caused the event; ``"system"`` for automated jobs.
    entity_type / entity_id:
        What the event is about (``"tenant"``, ``"phone"``, ``"appointment"``...).
    severity:
        Triage hint for reviewers.
    metadata:
        Free-form context stored alongside the event.
    """

    event_id: str = Field(default_factory=lambda: f"aud-{uuid.uuid4().hex[:12]}")
    tenant_id: str
    action: str
    actor: str = "system"
    entity_type: str | None = None
    entity_id: str | None = None
    severity: AuditSeverity = AuditSeverity.LOW
    metadata: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))


@runtime_checkable
class AuditSink(Protocol):
    """Anything that can accept an :class:`AuditEvent`."""

    async def log(self, event: AuditEvent) -> None: ...


# ---------------------------------------------------------------------------
# Sinks
# ---------------------------------------------------------------------------


class LoggingAuditSink:
    """Emits each event as a single JSON log line."""

    def __init__(self, logger_name: str = "credit_engine.audit") -> None:
        self._logger = logging.getLogger(logger_name)

    async def log(self, event: AuditEvent) -> None:
        self._logger.info("audit %s", json.dumps(event.model_dump(mode="json"), sort_keys=True))


class DatabaseAuditSink:
    """Appends hash-chained rows to ``audit_log`` inside the caller's session.

    The insert runs in a SAVEPOINT, so a failed audit write rolls back on
    its own and the caller's pending changes can still be committed.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def log(self, event: AuditEvent) -> None:
        repo = AuditRepository(self._session, tenant_id=event.tenant_id)
        kwargs: dict[str, Any] = {
            "actor": event.actor,
            "action": event.action,
            "entity_type": event.entity_type,
            "entity_id": event.entity_id,
            "metadata": event.metadata or None,
            "severity": event.severity.value,
        }
        async with self._session.begin_nested():
            await repo.log(**kwargs)


class SafeAuditSink:
    """Wraps another sink and swallows its failures after logging them."""

    def __init__(self, inner: AuditSink) -> None:
        self._inner = inner

    @property
    def inner(self) -> AuditSink:
        return self._inner

    async def log(self, event: AuditEvent) -> None:
        try:
            await self._inner.log(event)
        except Exception:
            logger.exception(
                "Audit sink %s failed for action=%s tenant=%s",
                type(self._inner).__name__,
                event.action,
                event.tenant_id,
            )


def ensure_safe(sink: AuditSink | None) -> SafeAuditSink:
    """Return *sink* wrapped in :class:`SafeAuditSink` (logging sink if ``None``)."""
    if sink is None:
        return SafeAuditSink(LoggingAuditSink())
    if isinstance(sink, SafeAuditSink):
        return sink
    return SafeAuditSink(sink)
