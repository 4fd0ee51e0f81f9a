"""SQLAlchemy 2.0 ORM table definitions for the credit and messaging state store.

All tables use the modern ``Mapped`` / ``mapped_column`` declaration style
introduced in SQLAlchemy 2.0.  The ``Base`` declarative base is exported for
use by Alembic migrations and the repository layer.
"""

from __future__ import annotations

from datetime import UTC, date, datetime
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

# Cross-dialect JSON type: uses JSONB on PostgreSQL for GIN indexing and
# query operators, falls back to plain JSON (stored as TEXT) on SQLite.
_JsonType = JSONB().with_variant(JSON(), "sqlite")


class UTCDateTime(TypeDecorator):
    """Timezone-aware timestamp stored as UTC on every backend.

    SQLite drops the offset on write and returns naive values, so binds are
    normalised to UTC and naive results are tagged as UTC on the way out.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):  # type: ignore[override]
        if value is not None and value.tzinfo is not None:
            return value.astimezone(UTC)
        return value

    def process_result_value(self, value, dialect):  # type: ignore[override]
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


def _utcnow() -> datetime:
    """Return the current UTC timestamp (timezone-aware)."""
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Declarative base
# ---------------------------------------------------------------------------


class Base(DeclarativeBase):
    """Shared declarative base for all state store tables."""


# ---------------------------------------------------------------------------
# Tenants
# ---------------------------------------------------------------------------


class TenantTable(Base):
    """A business account and its credit balances.

    Balance columns are mutated exclusively by the credit ledger.
    """

    __tablename__ = "tenants"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(256), nullable=False, default="")
    subscription_tier: Mapped[str] = mapped_column(String(32), nullable=False, default="trial")
    timezone: Mapped[str] = mapped_column(String(64), nullable=False, default="America/New_York")
    address: Mapped[str | None] = mapped_column(String(512), nullable=True)
    monthly_credits: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    purchased_credits: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    credits_used_this_month: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    credits_reset_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    __table_args__ = (
        CheckConstraint("monthly_credits >= 0", name="ck_tenants_monthly_credits_non_negative"),
        CheckConstraint("purchased_credits >= 0", name="ck_tenants_purchased_credits_non_negative"),
        CheckConstraint("credits_used_this_month >= 0", name="ck_tenants_credits_used_non_negative"),
        Index("ix_tenants_reset_date", "credits_reset_date"),
    )


# ---------------------------------------------------------------------------
# Credit transactions
# ---------------------------------------------------------------------------


class CreditTransactionTable(Base):
    """Append-only history of every balance change.

    Rows are never updated or deleted; ``balance_after`` is the tenant's
    total credits immediately after the change.
    """

    __tablename__ = "credit_transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False
    )
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    operation: Mapped[str] = mapped_column(String(32), nullable=False)
    feature: Mapped[str] = mapped_column(String(64), nullable=False)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(_JsonType, nullable=True)
    balance_after: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "operation IN ('deduct', 'purchase', 'reset', 'initialize')",
            name="ck_credit_transactions_operation",
        ),
        Index("ix_credit_transactions_tenant_created", "tenant_id", "created_at"),
    )


# ---------------------------------------------------------------------------
# SMS consent / opt-out / compliance log
# ---------------------------------------------------------------------------


class ConsentTable(Base):
    """Recorded permission to receive promotional SMS from a tenant.

    Deactivated (never deleted) on opt-out, reactivated on opt-in.
    """

    __tablename__ = "sms_consent"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    phone_number: Mapped[str] = mapped_column(String(32), nullable=False)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    customer_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    consent_type: Mapped[str] = mapped_column(String(32), nullable=False)
    consent_method: Mapped[str] = mapped_column(String(32), nullable=False)
    purpose: Mapped[list[str] | None] = mapped_column(_JsonType, nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(Text, nullable=True)
    consented_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    __table_args__ = (
        Index("ix_sms_consent_phone_tenant", "phone_number", "tenant_id"),
        Index("ix_sms_consent_phone", "phone_number"),
    )


class OptOutTable(Base):
    """Phone-level suppression created by a STOP reply."""

    __tablename__ = "sms_opt_outs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    phone_number: Mapped[str] = mapped_column(String(32), nullable=False)
    opted_out_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)
    reason: Mapped[str] = mapped_column(String(128), nullable=False, default="user_request")

    __table_args__ = (Index("ix_sms_opt_outs_phone", "phone_number"),)


class ComplianceLogTable(Base):
    """Immutable record of a send-eligibility decision."""

    __tablename__ = "sms_compliance_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    phone_number: Mapped[str] = mapped_column(String(32), nullable=False)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    allowed: Mapped[bool] = mapped_column(Boolean, nullable=False)
    reason: Mapped[str] = mapped_column(String(128), nullable=False, default="passed_all_checks")
    message_type: Mapped[str | None] = mapped_column(String(32), nullable=True)
    checked_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)

    __table_args__ = (Index("ix_sms_compliance_log_tenant_checked", "tenant_id", "checked_at"),)


# ---------------------------------------------------------------------------
# Notification candidates
# ---------------------------------------------------------------------------


class CustomerTable(Base):
    """A tenant's customer, carrying the per-customer notification flags."""

    __tablename__ = "customers"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False
    )
    first_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(32), nullable=True)
    date_of_birth: Mapped[date | None] = mapped_column(Date, nullable=True)
    last_appointment_date: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    birthday_message_sent_this_year: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    service_reminder_sent: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    # Set while a run is sending; a stale claim is taken over after the lease.
    birthday_claimed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    service_reminder_claimed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    __table_args__ = (
        Index("ix_customers_tenant", "tenant_id"),
        Index("ix_customers_last_appointment", "last_appointment_date"),
    )


class AppointmentTable(Base):
    """A booked appointment, carrying the per-appointment notification flags."""

    __tablename__ = "appointments"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False
    )
    customer_id: Mapped[str | None] = mapped_column(
        String(64), ForeignKey("customers.id", ondelete="SET NULL"), nullable=True
    )
    service_name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    appointment_date: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    start_time: Mapped[str | None] = mapped_column(String(32), nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="pending")
    reminder_24h_sent: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    reminder_24h_sent_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    reminder_2h_sent: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    reminder_2h_sent_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    no_show_followup_sent: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    no_show_followup_sent_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    reminder_24h_claimed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    reminder_2h_claimed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    no_show_followup_claimed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'confirmed', 'completed', 'cancelled', 'no-show')",
            name="ck_appointments_status",
        ),
        Index("ix_appointments_tenant_date", "tenant_id", "appointment_date"),
        Index("ix_appointments_date_status", "appointment_date", "status"),
    )


# ---------------------------------------------------------------------------
# Audit log
# ---------------------------------------------------------------------------


class AuditLogTable(Base):
    """Append-only, hash-chained audit trail of ledger and compliance events."""

    __tablename__ = "audit_log"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    actor: Mapped[str] = mapped_column(String(256), nullable=False)
    action: Mapped[str] = mapped_column(String(64), nullable=False)
    entity_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    entity_id: Mapped[str | None] = mapped_column(String(256), nullable=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(_JsonType, nullable=True)
    severity: Mapped[str] = mapped_column(String(16), nullable=False, default="low")
    previous_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    entry_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)

    __table_args__ = (
        Index("ix_audit_log_tenant_created", "tenant_id", "created_at"),
        Index("ix_audit_log_action", "action"),
    )
