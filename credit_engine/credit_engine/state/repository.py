"""Repository classes providing access to the credit and messaging state store.

Each repository takes an ``AsyncSession`` at construction time and operates
within the caller's transaction boundary.  All writes call ``session.flush()``
so that generated defaults are populated; the caller is responsible for calling
``session.commit()`` (or relying on the ``get_session`` context manager).

Every mutation that must be race-free (balance changes, send claims and
sent-flag flips, the monthly reset) is a single conditional ``UPDATE`` whose
affected-row count or ``RETURNING`` clause tells the caller whether it won.
No repository method reads a value and then writes it back in a separate
statement.
"""

from __future__ import annotations

import hashlib
import json
import logging
import uuid
from datetime import UTC, date, datetime, timedelta
from typing import Any, NamedTuple

from sqlalchemy import case, delete, extract, func, or_, select, text, update
from sqlalchemy.ext.asyncio import AsyncSession

from credit_engine.state.database import is_postgres
from credit_engine.state.tables import (
    AppointmentTable,
    AuditLogTable,
    ComplianceLogTable,
    ConsentTable,
    CreditTransactionTable,
    CustomerTable,
    OptOutTable,
    TenantTable,
)

logger = logging.getLogger(__name__)


def _advisory_lock_id(key: str) -> int:
    """Stable 31-bit lock key; ``hash()`` is salted per process."""
    return int.from_bytes(hashlib.sha256(key.encode("utf-8")).digest()[:4], "big") & 0x7FFFFFFF


class BalanceRow(NamedTuple):
    """Balance columns returned by a conditional balance update."""

    monthly_credits: int
    purchased_credits: int
    credits_used_this_month: int
    credits_reset_date: date | None


# ---------------------------------------------------------------------------
# TenantRepository
# ---------------------------------------------------------------------------


class TenantRepository:
    """Tenant rows and their credit balance columns.

    Balance mutations are exposed only as conditional updates; the credit
    ledger is the sole caller.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(
        self,
        tenant_id: str,
        *,
        name: str = "",
        subscription_tier: str = "trial",
        timezone: str = "America/New_York",
        address: str | None = None,
    ) -> TenantTable:
        """Insert a tenant with empty balances."""
        row = TenantTable(
            id=tenant_id,
            name=name,
            subscription_tier=subscription_tier,
            timezone=timezone,
            address=address,
            monthly_credits=0,
            purchased_credits=0,
            credits_used_this_month=0,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def get(self, tenant_id: str) -> TenantTable | None:
        """Fetch a tenant, refreshing any stale identity-map copy."""
        stmt = (
            select(TenantTable)
            .where(TenantTable.id == tenant_id)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def set_tier(self, tenant_id: str, subscription_tier: str) -> bool:
        """Change a tenant's subscription tier.  Returns False if absent."""
        stmt = (
            update(TenantTable)
            .where(TenantTable.id == tenant_id)
            .values(subscription_tier=subscription_tier)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]

    async def deduct_if_sufficient(self, tenant_id: str, amount: int) -> BalanceRow | None:
        """Atomically draw *amount* from monthly first, then purchased.

        The ``WHERE`` clause only matches when the combined pools cover the
        amount, so the row is either fully debited or untouched.  Both
        ``CASE`` expressions see the pre-update column values.

        Returns the post-update balance, or ``None`` when no row matched
        (unknown tenant or insufficient credits).
        """
        monthly = TenantTable.monthly_credits
        purchased = TenantTable.purchased_credits
        stmt = (
            update(TenantTable)
            .where(
                TenantTable.id == tenant_id,
                monthly + purchased >= amount,
            )
            .values(
                monthly_credits=case((monthly >= amount, monthly - amount), else_=0),
                purchased_credits=case(
                    (monthly >= amount, purchased),
                    else_=purchased - (amount - monthly),
                ),
                credits_used_this_month=TenantTable.credits_used_this_month + amount,
                updated_at=datetime.now(UTC),
            )
            .returning(
                TenantTable.monthly_credits,
                TenantTable.purchased_credits,
                TenantTable.credits_used_this_month,
                TenantTable.credits_reset_date,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        row = result.one_or_none()
        await self._session.flush()
        return BalanceRow(*row) if row is not None else None

    async def add_purchased(self, tenant_id: str, credits: int) -> BalanceRow | None:
        """Atomically increase the purchased pool.  ``None`` if absent."""
        stmt = (
            update(TenantTable)
            .where(TenantTable.id == tenant_id)
            .values(
                purchased_credits=TenantTable.purchased_credits + credits,
                updated_at=datetime.now(UTC),
            )
            .returning(
                TenantTable.monthly_credits,
                TenantTable.purchased_credits,
                TenantTable.credits_used_this_month,
                TenantTable.credits_reset_date,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        row = result.one_or_none()
        await self._session.flush()
        return BalanceRow(*row) if row is not None else None

    async def apply_reset(
        self,
        tenant_id: str,
        *,
        allocation: int,
        expected_reset_date: date | None,
        next_reset_date: date,
    ) -> BalanceRow | None:
        """Reallocate the monthly pool if the cycle has not already been reset.

        The update is guarded on ``credits_reset_date`` still holding
        *expected_reset_date*; a second reset of the same cycle matches no
        row and returns ``None``.
        """
        if expected_reset_date is None:
            cycle_guard = TenantTable.credits_reset_date.is_(None)
        else:
            cycle_guard = TenantTable.credits_reset_date == expected_reset_date
        stmt = (
            update(TenantTable)
            .where(TenantTable.id == tenant_id, cycle_guard)
            .values(
                monthly_credits=allocation,
                credits_used_this_month=0,
                credits_reset_date=next_reset_date,
                updated_at=datetime.now(UTC),
            )
            .returning(
                TenantTable.monthly_credits,
                TenantTable.purchased_credits,
                TenantTable.credits_used_this_month,
                TenantTable.credits_reset_date,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        row = result.one_or_none()
        await self._session.flush()
        return BalanceRow(*row) if row is not None else None

    async def initialize_balances(
        self,
        tenant_id: str,
        *,
        subscription_tier: str,
        allocation: int,
        reset_date: date,
    ) -> BalanceRow | None:
        """Set starting balances; purchased credits and usage are zeroed."""
        stmt = (
            update(TenantTable)
            .where(TenantTable.id == tenant_id)
            .values(
                subscription_tier=subscription_tier,
                monthly_credits=allocation,
                purchased_credits=0,
                credits_used_this_month=0,
                credits_reset_date=reset_date,
                updated_at=datetime.now(UTC),
            )
            .returning(
                TenantTable.monthly_credits,
                TenantTable.purchased_credits,
                TenantTable.credits_used_this_month,
                TenantTable.credits_reset_date,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        row = result.one_or_none()
        await self._session.flush()
        return BalanceRow(*row) if row is not None else None

    async def list_due_for_reset(self, as_of: date, limit: int = 500) -> list[str]:
        """Return ids of tenants whose reset date is on or before *as_of*.

        .. warning:: **Intentionally cross-tenant**; only the reset job
           calls this.
        """
        stmt = (
            select(TenantTable.id)
            .where(TenantTable.credits_reset_date.is_not(None), TenantTable.credits_reset_date <= as_of)
            .order_by(TenantTable.credits_reset_date, TenantTable.id)
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())


# ---------------------------------------------------------------------------
# CreditTransactionRepository
# ---------------------------------------------------------------------------


class CreditTransactionRepository:
    """Append-only access to ``credit_transactions``.

    There is deliberately no update or delete method.
    """

    def __init__(self, session: AsyncSession, tenant_id: str) -> None:
        self._session = session
        self._tenant_id = tenant_id

    async def append(
        self,
        *,
        amount: int,
        operation: str,
        feature: str,
        balance_after: int,
        metadata: dict[str, Any] | None = None,
    ) -> CreditTransactionTable:
        """Insert a transaction row and return it."""
        row = CreditTransactionTable(
            tenant_id=self._tenant_id,
            amount=amount,
            operation=operation,
            feature=feature,
            metadata_json=metadata,
            balance_after=balance_after,
            created_at=datetime.now(UTC),
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def list_recent(self, limit: int = 50) -> list[CreditTransactionTable]:
        """Return the newest transactions first."""
        limit = max(1, min(limit, 500))
        stmt = (
            select(CreditTransactionTable)
            .where(CreditTransactionTable.tenant_id == self._tenant_id)
            .order_by(CreditTransactionTable.created_at.desc(), CreditTransactionTable.id.desc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def count(self) -> int:
        stmt = select(func.count()).where(CreditTransactionTable.tenant_id == self._tenant_id)
        result = await self._session.execute(stmt)
        return result.scalar_one()


# ---------------------------------------------------------------------------
# Consent / opt-out / compliance log
# ---------------------------------------------------------------------------


class ConsentRepository:
    """CRUD operations for the ``sms_consent`` table."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def has_active(self, phone_number: str, tenant_id: str) -> bool:
        stmt = select(func.count()).where(
            ConsentTable.phone_number == phone_number,
            ConsentTable.tenant_id == tenant_id,
            ConsentTable.is_active.is_(True),
        )
        result = await self._session.execute(stmt)
        return result.scalar_one() > 0

    async def add(
        self,
        *,
        phone_number: str,
        tenant_id: str,
        consent_type: str,
        consent_method: str,
        purpose: list[str],
        consented_at: datetime,
        customer_id: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> ConsentTable:
        """Append an active consent row; existing rows are left as they are."""
        row = ConsentTable(
            phone_number=phone_number,
            tenant_id=tenant_id,
            customer_id=customer_id,
            consent_type=consent_type,
            consent_method=consent_method,
            purpose=purpose,
            consented_at=consented_at,
            ip_address=ip_address,
            user_agent=user_agent,
            is_active=True,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def deactivate_all(self, phone_number: str) -> int:
        """Deactivate every consent row for the phone, across all tenants."""
        stmt = (
            update(ConsentTable)
            .where(ConsentTable.phone_number == phone_number, ConsentTable.is_active.is_(True))
            .values(is_active=False)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return result.rowcount or 0  # type: ignore[attr-defined]

    async def reactivate(self, phone_number: str, tenant_id: str) -> int:
        """Reactivate the phone's consent rows for a single tenant."""
        stmt = (
            update(ConsentTable)
            .where(
                ConsentTable.phone_number == phone_number,
                ConsentTable.tenant_id == tenant_id,
                ConsentTable.is_active.is_(False),
            )
            .values(is_active=True)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return result.rowcount or 0  # type: ignore[attr-defined]

    async def list_for_phone(self, phone_number: str) -> list[ConsentTable]:
        stmt = (
            select(ConsentTable)
            .where(ConsentTable.phone_number == phone_number)
            .order_by(ConsentTable.id)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())


class OptOutRepository:
    """CRUD operations for the ``sms_opt_outs`` table."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def exists(self, phone_number: str) -> bool:
        stmt = select(func.count()).where(OptOutTable.phone_number == phone_number)
        result = await self._session.execute(stmt)
        return result.scalar_one() > 0

    async def add(self, phone_number: str, reason: str) -> OptOutTable:
        row = OptOutTable(
            phone_number=phone_number,
            reason=reason,
            opted_out_at=datetime.now(UTC),
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def delete_for_phone(self, phone_number: str) -> int:
        stmt = delete(OptOutTable).where(OptOutTable.phone_number == phone_number)
        result = await self._session.execute(stmt)
        await self._session.flush()
        return result.rowcount or 0  # type: ignore[attr-defined]


class ComplianceLogRepository:
    """Append-only access to ``sms_compliance_log``."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def append(
        self,
        *,
        phone_number: str,
        tenant_id: str,
        allowed: bool,
        reason: str,
        message_type: str | None = None,
    ) -> ComplianceLogTable:
        row = ComplianceLogTable(
            phone_number=phone_number,
            tenant_id=tenant_id,
            allowed=allowed,
            reason=reason,
            message_type=message_type,
            checked_at=datetime.now(UTC),
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def list_recent(self, tenant_id: str, limit: int = 100) -> list[ComplianceLogTable]:
        stmt = (
            select(ComplianceLogTable)
            .where(ComplianceLogTable.tenant_id == tenant_id)
            .order_by(ComplianceLogTable.checked_at.desc(), ComplianceLogTable.id.desc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())


# ---------------------------------------------------------------------------
# Notification candidates
# ---------------------------------------------------------------------------

# Sent-flag column -> timestamp column written alongside it (if any).
_APPOINTMENT_FLAGS: dict[str, str | None] = {
    "reminder_24h_sent": "reminder_24h_sent_at",
    "reminder_2h_sent": "reminder_2h_sent_at",
    "no_show_followup_sent": "no_show_followup_sent_at",
}
_CUSTOMER_FLAGS: dict[str, str | None] = {
    "birthday_message_sent_this_year": None,
    "service_reminder_sent": None,
}
# Sent-flag column -> claim timestamp held by the run currently sending.
_CLAIM_COLUMNS: dict[str, str] = {
    "reminder_24h_sent": "reminder_24h_claimed_at",
    "reminder_2h_sent": "reminder_2h_claimed_at",
    "no_show_followup_sent": "no_show_followup_claimed_at",
    "birthday_message_sent_this_year": "birthday_claimed_at",
    "service_reminder_sent": "service_reminder_claimed_at",
}


class AppointmentCandidateRow(NamedTuple):
    appointment: AppointmentTable
    customer: CustomerTable | None
    tenant: TenantTable


class CustomerCandidateRow(NamedTuple):
    customer: CustomerTable
    tenant: TenantTable


class CandidateRepository:
    """Time-windowed candidate queries and atomic sent-flag flips.

    .. warning:: **Intentionally cross-tenant**

       The notification jobs run once for the whole platform, so these
       queries span every tenant.  They are only reachable from the
       scheduler, which runs under the service role.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def appointments_in_window(
        self,
        *,
        window_start: datetime,
        window_end: datetime,
        statuses: list[str],
        sent_flag: str,
        limit: int = 1000,
    ) -> list[AppointmentCandidateRow]:
        """Appointments in ``[window_start, window_end)`` whose *sent_flag* is false."""
        flag_col = getattr(AppointmentTable, self._check_flag(sent_flag, _APPOINTMENT_FLAGS))
        stmt = (
            select(AppointmentTable, CustomerTable, TenantTable)
            .join(TenantTable, TenantTable.id == AppointmentTable.tenant_id)
            .outerjoin(CustomerTable, CustomerTable.id == AppointmentTable.customer_id)
            .where(
                AppointmentTable.appointment_date >= window_start,
                AppointmentTable.appointment_date < window_end,
                AppointmentTable.status.in_(statuses),
                flag_col.is_(False),
            )
            .order_by(AppointmentTable.appointment_date, AppointmentTable.id)
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return [AppointmentCandidateRow(*row) for row in result.all()]

    async def customers_with_birthday(
        self,
        *,
        month: int,
        day: int,
        limit: int = 1000,
    ) -> list[CustomerCandidateRow]:
        """Customers born on *month*/*day* not yet greeted this year."""
        stmt = (
            select(CustomerTable, TenantTable)
            .join(TenantTable, TenantTable.id == CustomerTable.tenant_id)
            .where(
                CustomerTable.date_of_birth.is_not(None),
                extract("month", CustomerTable.date_of_birth) == month,
                extract("day", CustomerTable.date_of_birth) == day,
                CustomerTable.birthday_message_sent_this_year.is_(False),
            )
            .order_by(CustomerTable.id)
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return [CustomerCandidateRow(*row) for row in result.all()]

    async def customers_last_seen_between(
        self,
        *,
        earliest: datetime,
        latest: datetime,
        limit: int = 1000,
    ) -> list[CustomerCandidateRow]:
        """Customers whose last appointment falls in ``[earliest, latest]``."""
        stmt = (
            select(CustomerTable, TenantTable)
            .join(TenantTable, TenantTable.id == CustomerTable.tenant_id)
            .where(
                CustomerTable.last_appointment_date >= earliest,
                CustomerTable.last_appointment_date <= latest,
                CustomerTable.service_reminder_sent.is_(False),
            )
            .order_by(CustomerTable.id)
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return [CustomerCandidateRow(*row) for row in result.all()]

    async def mark_appointment_sent(self, appointment_id: str, sent_flag: str) -> bool:
        """Flip *sent_flag* false→true.  Returns True only for the caller that flipped it."""
        sent_at_col = _APPOINTMENT_FLAGS.get(self._check_flag(sent_flag, _APPOINTMENT_FLAGS))
        values: dict[str, Any] = {sent_flag: True}
        if sent_at_col is not None:
            values[sent_at_col] = datetime.now(UTC)
        stmt = (
            update(AppointmentTable)
            .where(
                AppointmentTable.id == appointment_id,
                getattr(AppointmentTable, sent_flag).is_(False),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return (result.rowcount or 0) == 1  # type: ignore[attr-defined]

    async def mark_customer_sent(self, customer_id: str, sent_flag: str) -> bool:
        """Flip *sent_flag* false→true.  Returns True only for the caller that flipped it."""
        self._check_flag(sent_flag, _CUSTOMER_FLAGS)
        stmt = (
            update(CustomerTable)
            .where(
                CustomerTable.id == customer_id,
                getattr(CustomerTable, sent_flag).is_(False),
            )
            .values({sent_flag: True})
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return (result.rowcount or 0) == 1  # type: ignore[attr-defined]

    async def claim_appointment(
        self,
        appointment_id: str,
        sent_flag: str,
        *,
        now: datetime,
        lease: timedelta,
    ) -> bool:
        """Reserve the send for *sent_flag* on one appointment.

        Succeeds while the flag is still false and nobody holds a claim
        younger than *lease*.  Returns True only for the caller that took it.
        """
        self._check_flag(sent_flag, _APPOINTMENT_FLAGS)
        return await self._claim(AppointmentTable, appointment_id, sent_flag, now=now, lease=lease)

    async def claim_customer(
        self,
        customer_id: str,
        sent_flag: str,
        *,
        now: datetime,
        lease: timedelta,
    ) -> bool:
        """Reserve the send for *sent_flag* on one customer; see :meth:`claim_appointment`."""
        self._check_flag(sent_flag, _CUSTOMER_FLAGS)
        return await self._claim(CustomerTable, customer_id, sent_flag, now=now, lease=lease)

    async def release_appointment_claim(self, appointment_id: str, sent_flag: str, claimed_at: datetime) -> bool:
        """Drop a claim taken at *claimed_at* so a later run can retry the send."""
        self._check_flag(sent_flag, _APPOINTMENT_FLAGS)
        return await self._release(AppointmentTable, appointment_id, sent_flag, claimed_at)

    async def release_customer_claim(self, customer_id: str, sent_flag: str, claimed_at: datetime) -> bool:
        self._check_flag(sent_flag, _CUSTOMER_FLAGS)
        return await self._release(CustomerTable, customer_id, sent_flag, claimed_at)

    async def _claim(
        self,
        table: type[AppointmentTable] | type[CustomerTable],
        target_id: str,
        sent_flag: str,
        *,
        now: datetime,
        lease: timedelta,
    ) -> bool:
        claimed_col = getattr(table, _CLAIM_COLUMNS[sent_flag])
        stmt = (
            update(table)
            .where(
                table.id == target_id,
                getattr(table, sent_flag).is_(False),
                or_(claimed_col.is_(None), claimed_col < now - lease),
            )
            .values({claimed_col: now})
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return (result.rowcount or 0) == 1  # type: ignore[attr-defined]

    async def _release(
        self,
        table: type[AppointmentTable] | type[CustomerTable],
        target_id: str,
        sent_flag: str,
        claimed_at: datetime,
    ) -> bool:
        # Only our own claim is cleared; a run that took over a stale claim keeps it.
        claimed_col = getattr(table, _CLAIM_COLUMNS[sent_flag])
        stmt = (
            update(table)
            .where(
                table.id == target_id,
                getattr(table, sent_flag).is_(False),
                claimed_col == claimed_at,
            )
            .values({claimed_col: None})
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return (result.rowcount or 0) == 1  # type: ignore[attr-defined]

    async def reset_birthday_flags(self) -> int:
        """Clear ``birthday_message_sent_this_year`` for every customer."""
        stmt = (
            update(CustomerTable)
            .where(CustomerTable.birthday_message_sent_this_year.is_(True))
            .values(birthday_message_sent_this_year=False, birthday_claimed_at=None)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return result.rowcount or 0  # type: ignore[attr-defined]

    @staticmethod
    def _check_flag(sent_flag: str, allowed: dict[str, str | None]) -> str:
        if sent_flag not in allowed:
            raise ValueError(f"Unknown sent flag {sent_flag!r}; expected one of {sorted(allowed)}")
        return sent_flag


# ---------------------------------------------------------------------------
# AuditRepository
# ---------------------------------------------------------------------------


class AuditRepository:
    """Append-only audit log repository with hash-chaining for tamper evidence.

    Each audit entry is linked to its predecessor via ``previous_hash``, forming
    a per-tenant tamper-evident chain.  ``entry_hash`` is a SHA-256 digest of
    the entry's content fields concatenated with the previous hash, so any
    modification to an existing row breaks the chain for all later entries.
    """

    def __init__(self, session: AsyncSession, *, tenant_id: str) -> None:
        self._session = session
        self._tenant_id = tenant_id

    @staticmethod
    def _compute_hash(
        tenant_id: str,
        actor: str,
        action: str,
        entity_type: str | None,
        entity_id: str | None,
        metadata: dict | None,
        previous_hash: str | None,
        created_at: datetime,
    ) -> str:
        """SHA-256 over ``|``-joined content fields; ``None`` hashes as ``""``."""
        parts = [
            tenant_id,
            actor,
            action,
            entity_type or "",
            entity_id or "",
            json.dumps(metadata, sort_keys=True, default=str) if metadata else "",
            previous_hash or "",
            created_at.replace(tzinfo=None).isoformat(),
        ]
        return hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()

    async def get_latest_hash(self) -> str | None:
        stmt = (
            select(AuditLogTable.entry_hash)
            .where(AuditLogTable.tenant_id == self._tenant_id)
            .order_by(AuditLogTable.created_at.desc())
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def log(
        self,
        *,
        actor: str,
        action: str,
        entity_type: str | None = None,
        entity_id: str | None = None,
        metadata: dict | None = None,
        severity: str = "low",
    ) -> str:
        """Write an audit entry and return its id."""
        entry_id = uuid.uuid4().hex
        now = datetime.now(UTC)

        # Serialise chain appends per tenant so two writers cannot fork it.
        if is_postgres(self._session):
            await self._session.execute(
                text("SELECT pg_advisory_xact_lock(:lock_id)"),
                {"lock_id": _advisory_lock_id(f"audit_chain_{self._tenant_id}")},
            )

        previous_hash = await self.get_latest_hash()
        entry_hash = self._compute_hash(
            tenant_id=self._tenant_id,
            actor=actor,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            metadata=metadata,
            previous_hash=previous_hash,
            created_at=now,
        )

        row = AuditLogTable(
            id=entry_id,
            tenant_id=self._tenant_id,
            actor=actor,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            metadata_json=metadata,
            severity=severity,
            previous_hash=previous_hash,
            entry_hash=entry_hash,
            created_at=now,
        )
        self._session.add(row)
        await self._session.flush()
        return entry_id

    async def query(
        self,
        *,
        action: str | None = None,
        entity_id: str | None = None,
        limit: int = 50,
    ) -> list[AuditLogTable]:
        """Most recent entries first, optionally filtered."""
        stmt = select(AuditLogTable).where(AuditLogTable.tenant_id == self._tenant_id)
        if action is not None:
            stmt = stmt.where(AuditLogTable.action == action)
        if entity_id is not None:
            stmt = stmt.where(AuditLogTable.entity_id == entity_id)
        stmt = stmt.order_by(AuditLogTable.created_at.desc()).limit(limit)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def verify_chain(self, *, limit: int = 1000) -> tuple[bool, int]:
        """Recompute the chain oldest-first.  Returns ``(is_valid, entries_checked)``."""
        stmt = (
            select(AuditLogTable)
            .where(AuditLogTable.tenant_id == self._tenant_id)
            .order_by(AuditLogTable.created_at.asc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        entries = list(result.scalars().all())

        checked = 0
        previous_hash: str | None = None
        for entry in entries:
            if entry.previous_hash != previous_hash:
                logger.warning("Audit chain break at entry %s", entry.id)
                return (False, checked)
            expected_hash = self._compute_hash(
                tenant_id=entry.tenant_id,
                actor=entry.actor,
                action=entry.action,
                entity_type=entry.entity_type,
                entity_id=entry.entity_id,
                metadata=entry.metadata_json,
                previous_hash=entry.previous_hash,
                created_at=entry.created_at,
            )
            if entry.entry_hash != expected_hash:
                logger.warning("Audit hash mismatch at entry %s", entry.id)
                return (False, checked)
            previous_hash = entry.entry_hash
            checked += 1
        return (True, checked)
