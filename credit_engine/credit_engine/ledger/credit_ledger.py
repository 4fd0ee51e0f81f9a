"""Per-tenant credit balances and their append-only history.

The ledger is the only writer of a tenant's balance columns.  Each balance
change is a single conditional ``UPDATE`` plus exactly one
``credit_transactions`` insert, both issued in the caller's transaction, so
the balance and its history either change together or not at all.

Deductions draw down the monthly pool first and take any remainder from the
purchased pool.  Purchased credits never expire; the monthly pool is
reallocated from the tier table on each reset.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, date, datetime
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from credit_engine.audit.sink import AuditAction, AuditEvent, AuditSeverity, AuditSink, ensure_safe
from credit_engine.errors import (
    BalanceUnavailableError,
    LedgerError,
    TenantNotFoundError,
    UpdateConflictError,
)
from credit_engine.ledger.allocations import (
    calculate_campaign_cost,
    get_pack,
    get_tier,
    get_tier_or_fallback,
    next_reset_date,
)
from credit_engine.ledger.models import Balance, CreditTransaction, DeductResult, DeductStatus
from credit_engine.state.repository import (
    BalanceRow,
    CreditTransactionRepository,
    TenantRepository,
)

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _require_positive(value: int, name: str) -> None:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValueError(f"{name} must be a positive integer, got {value!r}")


def _to_balance(tenant_id: str, row: BalanceRow) -> Balance:
    return Balance(
        tenant_id=tenant_id,
        monthly=row.monthly_credits,
        purchased=row.purchased_credits,
        used_this_month=row.credits_used_this_month,
        reset_date=row.credits_reset_date,
    )


class CreditLedger:
    """Credit balance operations for any tenant.

    Parameters
    ----------
    session:
        Async session.  Writes are flushed, never committed; the caller
        owns the transaction boundary.
    audit_sink:
        Receives one event per balance change.  Wrapped so that a failing
        sink is logged and ignored.
    actor:
        Recorded as the actor on audit events.
    clock:
        Returns the current aware datetime; used for reset-date arithmetic.
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        audit_sink: AuditSink | None = None,
        actor: str = "system",
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._session = session
        self._tenants = TenantRepository(session)
        self._audit = ensure_safe(audit_sink)
        self._actor = actor
        self._clock = clock or _utcnow

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_balance(self, tenant_id: str) -> Balance:
        """Return the tenant's current balance.

        Raises
        ------
        TenantNotFoundError
            If the tenant does not exist.
        BalanceUnavailableError
            If the state store could not be read.
        """
        try:
            tenant = await self._tenants.get(tenant_id)
        except SQLAlchemyError as exc:
            raise BalanceUnavailableError(f"Could not read balance for tenant {tenant_id}") from exc
        if tenant is None:
            raise TenantNotFoundError(tenant_id)
        return Balance(
            tenant_id=tenant.id,
            monthly=tenant.monthly_credits,
            purchased=tenant.purchased_credits,
            used_this_month=tenant.credits_used_this_month,
            reset_date=tenant.credits_reset_date,
        )

    async def has_credits(self, tenant_id: str, required: int = 1) -> bool:
        """True when the tenant's total covers *required*.  Never raises for lookup failures."""
        try:
            balance = await self.get_balance(tenant_id)
        except TenantNotFoundError:
            logger.warning("Credit check for unknown tenant %s", tenant_id)
            return False
        except LedgerError:
            logger.exception("Credit check failed for tenant %s", tenant_id)
            return False
        return balance.total >= required

    async def get_transaction_history(self, tenant_id: str, limit: int = 50) -> list[CreditTransaction]:
        """Newest transactions first."""
        repo = CreditTransactionRepository(self._session, tenant_id)
        rows = await repo.list_recent(limit=limit)
        return [CreditTransaction.model_validate(row) for row in rows]

    @staticmethod
    def calculate_campaign_cost(recipient_count: int, channel: str) -> int:
        return calculate_campaign_cost(recipient_count, channel)

    # ------------------------------------------------------------------
    # Balance changes
    # ------------------------------------------------------------------

    async def deduct(
        self,
        tenant_id: str,
        amount: int,
        feature: str,
        metadata: dict[str, Any] | None = None,
    ) -> DeductResult:
        """Charge *amount* credits, monthly pool first.

        Insufficient funds and unknown tenants are reported through
        :attr:`DeductResult.status`; in both cases nothing is written.

        Raises
        ------
        ValueError
            If *amount* is not a positive integer.
        UpdateConflictError
            If the balance update or the transaction insert failed.  The
            caller must roll back its transaction.
        """
        _require_positive(amount, "amount")
        try:
            row = await self._tenants.deduct_if_sufficient(tenant_id, amount)
            if row is None:
                tenant = await self._tenants.get(tenant_id)
                if tenant is None:
                    logger.warning("Deduct of %d credits for unknown tenant %s", amount, tenant_id)
                    return DeductResult(status=DeductStatus.TENANT_NOT_FOUND, amount=amount)
                remaining = tenant.monthly_credits + tenant.purchased_credits
                logger.info(
                    "Insufficient credits for tenant %s: need %d, have %d (feature=%s)",
                    tenant_id,
                    amount,
                    remaining,
                    feature,
                )
                return DeductResult(
                    status=DeductStatus.INSUFFICIENT_CREDITS,
                    amount=amount,
                    remaining=remaining,
                )

            balance = _to_balance(tenant_id, row)
            await CreditTransactionRepository(self._session, tenant_id).append(
                amount=-amount,
                operation="deduct",
                feature=feature,
                balance_after=balance.total,
                metadata=metadata,
            )
        except SQLAlchemyError as exc:
            raise UpdateConflictError(f"Deduct of {amount} credits failed for tenant {tenant_id}") from exc

        logger.debug("Deducted %d credits from tenant %s for %s; %d remaining", amount, tenant_id, feature, balance.total)
        await self._audit.log(
            AuditEvent(
                tenant_id=tenant_id,
                action=AuditAction.CREDIT_DEDUCTED,
                actor=self._actor,
                entity_type="tenant",
                entity_id=tenant_id,
                metadata={"amount": amount, "feature": feature, "balance_after": balance.total},
            )
        )
        return DeductResult(
            status=DeductStatus.SUCCESS,
            amount=amount,
            remaining=balance.total,
            balance=balance,
        )

    async def add_purchased(
        self,
        tenant_id: str,
        credits: int,
        pack_id: str | None = None,
        payment_ref: str | None = None,
    ) -> Balance:
        """Add non-expiring credits to the purchased pool.

        Raises
        ------
        ValueError
            If *credits* is not a positive integer.
        TenantNotFoundError
            If the tenant does not exist.
        UpdateConflictError
            If the write failed.
        """
        _require_positive(credits, "credits")
        try:
            row = await self._tenants.add_purchased(tenant_id, credits)
            if row is None:
                raise TenantNotFoundError(tenant_id)
            balance = _to_balance(tenant_id, row)
            await CreditTransactionRepository(self._session, tenant_id).append(
                amount=credits,
                operation="purchase",
                feature="credit_purchase",
                balance_after=balance.total,
                metadata={"pack_id": pack_id, "payment_ref": payment_ref},
            )
        except SQLAlchemyError as exc:
            raise UpdateConflictError(f"Credit purchase failed for tenant {tenant_id}") from exc

        logger.info("Added %d purchased credits to tenant %s (pack=%s)", credits, tenant_id, pack_id)
        await self._audit.log(
            AuditEvent(
                tenant_id=tenant_id,
                action=AuditAction.CREDIT_PURCHASED,
                actor=self._actor,
                entity_type="tenant",
                entity_id=tenant_id,
                severity=AuditSeverity.MEDIUM,
                metadata={
                    "credits": credits,
                    "pack_id": pack_id,
                    "payment_ref": payment_ref,
                    "balance_after": balance.total,
                },
            )
        )
        return balance

    async def add_pack(self, tenant_id: str, pack_id: str, payment_ref: str | None = None) -> Balance:
        """Grant a catalogued credit pack.  Unknown packs raise ``ValueError``."""
        pack = get_pack(pack_id)
        return await self.add_purchased(tenant_id, pack.credits, pack_id=pack.pack_id, payment_ref=payment_ref)

    async def reset_monthly(
        self,
        tenant_id: str,
        *,
        now: datetime | None = None,
        force: bool = False,
    ) -> bool:
        """Reallocate the monthly pool for the tenant's tier.

        The reset date moves forward one calendar month from its current
        value (ten years for the trial tier).  If that still leaves it in
        the past, the new cycle is anchored on today instead.

        A tenant whose reset date is still in the future is left alone
        unless *force* is set, so repeating a reset is a no-op.  The update
        is also conditional on the reset date read here, so two concurrent
        calls for the same cycle allocate once.

        Returns
        -------
        bool
            True if this call performed the reset; False for an unknown
            tenant, a tenant not yet due, or a cycle that was already reset.
        """
        today = (now or self._clock()).date()
        try:
            tenant = await self._tenants.get(tenant_id)
            if tenant is None:
                logger.warning("Reset requested for unknown tenant %s", tenant_id)
                return False

            allocation = get_tier_or_fallback(tenant.subscription_tier)
            if allocation.tier != tenant.subscription_tier:
                logger.warning(
                    "Tenant %s has unknown tier %r; resetting with %s allocation",
                    tenant_id,
                    tenant.subscription_tier,
                    allocation.tier,
                )

            current = tenant.credits_reset_date
            if not force and current is not None and current > today:
                logger.debug("Tenant %s not due for reset until %s", tenant_id, current)
                return False

            upcoming = next_reset_date(allocation, current or today)
            if upcoming <= today:
                upcoming = next_reset_date(allocation, today)

            row = await self._tenants.apply_reset(
                tenant_id,
                allocation=allocation.monthly_credits,
                expected_reset_date=current,
                next_reset_date=upcoming,
            )
            if row is None:
                logger.info("Monthly reset for tenant %s already applied for this cycle", tenant_id)
                return False

            balance = _to_balance(tenant_id, row)
            await CreditTransactionRepository(self._session, tenant_id).append(
                amount=allocation.monthly_credits,
                operation="reset",
                feature="monthly_reset",
                balance_after=balance.total,
                metadata={"tier": allocation.tier, "next_reset_date": upcoming.isoformat()},
            )
        except SQLAlchemyError as exc:
            raise UpdateConflictError(f"Monthly reset failed for tenant {tenant_id}") from exc

        logger.info(
            "Reset monthly credits for tenant %s to %d (%s); next reset %s",
            tenant_id,
            allocation.monthly_credits,
            allocation.tier,
            upcoming,
        )
        await self._audit.log(
            AuditEvent(
                tenant_id=tenant_id,
                action=AuditAction.CREDIT_RESET,
                actor=self._actor,
                entity_type="tenant",
                entity_id=tenant_id,
                metadata={
                    "tier": allocation.tier,
                    "monthly_credits": allocation.monthly_credits,
                    "previous_reset_date": current.isoformat() if current else None,
                    "next_reset_date": upcoming.isoformat(),
                },
            )
        )
        return True

    async def reset_due(self, now: datetime | None = None) -> list[str]:
        """Reset every tenant whose reset date is today or earlier.

        Each tenant is reset inside its own SAVEPOINT.  A tenant whose reset
        fails is logged and skipped; the others still apply when the caller
        commits.

        Returns the ids of tenants this call actually reset.
        """
        as_of: date = (now or self._clock()).date()
        due = await self._tenants.list_due_for_reset(as_of)
        reset: list[str] = []
        failed = 0
        for tenant_id in due:
            try:
                async with self._session.begin_nested():
                    done = await self.reset_monthly(tenant_id, now=now)
            except UpdateConflictError:
                failed += 1
                logger.exception("Monthly reset failed for tenant %s; continuing with the batch", tenant_id)
                continue
            if done:
                reset.append(tenant_id)
        if due:
            logger.info("Monthly reset: %d due, %d reset, %d failed", len(due), len(reset), failed)
        return reset

    async def initialize(self, tenant_id: str, tier: str, *, now: datetime | None = None) -> bool:
        """Set starting balances for a new account.

        Purchased credits and usage are zeroed and the monthly pool gets the
        tier allocation.

        Returns
        -------
        bool
            False if the tenant does not exist.

        Raises
        ------
        ValueError
            If *tier* is not catalogued.
        """
        allocation = get_tier(tier)
        today = (now or self._clock()).date()
        reset_date = next_reset_date(allocation, today)
        try:
            row = await self._tenants.initialize_balances(
                tenant_id,
                subscription_tier=allocation.tier,
                allocation=allocation.monthly_credits,
                reset_date=reset_date,
            )
            if row is None:
                logger.warning("Cannot initialize credits for unknown tenant %s", tenant_id)
                return False
            await CreditTransactionRepository(self._session, tenant_id).append(
                amount=allocation.monthly_credits,
                operation="initialize",
                feature="account_creation",
                balance_after=allocation.monthly_credits,
                metadata={"tier": allocation.tier},
            )
        except SQLAlchemyError as exc:
            raise UpdateConflictError(f"Credit initialization failed for tenant {tenant_id}") from exc

        logger.info("Initialized tenant %s on %s with %d credits", tenant_id, allocation.tier, allocation.monthly_credits)
        await self._audit.log(
            AuditEvent(
                tenant_id=tenant_id,
                action=AuditAction.CREDITS_INITIALIZED,
                actor=self._actor,
                entity_type="tenant",
                entity_id=tenant_id,
                metadata={
                    "tier": allocation.tier,
                    "monthly_credits": allocation.monthly_credits,
                    "reset_date": reset_date.isoformat(),
                },
            )
        )
        return True
