"""Consent, opt-out and quiet-hours gating for outbound SMS.

:class:`ComplianceGate` answers one question for the dispatcher: may this
message go to this phone right now?  Checks run in a fixed order and the
first failing check determines the denial reason:

1. the phone has opted out (applies to every message type);
2. promotional message without active consent for the tenant;
3. promotional message during the recipient's local quiet hours;
4. the phone number has fewer than ten digits.

Transactional messages (appointment reminders, no-show follow-ups) skip
checks 2 and 3.

Opt-outs are keyed by phone number alone: a STOP sent to any tenant
suppresses every tenant's messages to that phone and deactivates every
consent row it has.  Opting back in only reactivates consent for the tenant
the START was sent to.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from credit_engine.audit.sink import AuditAction, AuditEvent, AuditSeverity, AuditSink, ensure_safe
from credit_engine.compliance.phone import is_valid_phone, mask_phone, normalize_phone
from credit_engine.compliance.policy import (
    ComplianceDecision,
    ConsentRecord,
    DecisionReason,
    FailurePolicy,
    MessageType,
)
from credit_engine.state.repository import (
    ComplianceLogRepository,
    ConsentRepository,
    OptOutRepository,
)

logger = logging.getLogger(__name__)

# Opt-outs are not tenant-scoped, so their audit entries go to this chain.
PLATFORM_TENANT = "platform"


def _utcnow() -> datetime:
    return datetime.now(UTC)


class ComplianceGate:
    """TCPA-style send-eligibility checks backed by the state store.

    Parameters
    ----------
    session:
        Async session; all reads and writes happen inside the caller's
        transaction.
    failure_policy:
        Answer returned by :meth:`can_send` when a lookup raises.
    audit_sink:
        Receives ``SMS_OPT_OUT`` / ``SMS_OPT_IN`` events.  Failures are
        logged, never raised.
    clock:
        Returns the current aware datetime; injectable for tests.
    quiet_hours_start / quiet_hours_end:
        Local-time hour bounds of the quiet window ``[start, end)``.  The
        window wraps midnight when ``start > end``.
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        failure_policy: FailurePolicy = FailurePolicy.FAIL_OPEN,
        audit_sink: AuditSink | None = None,
        clock: Callable[[], datetime] | None = None,
        quiet_hours_start: int = 21,
        quiet_hours_end: int = 8,
    ) -> None:
        self._session = session
        self._policy = failure_policy
        self._audit = ensure_safe(audit_sink)
        self._clock = clock or _utcnow
        self._quiet_start = quiet_hours_start
        self._quiet_end = quiet_hours_end
        self._consents = ConsentRepository(session)
        self._opt_outs = OptOutRepository(session)
        self._log = ComplianceLogRepository(session)

    @property
    def failure_policy(self) -> FailurePolicy:
        return self._policy

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    async def is_opted_out(self, phone_number: str) -> bool:
        return await self._opt_outs.exists(normalize_phone(phone_number))

    async def has_consent(self, phone_number: str, tenant_id: str) -> bool:
        return await self._consents.has_active(normalize_phone(phone_number), tenant_id)

    def is_quiet_hours(self, timezone: str) -> bool:
        """True when the local hour in *timezone* falls inside the quiet window.

        An unrecognised timezone is treated as outside quiet hours.
        """
        try:
            tz = ZoneInfo(timezone)
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning("Unknown timezone %r; treating as outside quiet hours", timezone)
            return False

        hour = self._clock().astimezone(tz).hour
        if self._quiet_start > self._quiet_end:
            return hour >= self._quiet_start or hour < self._quiet_end
        return self._quiet_start <= hour < self._quiet_end

    # ------------------------------------------------------------------
    # Decision
    # ------------------------------------------------------------------

    async def can_send(
        self,
        phone_number: str,
        tenant_id: str,
        timezone: str = "America/New_York",
        message_type: MessageType = MessageType.TRANSACTIONAL,
    ) -> ComplianceDecision:
        """Decide whether a message may be sent.

        Returns
        -------
        ComplianceDecision
            ``allowed`` plus the reason code of the first failing check, or
            ``passed_all_checks``.  If a lookup raises, the configured
            :class:`FailurePolicy` decides ``allowed`` and the reason is
            ``compliance_lookup_failed``.
        """
        message_type = MessageType(message_type)
        try:
            if await self.is_opted_out(phone_number):
                return ComplianceDecision.deny(DecisionReason.OPTED_OUT)

            if message_type is MessageType.PROMOTIONAL:
                if not await self.has_consent(phone_number, tenant_id):
                    return ComplianceDecision.deny(DecisionReason.NO_CONSENT)
                if self.is_quiet_hours(timezone):
                    return ComplianceDecision.deny(DecisionReason.QUIET_HOURS)
        except SQLAlchemyError:
            logger.exception(
                "Compliance lookup failed for %s tenant=%s; applying %s",
                mask_phone(phone_number),
                tenant_id,
                self._policy.value,
            )
            return ComplianceDecision(
                allowed=self._policy is FailurePolicy.FAIL_OPEN,
                reason=DecisionReason.LOOKUP_FAILED,
            )

        if not is_valid_phone(phone_number):
            return ComplianceDecision.deny(DecisionReason.INVALID_PHONE)

        return ComplianceDecision.allow()

    async def log_compliance_check(
        self,
        phone_number: str,
        tenant_id: str,
        allowed: bool,
        reason: str | None = None,
        message_type: MessageType | str | None = None,
    ) -> None:
        """Append an immutable decision record to ``sms_compliance_log``."""
        await self._log.append(
            phone_number=normalize_phone(phone_number),
            tenant_id=tenant_id,
            allowed=allowed,
            reason=reason or DecisionReason.PASSED,
            message_type=MessageType(message_type).value if message_type else None,
        )

    # ------------------------------------------------------------------
    # Consent transitions
    # ------------------------------------------------------------------

    async def record_consent(self, record: ConsentRecord) -> None:
        """Append a new active consent row.  Existing rows are not de-duplicated."""
        await self._consents.add(
            phone_number=normalize_phone(record.phone_number),
            tenant_id=record.tenant_id,
            consent_type=record.consent_type.value,
            consent_method=record.consent_method.value,
            purpose=list(record.purpose),
            consented_at=record.consented_at,
            customer_id=record.customer_id,
            ip_address=record.ip_address,
            user_agent=record.user_agent,
        )
        logger.info("Consent recorded for %s tenant=%s", mask_phone(record.phone_number), record.tenant_id)

    async def process_opt_out(
        self,
        phone_number: str,
        reason: str = "user_request",
        *,
        tenant_id: str | None = None,
    ) -> int:
        """Suppress the phone platform-wide and deactivate all of its consent.

        *tenant_id* only attributes the audit event to the tenant whose number
        received the STOP; the opt-out itself is never tenant-scoped.

        Returns the number of consent rows deactivated.
        """
        phone = normalize_phone(phone_number)
        await self._opt_outs.add(phone, reason)
        deactivated = await self._consents.deactivate_all(phone)
        logger.info(
            "Phone %s opted out (reason=%s); %d consent row(s) deactivated",
            mask_phone(phone),
            reason,
            deactivated,
        )
        await self._audit.log(
            AuditEvent(
                tenant_id=tenant_id or PLATFORM_TENANT,
                action=AuditAction.SMS_OPT_OUT,
                entity_type="phone",
                entity_id=mask_phone(phone),
                severity=AuditSeverity.MEDIUM,
                metadata={"reason": reason, "consents_deactivated": deactivated},
            )
        )
        return deactivated

    async def process_opt_in(self, phone_number: str, tenant_id: str, method: str) -> int:
        """Lift the phone's opt-out and reactivate its consent for *tenant_id* only.

        Returns the number of consent rows reactivated.
        """
        phone = normalize_phone(phone_number)
        removed = await self._opt_outs.delete_for_phone(phone)
        reactivated = await self._consents.reactivate(phone, tenant_id)
        logger.info(
            "Phone %s opted in to tenant=%s via %s (%d opt-out row(s) removed)",
            mask_phone(phone),
            tenant_id,
            method,
            removed,
        )
        await self._audit.log(
            AuditEvent(
                tenant_id=tenant_id,
                action=AuditAction.SMS_OPT_IN,
                entity_type="phone",
                entity_id=mask_phone(phone),
                metadata={"method": method, "consents_reactivated": reactivated},
            )
        )
        return reactivated


# ---------------------------------------------------------------------------
# Disclosure text
# ---------------------------------------------------------------------------


def consent_disclosure(business_name: str) -> str:
    """Full disclosure shown wherever a mobile number is collected."""
    return (
        f"By providing your mobile number, you consent to receive automated text messages "
        f"from {business_name} for appointment reminders, promotional offers, and other "
        f"business communications. Message and data rates may apply. Message frequency "
        f"varies. You can opt out at any time by replying STOP. Reply HELP for assistance."
    )


def short_consent_text(business_name: str) -> str:
    """Checkbox label for compact forms."""
    return f"I agree to receive SMS messages from {business_name}. Reply STOP to opt out."
