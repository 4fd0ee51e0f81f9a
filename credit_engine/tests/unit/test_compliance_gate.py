"""Unit tests for ComplianceGate decisions and consent transitions."""

from __future__ import annotations

from datetime import UTC, datetime
from unittest.mock import AsyncMock

import pytest
from credit_engine.audit.sink import AuditAction, AuditEvent
from credit_engine.compliance import (
    ComplianceGate,
    ConsentMethod,
    ConsentRecord,
    ConsentType,
    DecisionReason,
    FailurePolicy,
    MessageType,
    consent_disclosure,
    short_consent_text,
)
from credit_engine.state.repository import ComplianceLogRepository, ConsentRepository
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

PHONE = "+15551234567"
NY = "America/New_York"

# 2026-10-20 is on EDT (UTC-4).
AFTERNOON_NY = datetime(2026, 10, 20, 18, 0, tzinfo=UTC)  # 14:00 local
LATE_EVENING_NY = datetime(2026, 10, 21, 2, 0, tzinfo=UTC)  # 22:00 local


class RecordingSink:
    def __init__(self) -> None:
        self.events: list[AuditEvent] = []

    async def log(self, event: AuditEvent) -> None:
        self.events.append(event)


def _gate(session, now: datetime = AFTERNOON_NY, **kwargs) -> ComplianceGate:
    return ComplianceGate(session, clock=lambda: now, **kwargs)


async def _consent(gate: ComplianceGate, tenant_id: str = "salon-1", phone: str = PHONE) -> None:
    await gate.record_consent(
        ConsentRecord(
            phone_number=phone,
            tenant_id=tenant_id,
            consent_type=ConsentType.EXPRESS_WRITTEN,
            consent_method=ConsentMethod.WEB_FORM,
            purpose=["promotions"],
        )
    )


# ---------------------------------------------------------------------------
# can_send
# ---------------------------------------------------------------------------


class TestCanSendOrdering:
    """Checks run in a fixed order; the first failure is the reason."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("message_type", list(MessageType))
    async def test_opted_out_denied_for_every_type(self, async_session, message_type):
        gate = _gate(async_session)
        await _consent(gate)
        await gate.process_opt_out(PHONE)

        decision = await gate.can_send(PHONE, "salon-1", NY, message_type)

        assert decision.allowed is False
        assert decision.reason == DecisionReason.OPTED_OUT

    @pytest.mark.asyncio
    async def test_opt_out_applies_to_every_tenant(self, async_session):
        gate = _gate(async_session)
        await gate.process_opt_out(PHONE, tenant_id="salon-1")

        decision = await gate.can_send(PHONE, "another-salon", NY, MessageType.TRANSACTIONAL)

        assert decision.reason == DecisionReason.OPTED_OUT

    @pytest.mark.asyncio
    async def test_no_consent_reported_before_quiet_hours(self, async_session):
        gate = _gate(async_session, now=LATE_EVENING_NY)

        decision = await gate.can_send(PHONE, "salon-1", NY, MessageType.PROMOTIONAL)

        assert decision.allowed is False
        assert decision.reason == DecisionReason.NO_CONSENT

    @pytest.mark.asyncio
    async def test_quiet_hours_blocks_promotional(self, async_session):
        gate = _gate(async_session, now=LATE_EVENING_NY)
        await _consent(gate)

        decision = await gate.can_send(PHONE, "salon-1", NY, MessageType.PROMOTIONAL)

        assert decision.reason == DecisionReason.QUIET_HOURS

    @pytest.mark.asyncio
    async def test_promotional_allowed_with_consent_in_daytime(self, async_session):
        gate = _gate(async_session)
        await _consent(gate)

        decision = await gate.can_send(PHONE, "salon-1", NY, MessageType.PROMOTIONAL)

        assert decision.allowed is True
        assert decision.reason == DecisionReason.PASSED

    @pytest.mark.asyncio
    async def test_transactional_skips_consent_and_quiet_hours(self, async_session):
        gate = _gate(async_session, now=LATE_EVENING_NY)

        decision = await gate.can_send(PHONE, "salon-1", NY, MessageType.TRANSACTIONAL)

        assert decision.allowed is True

    @pytest.mark.asyncio
    async def test_consent_is_tenant_scoped(self, async_session):
        gate = _gate(async_session)
        await _consent(gate, tenant_id="salon-1")

        decision = await gate.can_send(PHONE, "salon-2", NY, MessageType.PROMOTIONAL)

        assert decision.reason == DecisionReason.NO_CONSENT

    @pytest.mark.asyncio
    async def test_short_number_is_invalid(self, async_session):
        decision = await _gate(async_session).can_send("555-1234", "salon-1", NY, MessageType.TRANSACTIONAL)

        assert decision.allowed is False
        assert decision.reason == DecisionReason.INVALID_PHONE

    @pytest.mark.asyncio
    async def test_formatting_is_ignored_when_matching_opt_outs(self, async_session):
        gate = _gate(async_session)
        await gate.process_opt_out("+1 (555) 123-4567")

        assert await gate.is_opted_out("555.123.4567") is True


class TestFailurePolicy:
    """Lookup failures resolve through the configured policy."""

    @staticmethod
    def _broken_session() -> AsyncMock:
        session = AsyncMock(spec=AsyncSession)
        session.execute.side_effect = OperationalError("SELECT", {}, Exception("connection lost"))
        return session

    @pytest.mark.asyncio
    async def test_fail_open_allows(self):
        gate = _gate(self._broken_session(), failure_policy=FailurePolicy.FAIL_OPEN)

        decision = await gate.can_send(PHONE, "salon-1", NY, MessageType.PROMOTIONAL)

        assert decision.allowed is True
        assert decision.reason == DecisionReason.LOOKUP_FAILED

    @pytest.mark.asyncio
    async def test_fail_closed_denies(self):
        gate = _gate(self._broken_session(), failure_policy=FailurePolicy.FAIL_CLOSED)

        decision = await gate.can_send(PHONE, "salon-1", NY, MessageType.TRANSACTIONAL)

        assert decision.allowed is False
        assert decision.reason == DecisionReason.LOOKUP_FAILED


# ---------------------------------------------------------------------------
# Quiet hours
# ---------------------------------------------------------------------------


class TestQuietHours:
    @pytest.mark.parametrize(
        ("local_hour", "local_minute", "quiet"),
        [
            (20, 59, False),
            (21, 0, True),
            (23, 30, True),
            (3, 0, True),
            (7, 59, True),
            (8, 0, False),
            (12, 0, False),
        ],
    )
    def test_window_wraps_midnight(self, local_hour, local_minute, quiet):
        # Local EDT hour + 4 = UTC hour.
        now = datetime(2026, 10, 20, 0, 0, tzinfo=UTC).replace(hour=(local_hour + 4) % 24, minute=local_minute)
        gate = _gate(AsyncMock(spec=AsyncSession), now=now)

        assert gate.is_quiet_hours(NY) is quiet

    def test_uses_recipient_timezone(self):
        gate = _gate(AsyncMock(spec=AsyncSession), now=AFTERNOON_NY)

        assert gate.is_quiet_hours(NY) is False
        # 18:00 UTC is 03:00 the next day in Tokyo.
        assert gate.is_quiet_hours("Asia/Tokyo") is True

    def test_unknown_timezone_is_not_quiet(self):
        gate = _gate(AsyncMock(spec=AsyncSession), now=LATE_EVENING_NY)

        assert gate.is_quiet_hours("Mars/Olympus_Mons") is False

    def test_custom_window(self):
        gate = _gate(
            AsyncMock(spec=AsyncSession),
            now=AFTERNOON_NY,
            quiet_hours_start=13,
            quiet_hours_end=15,
        )

        assert gate.is_quiet_hours(NY) is True


# ---------------------------------------------------------------------------
# Consent transitions
# ---------------------------------------------------------------------------


class TestOptOutAndOptIn:
    """STOP is global to the phone; START is scoped to one tenant."""

    @pytest.mark.asyncio
    async def test_opt_out_deactivates_consent_for_all_tenants(self, async_session):
        sink = RecordingSink()
        gate = _gate(async_session, audit_sink=sink)
        await _consent(gate, tenant_id="salon-1")
        await _consent(gate, tenant_id="salon-2")

        deactivated = await gate.process_opt_out(PHONE, tenant_id="salon-1")

        assert deactivated == 2
        rows = await ConsentRepository(async_session).list_for_phone(PHONE)
        assert [r.is_active for r in rows] == [False, False]
        assert [e.action for e in sink.events] == [AuditAction.SMS_OPT_OUT]
        assert sink.events[0].tenant_id == "salon-1"
        assert "4567" in (sink.events[0].entity_id or "")
        assert PHONE not in (sink.events[0].entity_id or "")

    @pytest.mark.asyncio
    async def test_opt_out_without_tenant_audits_to_platform(self, async_session):
        sink = RecordingSink()
        await _gate(async_session, audit_sink=sink).process_opt_out(PHONE, reason="carrier_report")

        assert sink.events[0].tenant_id == "platform"
        assert sink.events[0].metadata["reason"] == "carrier_report"

    @pytest.mark.asyncio
    async def test_opt_in_lifts_opt_out_and_reactivates_one_tenant(self, async_session):
        sink = RecordingSink()
        gate = _gate(async_session, audit_sink=sink)
        await _consent(gate, tenant_id="salon-1")
        await _consent(gate, tenant_id="salon-2")
        await gate.process_opt_out(PHONE)

        reactivated = await gate.process_opt_in(PHONE, "salon-1", "sms_reply")

        assert reactivated == 1
        assert await gate.is_opted_out(PHONE) is False
        assert await gate.has_consent(PHONE, "salon-1") is True
        assert await gate.has_consent(PHONE, "salon-2") is False
        assert sink.events[-1].action == AuditAction.SMS_OPT_IN

    @pytest.mark.asyncio
    async def test_record_consent_does_not_deduplicate(self, async_session):
        gate = _gate(async_session)
        await _consent(gate)
        await _consent(gate)

        assert len(await ConsentRepository(async_session).list_for_phone(PHONE)) == 2


class TestComplianceLog:
    @pytest.mark.asyncio
    async def test_log_compliance_check_appends_row(self, async_session):
        gate = _gate(async_session)

        await gate.log_compliance_check(PHONE, "salon-1", False, DecisionReason.QUIET_HOURS, MessageType.PROMOTIONAL)
        await gate.log_compliance_check(PHONE, "salon-1", True)

        rows = await ComplianceLogRepository(async_session).list_recent("salon-1")
        assert len(rows) == 2
        by_reason = {r.reason: r for r in rows}
        assert by_reason["quiet_hours"].allowed is False
        assert by_reason["quiet_hours"].message_type == "promotional"
        assert by_reason["passed_all_checks"].allowed is True


class TestDisclosures:
    def test_full_disclosure_names_business_and_stop(self):
        text = consent_disclosure("Polished Nails")
        assert "Polished Nails" in text
        assert "replying STOP" in text
        assert "HELP" in text

    def test_short_text(self):
        assert short_consent_text("Polished Nails") == (
            "I agree to receive SMS messages from Polished Nails. Reply STOP to opt out."
        )
