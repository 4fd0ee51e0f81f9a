"""Scheduled SMS jobs: appointment reminders, birthdays, re-engagement and no-shows.

Each job selects candidates from a fixed time window and, for every
candidate:

1. runs the recipient through the :class:`ComplianceGate` and the credit
   check (denials are logged to the compliance log and skipped);
2. renders the job's template and claims the send with a committed
   conditional update.  An overlapping run that finds a live claim leaves
   the candidate alone; a claim older than the lease counts as abandoned;
3. sends through the provider, bounded by a timeout.  A failed send
   releases the claim so the next run retries it;
4. on success, flips the candidate's sent flag with a conditional update and
   charges one credit in the same transaction.  Only the run that flips the
   flag is charged, so overlapping runs never double-charge.

Sessions are opened per candidate and are never held across the provider
call.  A failing candidate is counted and logged; losing the database
connection aborts the whole run with :class:`RunAbortedError`.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from credit_engine.audit.sink import AuditAction, AuditEvent, AuditSeverity, DatabaseAuditSink, ensure_safe
from credit_engine.compliance import ComplianceGate, DecisionReason, FailurePolicy, MessageType
from credit_engine.compliance.phone import mask_phone
from credit_engine.errors import RunAbortedError, UpdateConflictError
from credit_engine.ledger import CreditLedger, feature_cost
from credit_engine.state.database import set_tenant_context
from credit_engine.state.repository import AppointmentCandidateRow, CandidateRepository, CustomerCandidateRow
from credit_engine.state.tables import CustomerTable
from pydantic import BaseModel, Field
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from dispatch_api.services.messaging_provider import MessagingProvider, SendResult
from dispatch_api.services.templates import TemplateData, render

logger = logging.getLogger(__name__)

DEFAULT_TIMEZONE = "America/New_York"
DEFAULT_CLAIM_LEASE = timedelta(minutes=15)
SMS_FEATURE = "sms"
SCHEDULER_ACTOR = "scheduler"

SKIP_NO_PHONE = "no_phone"
SKIP_INSUFFICIENT_CREDITS = "insufficient_credits"

_CONNECTIVITY_ERRORS = (OperationalError, InterfaceError)


# ---------------------------------------------------------------------------
# Job table
# ---------------------------------------------------------------------------


class JobName(str, Enum):
    REMINDER_24H = "reminder_24h"
    REMINDER_2H = "reminder_2h"
    BIRTHDAY = "birthday"
    SERVICE_REMINDER = "service_reminder"
    NO_SHOW_FOLLOWUP = "no_show_followup"


@dataclass(frozen=True)
class JobDefinition:
    """Static description of one scheduled job."""

    name: JobName
    cron: str
    message_type: MessageType
    template: str
    sent_flag: str
    target: str
    statuses: tuple[str, ...] = ()


JOBS: dict[JobName, JobDefinition] = {
    JobName.REMINDER_24H: JobDefinition(
        name=JobName.REMINDER_24H,
        cron="0 * * * *",
        message_type=MessageType.TRANSACTIONAL,
        template="reminder_24h",
        sent_flag="reminder_24h_sent",
        target="appointment",
        statuses=("confirmed", "pending"),
    ),
    JobName.REMINDER_2H: JobDefinition(
        name=JobName.REMINDER_2H,
        cron="*/30 * * * *",
        message_type=MessageType.TRANSACTIONAL,
        template="reminder_2h",
        sent_flag="reminder_2h_sent",
        target="appointment",
        statuses=("confirmed",),
    ),
    JobName.BIRTHDAY: JobDefinition(
        name=JobName.BIRTHDAY,
        cron="0 9 * * *",
        message_type=MessageType.PROMOTIONAL,
        template="birthday",
        sent_flag="birthday_message_sent_this_year",
        target="customer",
    ),
    JobName.SERVICE_REMINDER: JobDefinition(
        name=JobName.SERVICE_REMINDER,
        cron="0 9 * * 1",
        message_type=MessageType.PROMOTIONAL,
        template="service_reminder",
        sent_flag="service_reminder_sent",
        target="customer",
    ),
    JobName.NO_SHOW_FOLLOWUP: JobDefinition(
        name=JobName.NO_SHOW_FOLLOWUP,
        cron="0 18 * * *",
        message_type=MessageType.TRANSACTIONAL,
        template="no_show_followup",
        sent_flag="no_show_followup_sent",
        target="appointment",
        statuses=("no-show",),
    ),
}

# Customers last seen this many days ago get the service reminder.
SERVICE_REMINDER_MIN_DAYS = 30
SERVICE_REMINDER_MAX_DAYS = 40


def get_job(job: JobName | str) -> JobDefinition:
    """Look up a job definition.

    Raises
    ------
    ValueError
        If *job* is not a known job name.
    """
    try:
        return JOBS[JobName(job)]
    except ValueError:
        raise ValueError(f"Unknown job {job!r}; expected one of {[j.value for j in JobName]}") from None


def _start_of_day(moment: datetime) -> datetime:
    return moment.replace(hour=0, minute=0, second=0, microsecond=0)


def candidate_window(job: JobName | str, now: datetime) -> tuple[datetime, datetime]:
    """Return the half-open UTC window ``[start, end)`` scanned by *job* at *now*."""
    name = JobName(job)
    now = now.astimezone(UTC)
    if name is JobName.REMINDER_24H:
        start = _start_of_day(now) + timedelta(days=1)
        return start, start + timedelta(days=1)
    if name is JobName.REMINDER_2H:
        start = (now + timedelta(hours=2)).replace(minute=0, second=0, microsecond=0)
        return start, start + timedelta(hours=1)
    if name is JobName.NO_SHOW_FOLLOWUP:
        start = _start_of_day(now)
        return start, start + timedelta(days=1)
    if name is JobName.SERVICE_REMINDER:
        return now - timedelta(days=SERVICE_REMINDER_MAX_DAYS), now - timedelta(days=SERVICE_REMINDER_MIN_DAYS)
    start = _start_of_day(now)
    return start, start + timedelta(days=1)


# ---------------------------------------------------------------------------
# Run results
# ---------------------------------------------------------------------------


class JobRunSummary(BaseModel):
    """Counters for one job run."""

    job: str
    candidates: int = 0
    sent: int = 0
    skipped: dict[str, int] = Field(default_factory=dict)
    failed: int = 0
    already_sent: int = 0
    aborted: bool = False
    started_at: datetime | None = None
    finished_at: datetime | None = None

    def record_skip(self, reason: str) -> None:
        self.skipped[reason] = self.skipped.get(reason, 0) + 1

    @property
    def skipped_total(self) -> int:
        return sum(self.skipped.values())


@dataclass(frozen=True)
class Candidate:
    """One recipient of a job, resolved from an appointment or customer row."""

    target_id: str
    tenant_id: str
    phone: str | None
    timezone: str
    data: TemplateData


def _zone(name: str | None) -> ZoneInfo:
    try:
        return ZoneInfo(name or DEFAULT_TIMEZONE)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown timezone %r; formatting in UTC", name)
        return ZoneInfo("UTC")


def _customer_name(customer: CustomerTable | None) -> str:
    if customer is None:
        return "there"
    return customer.first_name or customer.name or "there"


def _appointment_candidate(row: AppointmentCandidateRow, booking_url: str | None) -> Candidate:
    appointment, customer, tenant = row
    timezone = tenant.timezone or DEFAULT_TIMEZONE
    local = appointment.appointment_date.astimezone(_zone(timezone))
    return Candidate(
        target_id=appointment.id,
        tenant_id=tenant.id,
        phone=customer.phone if customer is not None else None,
        timezone=timezone,
        data=TemplateData(
            customer_name=_customer_name(customer),
            business_name=tenant.name,
            appointment_date=local.strftime("%m/%d/%Y"),
            appointment_time=appointment.start_time or local.strftime("%I:%M %p").lstrip("0"),
            service_name=appointment.service_name or "",
            location=tenant.address,
            booking_url=booking_url,
        ),
    )


def _customer_candidate(row: CustomerCandidateRow, booking_url: str | None) -> Candidate:
    customer, tenant = row
    return Candidate(
        target_id=customer.id,
        tenant_id=tenant.id,
        phone=customer.phone,
        timezone=tenant.timezone or DEFAULT_TIMEZONE,
        data=TemplateData(
            customer_name=_customer_name(customer),
            business_name=tenant.name,
            location=tenant.address,
            booking_url=booking_url,
        ),
    )


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------


class NotificationScheduler:
    """Run the scheduled SMS jobs against the state store.

    Parameters
    ----------
    session_factory:
        Factory for the per-candidate sessions.
    provider:
        Outbound messaging provider.
    failure_policy:
        What the compliance gate does when a lookup fails.
    max_concurrency:
        Upper bound on candidates processed at once.
    send_timeout:
        Seconds allowed for a single provider call.  A timeout counts as a
        failed send and is not retried within the run.
    booking_url:
        Link inserted into the promotional templates.
    claim_lease:
        How long a send claim blocks other runs.  A run that dies between
        claiming and finalising holds the candidate for this long.
    clock:
        Returns the current UTC time; injectable for tests.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        provider: MessagingProvider,
        *,
        failure_policy: FailurePolicy = FailurePolicy.FAIL_OPEN,
        max_concurrency: int = 4,
        send_timeout: float = 10.0,
        booking_url: str | None = None,
        quiet_hours_start: int = 21,
        quiet_hours_end: int = 8,
        claim_lease: timedelta = DEFAULT_CLAIM_LEASE,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        if claim_lease <= timedelta(0):
            raise ValueError("claim_lease must be positive")
        self._session_factory = session_factory
        self._provider = provider
        self._failure_policy = failure_policy
        self._max_concurrency = max_concurrency
        self._send_timeout = send_timeout
        self._booking_url = booking_url or None
        self._quiet_hours = (quiet_hours_start, quiet_hours_end)
        self._claim_lease = claim_lease
        self._clock = clock or (lambda: datetime.now(UTC))

    async def run(self, job: JobName | str, *, now: datetime | None = None) -> JobRunSummary:
        """Run *job* once over its current candidate window.

        Returns
        -------
        JobRunSummary
            Per-outcome counters for the run.

        Raises
        ------
        ValueError
            If *job* is not a known job name.
        RunAbortedError
            If the state store became unreachable.  The partial summary is
            attached as ``exc.summary``.
        """
        definition = get_job(job)
        now = (now or self._clock()).astimezone(UTC)
        summary = JobRunSummary(job=definition.name.value, started_at=now)
        logger.info("Running %s job", definition.name.value)

        try:
            candidates = await self._load_candidates(definition, now)
        except _CONNECTIVITY_ERRORS as exc:
            summary.aborted = True
            summary.finished_at = self._clock()
            logger.error("Job %s aborted while loading candidates: %s", definition.name.value, exc)
            raise RunAbortedError(definition.name.value, exc, summary) from exc

        summary.candidates = len(candidates)
        logger.info("Found %d candidates for %s", len(candidates), definition.name.value)

        semaphore = asyncio.Semaphore(self._max_concurrency)
        aborts: list[RunAbortedError] = []

        async def _guarded(candidate: Candidate) -> None:
            async with semaphore:
                if aborts:
                    return
                try:
                    await self._process(definition, candidate, summary)
                except RunAbortedError as exc:
                    aborts.append(exc)

        await asyncio.gather(*(_guarded(c) for c in candidates))
        summary.finished_at = self._clock()

        if aborts:
            summary.aborted = True
            cause = aborts[0].__cause__ or aborts[0]
            logger.error("Job %s aborted: %s", definition.name.value, cause)
            raise RunAbortedError(definition.name.value, cause, summary) from cause

        logger.info(
            "Job %s finished: candidates=%d sent=%d skipped=%d failed=%d already_sent=%d",
            definition.name.value,
            summary.candidates,
            summary.sent,
            summary.skipped_total,
            summary.failed,
            summary.already_sent,
        )
        return summary

    # -- Candidate selection -------------------------------------------------

    async def _load_candidates(self, definition: JobDefinition, now: datetime) -> list[Candidate]:
        async with self._session_factory() as session:
            repo = CandidateRepository(session)
            if definition.target == "appointment":
                start, end = candidate_window(definition.name, now)
                rows = await repo.appointments_in_window(
                    window_start=start,
                    window_end=end,
                    statuses=list(definition.statuses),
                    sent_flag=definition.sent_flag,
                )
                return [_appointment_candidate(row, self._booking_url) for row in rows]

            if definition.name is JobName.BIRTHDAY:
                customer_rows = await repo.customers_with_birthday(month=now.month, day=now.day)
            else:
                earliest, latest = candidate_window(definition.name, now)
                customer_rows = await repo.customers_last_seen_between(earliest=earliest, latest=latest)
            return [_customer_candidate(row, self._booking_url) for row in customer_rows]

    # -- Per-candidate pipeline ----------------------------------------------

    async def _process(self, definition: JobDefinition, candidate: Candidate, summary: JobRunSummary) -> None:
        """Deliver to one candidate; only connectivity loss escapes as :class:`RunAbortedError`."""
        job = definition.name.value
        try:
            await self._deliver(definition, candidate, summary)
        except _CONNECTIVITY_ERRORS as exc:
            raise RunAbortedError(job, exc) from exc
        except UpdateConflictError as exc:
            if isinstance(exc.__cause__, _CONNECTIVITY_ERRORS):
                raise RunAbortedError(job, exc.__cause__) from exc.__cause__
            summary.failed += 1
            logger.exception("Could not finalise %s for %s %s", job, definition.target, candidate.target_id)
        except Exception:
            summary.failed += 1
            logger.exception("Unexpected error in %s for %s %s", job, definition.target, candidate.target_id)

    async def _deliver(self, definition: JobDefinition, candidate: Candidate, summary: JobRunSummary) -> None:
        phone = candidate.phone
        if not phone:
            logger.info("No phone number for %s %s; skipping", definition.target, candidate.target_id)
            summary.record_skip(SKIP_NO_PHONE)
            return

        skip_reason = await self._check_eligibility(definition, candidate, phone)
        if skip_reason is not None:
            summary.record_skip(skip_reason)
            return

        body = render(definition.template, candidate.data)
        claimed_at = await self._claim(definition, candidate)
        if claimed_at is None:
            summary.already_sent += 1
            logger.info(
                "%s for %s %s is claimed by another run; skipping",
                definition.name.value,
                definition.target,
                candidate.target_id,
            )
            return

        result = await self._send(phone, body)
        if not result.success:
            summary.failed += 1
            logger.warning(
                "Failed to send %s to %s: %s",
                definition.name.value,
                mask_phone(phone),
                result.error,
            )
            await self._record_send_failure(definition, candidate, result, claimed_at)
            return

        if await self._finalize(definition, candidate, result):
            summary.sent += 1
            logger.info("%s sent for %s %s", definition.name.value, definition.target, candidate.target_id)
        else:
            summary.already_sent += 1
            logger.info(
                "%s for %s %s was already marked sent by another run; not charged",
                definition.name.value,
                definition.target,
                candidate.target_id,
            )

    async def _check_eligibility(self, definition: JobDefinition, candidate: Candidate, phone: str) -> str | None:
        """Return a skip reason, or ``None`` when *phone* may be messaged for this candidate."""
        async with self._session_factory() as session:
            await set_tenant_context(session, candidate.tenant_id)
            gate = ComplianceGate(
                session,
                failure_policy=self._failure_policy,
                clock=self._clock,
                quiet_hours_start=self._quiet_hours[0],
                quiet_hours_end=self._quiet_hours[1],
            )
            decision = await gate.can_send(
                phone,
                candidate.tenant_id,
                candidate.timezone,
                definition.message_type,
            )
            if decision.reason == DecisionReason.LOOKUP_FAILED:
                # A failed statement leaves the transaction unusable on PostgreSQL.
                await session.rollback()
            if not decision.allowed:
                logger.info(
                    "Cannot send %s to %s: %s",
                    definition.name.value,
                    mask_phone(phone),
                    decision.reason,
                )
                await gate.log_compliance_check(
                    phone,
                    candidate.tenant_id,
                    False,
                    decision.reason,
                    definition.message_type,
                )
                await session.commit()
                return decision.reason

            if not await CreditLedger(session).has_credits(candidate.tenant_id, feature_cost(SMS_FEATURE)):
                logger.info("Insufficient SMS credits for tenant %s", candidate.tenant_id)
                return SKIP_INSUFFICIENT_CREDITS
        return None

    async def _claim(self, definition: JobDefinition, candidate: Candidate) -> datetime | None:
        """Reserve the send for this run; returns the claim time, or ``None`` if another run holds it."""
        claimed_at = self._clock().astimezone(UTC)
        async with self._session_factory() as session:
            await set_tenant_context(session, candidate.tenant_id)
            repo = CandidateRepository(session)
            if definition.target == "appointment":
                won = await repo.claim_appointment(
                    candidate.target_id, definition.sent_flag, now=claimed_at, lease=self._claim_lease
                )
            else:
                won = await repo.claim_customer(
                    candidate.target_id, definition.sent_flag, now=claimed_at, lease=self._claim_lease
                )
            await session.commit()
        return claimed_at if won else None

    async def _send(self, phone_number: str, body: str) -> SendResult:
        try:
            return await asyncio.wait_for(self._provider.send(phone_number, body), timeout=self._send_timeout)
        except TimeoutError:
            return SendResult(success=False, error=f"provider timed out after {self._send_timeout:g}s")

    async def _finalize(self, definition: JobDefinition, candidate: Candidate, result: SendResult) -> bool:
        """Flip the sent flag and charge for the message in one transaction.

        Returns ``False`` when another run had already flipped the flag, in
        which case nothing is charged.  If the charge itself fails the flag
        is still flipped so the message is never sent twice.
        """
        async with self._session_factory() as session:
            await set_tenant_context(session, candidate.tenant_id)
            if not await self._mark_sent(session, definition, candidate.target_id):
                await session.rollback()
                return False

            sink = DatabaseAuditSink(session)
            ledger = CreditLedger(session, audit_sink=sink, actor=SCHEDULER_ACTOR, clock=self._clock)
            metadata: dict[str, Any] = {
                "job": definition.name.value,
                definition.target + "_id": candidate.target_id,
                "message_id": result.message_id,
            }
            charged = False
            deduct_status: str
            try:
                charge = await ledger.deduct(candidate.tenant_id, feature_cost(SMS_FEATURE), SMS_FEATURE, metadata)
                charged = charge.success
                deduct_status = charge.status.value
            except UpdateConflictError as exc:
                if isinstance(exc.__cause__, _CONNECTIVITY_ERRORS):
                    raise
                logger.exception("Charge failed after sending %s to tenant %s", definition.name.value, candidate.tenant_id)
                await session.rollback()
                deduct_status = "error"
                if not await self._mark_sent(session, definition, candidate.target_id):
                    await session.rollback()
                    return False

            if not charged:
                logger.warning(
                    "Sent %s for tenant %s but could not charge (%s)",
                    definition.name.value,
                    candidate.tenant_id,
                    deduct_status,
                )

            await ensure_safe(sink).log(
                AuditEvent(
                    tenant_id=candidate.tenant_id,
                    action=AuditAction.SMS_SENT,
                    actor=SCHEDULER_ACTOR,
                    entity_type=definition.target,
                    entity_id=candidate.target_id,
                    severity=AuditSeverity.LOW if charged else AuditSeverity.MEDIUM,
                    metadata={**metadata, "charged": charged, "deduct_status": deduct_status},
                )
            )
            await session.commit()
        return True

    @staticmethod
    async def _mark_sent(session: AsyncSession, definition: JobDefinition, target_id: str) -> bool:
        repo = CandidateRepository(session)
        if definition.target == "appointment":
            return await repo.mark_appointment_sent(target_id, definition.sent_flag)
        return await repo.mark_customer_sent(target_id, definition.sent_flag)

    async def _record_send_failure(
        self,
        definition: JobDefinition,
        candidate: Candidate,
        result: SendResult,
        claimed_at: datetime,
    ) -> None:
        """Release the claim so the next run retries, and audit the failure."""
        async with self._session_factory() as session:
            await set_tenant_context(session, candidate.tenant_id)
            repo = CandidateRepository(session)
            if definition.target == "appointment":
                await repo.release_appointment_claim(candidate.target_id, definition.sent_flag, claimed_at)
            else:
                await repo.release_customer_claim(candidate.target_id, definition.sent_flag, claimed_at)
            await ensure_safe(DatabaseAuditSink(session)).log(
                AuditEvent(
                    tenant_id=candidate.tenant_id,
                    action=AuditAction.SMS_SEND_FAILED,
                    actor=SCHEDULER_ACTOR,
                    entity_type=definition.target,
                    entity_id=candidate.target_id,
                    severity=AuditSeverity.MEDIUM,
                    metadata={"job": definition.name.value, "error": result.error},
                )
            )
            await session.commit()
