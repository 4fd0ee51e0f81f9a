"""In-process runner for the scheduled SMS jobs and daily credit maintenance.

Runs as an ``asyncio`` background task, polling every
``scheduler_poll_seconds`` and executing any job whose next run time has
passed.  Supports a simple subset of cron expressions (every-N-minutes,
hourly, daily, weekly) that covers the job cadences without requiring a full
cron parser dependency.

Deployments that trigger jobs from an external cron hit
``POST /api/v1/cron/jobs/{job}`` instead and leave the runner disabled.
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Callable, Iterable
from datetime import UTC, datetime, timedelta

from credit_engine.audit.sink import DatabaseAuditSink
from credit_engine.errors import RunAbortedError, UpdateConflictError
from credit_engine.ledger import CreditLedger
from credit_engine.state.repository import CandidateRepository, TenantRepository
from pydantic import BaseModel, Field
from sqlalchemy.exc import InterfaceError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from dispatch_api.services.notification_scheduler import JOBS, JobDefinition, NotificationScheduler

logger = logging.getLogger(__name__)

MAINTENANCE_JOB = "daily_maintenance"
MAINTENANCE_CRON = "5 0 * * *"

# ---------------------------------------------------------------------------
# Cron expression helpers
# ---------------------------------------------------------------------------

_EVERY_N_RE = re.compile(r"^\*/(\d{1,2})\s+\*\s+\*\s+\*\s+\*$")
_HOURLY_RE = re.compile(r"^(\d{1,2})\s+\*\s+\*\s+\*\s+\*$")
_DAILY_RE = re.compile(r"^(\d{1,2})\s+(\d{1,2})\s+\*\s+\*\s+\*$")
_WEEKLY_RE = re.compile(r"^(\d{1,2})\s+(\d{1,2})\s+\*\s+\*\s+(\d)$")


def compute_next_run(cron_expression: str, from_time: datetime) -> datetime:
    """Compute the next run time strictly after *from_time*.

    Supports a practical subset of cron syntax:

    * ``*/N * * * *`` -- every *N* minutes, aligned to the hour.
    * ``M * * * *`` -- every hour at minute *M*.
    * ``M H * * *`` -- daily at hour *H*, minute *M*.
    * ``M H * * D`` -- weekly on day-of-week *D* (0=Sunday) at *H*:*M*.

    Parameters
    ----------
    cron_expression:
        Five-field cron string (minute, hour, day-of-month, month, day-of-week).
    from_time:
        The reference time to compute the *next* run after.

    Returns
    -------
    datetime
        The next execution time (same timezone as *from_time*).

    Raises
    ------
    ValueError
        If the cron expression does not match any supported pattern or a
        field is out of range.
    """
    expr = cron_expression.strip()

    # Every N minutes: "*/N * * * *"
    match = _EVERY_N_RE.match(expr)
    if match:
        step = int(match.group(1))
        if not 1 <= step <= 59:
            raise ValueError(f"Minute step must be 1-59, got {step}")
        base = from_time.replace(second=0, microsecond=0)
        minute = (base.minute // step + 1) * step
        if minute >= 60:
            return base.replace(minute=0) + timedelta(hours=1)
        return base.replace(minute=minute)

    # Hourly: "M * * * *"
    match = _HOURLY_RE.match(expr)
    if match:
        minute = int(match.group(1))
        candidate = from_time.replace(minute=minute, second=0, microsecond=0)
        if candidate <= from_time:
            candidate += timedelta(hours=1)
        return candidate

    # Daily: "M H * * *"
    match = _DAILY_RE.match(expr)
    if match:
        minute = int(match.group(1))
        hour = int(match.group(2))
        candidate = from_time.replace(hour=hour, minute=minute, second=0, microsecond=0)
        if candidate <= from_time:
            candidate += timedelta(days=1)
        return candidate

    # Weekly: "M H * * D"
    match = _WEEKLY_RE.match(expr)
    if match:
        minute = int(match.group(1))
        hour = int(match.group(2))
        target_dow = int(match.group(3))  # 0=Sunday
        if target_dow > 6:
            raise ValueError(f"Day-of-week must be 0-6, got {target_dow}")

        # Cron Sunday=0 -> Python Sunday=6.
        python_dow = (target_dow - 1) % 7

        candidate = from_time.replace(hour=hour, minute=minute, second=0, microsecond=0)
        days_ahead = (python_dow - candidate.weekday()) % 7
        if days_ahead == 0 and candidate <= from_time:
            days_ahead = 7
        return candidate + timedelta(days=days_ahead)

    raise ValueError(
        f"Unsupported cron expression: '{cron_expression}'. "
        f"Supported patterns: '*/N * * * *', 'M * * * *' (hourly), "
        f"'M H * * *' (daily), 'M H * * D' (weekly)."
    )


# ---------------------------------------------------------------------------
# Daily maintenance
# ---------------------------------------------------------------------------


class MaintenanceSummary(BaseModel):
    """Outcome of one daily maintenance pass."""

    reset_tenants: list[str] = Field(default_factory=list)
    failed_tenants: list[str] = Field(default_factory=list)
    birthday_flags_cleared: int = 0


async def run_daily_maintenance(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    now: datetime | None = None,
) -> MaintenanceSummary:
    """Reset monthly credits for every tenant that is due.

    Each tenant is reset and committed in its own session.  A tenant whose
    reset fails is logged and listed in ``failed_tenants``; the next pass
    picks it up again because its reset date has not moved.  On January 1st
    the yearly birthday flags are cleared as well.
    """
    now = (now or datetime.now(UTC)).astimezone(UTC)
    summary = MaintenanceSummary()
    async with session_factory() as session:
        due = await TenantRepository(session).list_due_for_reset(now.date())

    for tenant_id in due:
        try:
            if await _reset_tenant(session_factory, tenant_id, now):
                summary.reset_tenants.append(tenant_id)
        except (UpdateConflictError, SQLAlchemyError):
            logger.exception("Monthly reset failed for tenant %s; continuing with the next tenant", tenant_id)
            summary.failed_tenants.append(tenant_id)

    if (now.month, now.day) == (1, 1):
        async with session_factory() as session:
            summary.birthday_flags_cleared = await CandidateRepository(session).reset_birthday_flags()
            await session.commit()

    logger.info(
        "Daily maintenance: %d tenant(s) reset, %d failed, %d birthday flag(s) cleared",
        len(summary.reset_tenants),
        len(summary.failed_tenants),
        summary.birthday_flags_cleared,
    )
    return summary


async def _reset_tenant(
    session_factory: async_sessionmaker[AsyncSession],
    tenant_id: str,
    now: datetime,
) -> bool:
    async with session_factory() as session:
        ledger = CreditLedger(session, audit_sink=DatabaseAuditSink(session), actor="scheduler")
        done = await ledger.reset_monthly(tenant_id, now=now)
        await session.commit()
    return done


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------


class JobRunner:
    """AsyncIO background task that runs jobs on their cron cadence.

    Next-run times are held in memory and seeded on the first poll, so a
    restart never replays a slot that was missed while the process was down.

    Parameters
    ----------
    scheduler:
        Executes the SMS jobs.
    session_factory:
        Used for the daily maintenance pass.
    poll_seconds:
        Delay between checks for due jobs.
    jobs:
        Job definitions to schedule; defaults to every SMS job.
    clock:
        Returns the current UTC time; injectable for tests.
    """

    def __init__(
        self,
        scheduler: NotificationScheduler,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        poll_seconds: float = 60.0,
        jobs: Iterable[JobDefinition] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._scheduler = scheduler
        self._session_factory = session_factory
        self._poll_seconds = poll_seconds
        self._clock = clock or (lambda: datetime.now(UTC))
        self._cron: dict[str, str] = {job.name.value: job.cron for job in (jobs if jobs is not None else JOBS.values())}
        self._cron[MAINTENANCE_JOB] = MAINTENANCE_CRON
        self._next_run: dict[str, datetime] = {}
        self._running = False
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        """Whether the runner loop is active."""
        return self._running

    @property
    def next_runs(self) -> dict[str, datetime]:
        return dict(self._next_run)

    async def start(self) -> None:
        """Start the runner background task."""
        if self._running:
            logger.warning("JobRunner already running; ignoring start()")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("JobRunner started with %d job(s)", len(self._cron))

    async def stop(self) -> None:
        """Stop the runner gracefully."""
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("JobRunner stopped")

    async def run_pending(self, now: datetime | None = None) -> list[str]:
        """Run every job whose next run time is at or before *now*.

        Returns the names of the jobs that were executed.
        """
        now = now or self._clock()
        if not self._next_run:
            self._next_run = {name: compute_next_run(cron, now) for name, cron in self._cron.items()}
            return []

        due = sorted(name for name, at in self._next_run.items() if at <= now)
        for name in due:
            try:
                await self._execute(name, now)
            except RunAbortedError as exc:
                logger.error("Scheduled job %s aborted: %s", name, exc)
            finally:
                self._next_run[name] = compute_next_run(self._cron[name], now)
        return due

    async def _execute(self, name: str, now: datetime) -> None:
        if name == MAINTENANCE_JOB:
            await run_daily_maintenance(self._session_factory, now=now)
        else:
            await self._scheduler.run(name, now=now)

    async def _run_loop(self) -> None:
        """Main runner loop -- checks every ``poll_seconds`` for due jobs."""
        while self._running:
            try:
                await self.run_pending()
            except asyncio.CancelledError:
                raise
            except (OperationalError, InterfaceError) as exc:
                logger.error("JobRunner database error: %s", exc, exc_info=True)
            except Exception as exc:
                logger.critical("JobRunner unexpected error: %s", exc, exc_info=True)
                raise
            await asyncio.sleep(self._poll_seconds)
