"""Tests for the in-process job runner and the daily maintenance pass."""

from __future__ import annotations

import asyncio
from datetime import UTC, date, datetime
from unittest.mock import patch

import pytest
from credit_engine.errors import RunAbortedError
from credit_engine.state.repository import TenantRepository
from credit_engine.state.tables import CustomerTable, TenantTable
from dispatch_api.services.job_runner import (
    MAINTENANCE_JOB,
    JobRunner,
    compute_next_run,
    run_daily_maintenance,
)
from dispatch_api.services.notification_scheduler import JOBS, JobName, JobRunSummary
from sqlalchemy.exc import SQLAlchemyError

NOW = datetime(2026, 10, 20, 15, 0, tzinfo=UTC)  # Tuesday


class FakeScheduler:
    """Records job runs instead of sending anything."""

    def __init__(self, error: Exception | None = None) -> None:
        self.calls: list[tuple[str, datetime]] = []
        self._error = error

    async def run(self, job, *, now=None) -> JobRunSummary:
        self.calls.append((str(job), now))
        if self._error is not None:
            raise self._error
        return JobRunSummary(job=str(job))


# ---------------------------------------------------------------------------
# compute_next_run
# ---------------------------------------------------------------------------


class TestComputeNextRun:
    def test_every_thirty_minutes(self):
        assert compute_next_run("*/30 * * * *", NOW.replace(minute=10)) == NOW.replace(minute=30)

    def test_every_thirty_minutes_on_boundary(self):
        assert compute_next_run("*/30 * * * *", NOW.replace(minute=30)) == NOW.replace(hour=16, minute=0)

    def test_every_n_rolls_into_next_hour(self):
        assert compute_next_run("*/20 * * * *", NOW.replace(minute=45, second=12)) == NOW.replace(hour=16)

    def test_every_n_rejects_zero(self):
        with pytest.raises(ValueError, match="1-59"):
            compute_next_run("*/0 * * * *", NOW)

    def test_hourly(self):
        assert compute_next_run("0 * * * *", NOW) == NOW.replace(hour=16)
        assert compute_next_run("0 * * * *", NOW.replace(minute=20)) == NOW.replace(hour=16)

    def test_daily_later_today(self):
        assert compute_next_run("0 18 * * *", NOW) == NOW.replace(hour=18)

    def test_daily_tomorrow(self):
        assert compute_next_run("0 9 * * *", NOW) == datetime(2026, 10, 21, 9, 0, tzinfo=UTC)

    def test_weekly_monday(self):
        assert compute_next_run("0 9 * * 1", NOW) == datetime(2026, 10, 26, 9, 0, tzinfo=UTC)

    def test_weekly_same_day_later(self):
        assert compute_next_run("0 18 * * 2", NOW) == NOW.replace(hour=18)

    def test_weekly_rejects_day_seven(self):
        with pytest.raises(ValueError, match="0-6"):
            compute_next_run("0 9 * * 7", NOW)

    def test_unsupported_expression(self):
        with pytest.raises(ValueError, match="Unsupported cron expression"):
            compute_next_run("0 9 1 * *", NOW)

    def test_every_job_cron_is_supported(self):
        for job in JOBS.values():
            assert compute_next_run(job.cron, NOW) > NOW


# ---------------------------------------------------------------------------
# run_pending
# ---------------------------------------------------------------------------


class TestRunPending:
    @pytest.mark.asyncio
    async def test_first_poll_only_seeds(self, session_factory):
        scheduler = FakeScheduler()
        runner = JobRunner(scheduler, session_factory, jobs=[JOBS[JobName.REMINDER_24H]])

        assert await runner.run_pending(NOW) == []

        assert scheduler.calls == []
        assert runner.next_runs == {
            "reminder_24h": NOW.replace(hour=16),
            MAINTENANCE_JOB: datetime(2026, 10, 21, 0, 5, tzinfo=UTC),
        }

    @pytest.mark.asyncio
    async def test_due_job_runs_and_is_rescheduled(self, session_factory):
        scheduler = FakeScheduler()
        runner = JobRunner(scheduler, session_factory, jobs=[JOBS[JobName.REMINDER_24H]])
        await runner.run_pending(NOW)

        later = NOW.replace(hour=16, minute=1)
        assert await runner.run_pending(later) == ["reminder_24h"]

        assert scheduler.calls == [("reminder_24h", later)]
        assert runner.next_runs["reminder_24h"] == NOW.replace(hour=17)

    @pytest.mark.asyncio
    async def test_nothing_due(self, session_factory):
        scheduler = FakeScheduler()
        runner = JobRunner(scheduler, session_factory)
        await runner.run_pending(NOW)

        assert await runner.run_pending(NOW.replace(minute=5)) == []
        assert scheduler.calls == []

    @pytest.mark.asyncio
    async def test_aborted_run_is_still_rescheduled(self, session_factory):
        scheduler = FakeScheduler(error=RunAbortedError("reminder_24h", ConnectionError("db gone")))
        runner = JobRunner(scheduler, session_factory, jobs=[JOBS[JobName.REMINDER_24H]])
        await runner.run_pending(NOW)

        later = NOW.replace(hour=16)
        assert await runner.run_pending(later) == ["reminder_24h"]
        assert runner.next_runs["reminder_24h"] == NOW.replace(hour=17)

    @pytest.mark.asyncio
    async def test_maintenance_runs_on_its_slot(self, session_factory, seed):
        await seed.tenant(monthly=3, reset_date=date(2026, 10, 21))
        scheduler = FakeScheduler()
        runner = JobRunner(scheduler, session_factory, jobs=[])
        await runner.run_pending(NOW)

        ran = await runner.run_pending(datetime(2026, 10, 21, 0, 5, tzinfo=UTC))

        assert ran == [MAINTENANCE_JOB]
        async with session_factory() as session:
            tenant = await session.get(TenantTable, "salon-1")
        assert tenant.monthly_credits == 500
        assert tenant.credits_reset_date == date(2026, 11, 21)


class TestStartStop:
    @pytest.mark.asyncio
    async def test_start_and_stop(self, session_factory):
        runner = JobRunner(FakeScheduler(), session_factory, poll_seconds=0.01)

        await runner.start()
        assert runner.running is True
        await asyncio.sleep(0.05)
        assert runner.next_runs  # seeded by the first poll

        await runner.stop()
        assert runner.running is False

    @pytest.mark.asyncio
    async def test_double_start_is_ignored(self, session_factory, caplog):
        runner = JobRunner(FakeScheduler(), session_factory, poll_seconds=0.01)
        await runner.start()
        try:
            with caplog.at_level("WARNING", logger="dispatch_api.services.job_runner"):
                await runner.start()
            assert "already running" in caplog.text
        finally:
            await runner.stop()

    @pytest.mark.asyncio
    async def test_stop_without_start(self, session_factory):
        runner = JobRunner(FakeScheduler(), session_factory)
        await runner.stop()
        assert runner.running is False


# ---------------------------------------------------------------------------
# Daily maintenance
# ---------------------------------------------------------------------------


class TestDailyMaintenance:
    @pytest.mark.asyncio
    async def test_resets_due_tenants(self, session_factory, seed):
        await seed.tenant("due", monthly=0, reset_date=date(2026, 10, 20))
        await seed.tenant("later", monthly=7, reset_date=date(2026, 11, 2))

        summary = await run_daily_maintenance(session_factory, now=NOW)

        assert summary.reset_tenants == ["due"]
        assert summary.birthday_flags_cleared == 0
        async with session_factory() as session:
            assert (await session.get(TenantTable, "due")).monthly_credits == 500
            assert (await session.get(TenantTable, "later")).monthly_credits == 7

    @pytest.mark.asyncio
    async def test_second_pass_same_day_is_a_no_op(self, session_factory, seed):
        await seed.tenant(monthly=0, reset_date=date(2026, 10, 20))

        await run_daily_maintenance(session_factory, now=NOW)
        summary = await run_daily_maintenance(session_factory, now=NOW)

        assert summary.reset_tenants == []

    @pytest.mark.asyncio
    async def test_failing_tenant_does_not_undo_the_others(self, session_factory, seed):
        for tenant_id in ("a-salon", "b-broken", "c-salon"):
            await seed.tenant(tenant_id, monthly=0, reset_date=date(2026, 10, 20))
        original = TenantRepository.apply_reset

        async def _apply_reset(self, tenant_id: str, **kwargs):
            if tenant_id == "b-broken":
                raise SQLAlchemyError("could not serialize access")
            return await original(self, tenant_id, **kwargs)

        with patch.object(TenantRepository, "apply_reset", _apply_reset):
            summary = await run_daily_maintenance(session_factory, now=NOW)

        assert summary.reset_tenants == ["a-salon", "c-salon"]
        assert summary.failed_tenants == ["b-broken"]
        async with session_factory() as session:
            assert (await session.get(TenantTable, "a-salon")).monthly_credits == 500
            assert (await session.get(TenantTable, "c-salon")).monthly_credits == 500
            assert (await session.get(TenantTable, "b-broken")).monthly_credits == 0

        retry = await run_daily_maintenance(session_factory, now=NOW)
        assert retry.reset_tenants == ["b-broken"]
        assert retry.failed_tenants == []

    @pytest.mark.asyncio
    async def test_new_year_clears_birthday_flags(self, session_factory, seed):
        await seed.tenant(reset_date=date(2027, 1, 15))
        await seed.customer(birthday_message_sent_this_year=True)
        await seed.customer("cust-2", phone=None, birthday_message_sent_this_year=True)

        summary = await run_daily_maintenance(session_factory, now=datetime(2027, 1, 1, 0, 5, tzinfo=UTC))

        assert summary.birthday_flags_cleared == 2
        async with session_factory() as session:
            customer = await session.get(CustomerTable, "cust-1")
        assert customer.birthday_message_sent_this_year is False

    @pytest.mark.asyncio
    async def test_birthday_flags_kept_during_the_year(self, session_factory, seed):
        await seed.tenant(reset_date=date(2027, 1, 15))
        await seed.customer(birthday_message_sent_this_year=True)

        summary = await run_daily_maintenance(session_factory, now=NOW)

        assert summary.birthday_flags_cleared == 0
