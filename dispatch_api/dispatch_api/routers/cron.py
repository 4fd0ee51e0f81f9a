"""Cron trigger endpoints.

An external scheduler calls these on each job's cadence::

    reminder_24h      0 * * * *
    reminder_2h       */30 * * * *
    birthday          0 9 * * *
    service_reminder  0 9 * * 1
    no_show_followup  0 18 * * *

Every route requires ``Authorization: Bearer <DISPATCH_CRON_SECRET>`` when a
secret is configured.
"""

from __future__ import annotations

import logging

from credit_engine.errors import RunAbortedError
from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse

from dispatch_api.dependencies import SchedulerDep, get_session_factory, require_internal_token
from dispatch_api.services.job_runner import MaintenanceSummary, run_daily_maintenance
from dispatch_api.services.notification_scheduler import JobName, JobRunSummary, get_job

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/cron", tags=["cron"], dependencies=[Depends(require_internal_token)])


@router.post("/jobs/{job}", response_model=JobRunSummary)
async def run_job(job: str, scheduler: SchedulerDep) -> JobRunSummary | JSONResponse:
    """Run one scheduled job now and return its summary.

    Returns 400 for an unknown job and 503 (with the partial summary) when
    the run was aborted because the state store became unreachable.
    """
    try:
        definition = get_job(job)
    except ValueError:
        raise HTTPException(
            status_code=400,
            detail=f"Unknown job '{job}'. Use one of: {', '.join(j.value for j in JobName)}",
        ) from None

    try:
        return await scheduler.run(definition.name)
    except RunAbortedError as exc:
        logger.error("Cron run of %s aborted: %s", definition.name.value, exc)
        summary = exc.summary.model_dump(mode="json") if exc.summary is not None else None
        return JSONResponse(
            status_code=503,
            content={"detail": "Job aborted: state store unavailable", "summary": summary},
        )


@router.post("/credits/reset", response_model=MaintenanceSummary)
async def reset_credits() -> MaintenanceSummary:
    """Reset monthly credits for every due tenant (and yearly birthday flags on January 1st)."""
    return await run_daily_maintenance(get_session_factory())
