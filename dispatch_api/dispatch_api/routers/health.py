"""Health-check and readiness probe endpoints.

``/api/v1/health`` (liveness) always returns 200.  ``/ready`` sits at the
application root so orchestrators can gate traffic independently of the API
version; it returns 503 when the state store is unreachable.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import text

from dispatch_api import __version__
from dispatch_api.dependencies import ServiceSessionDep, get_job_runner

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(session: ServiceSessionDep) -> dict[str, Any]:
    """Return service health; ``db`` reports ``degraded`` when the store is unreachable."""
    runner = get_job_runner()
    result: dict[str, Any] = {
        "status": "healthy",
        "version": __version__,
        "db": "ok",
        "job_runner": "running" if runner is not None and runner.running else "disabled",
    }
    try:
        await session.execute(text("SELECT 1"))
    except Exception as exc:
        logger.warning("DB health check failed: %s", exc)
        result["db"] = "degraded"
    return result


readiness_router = APIRouter(tags=["infrastructure"])


@readiness_router.get("/ready")
async def readiness_probe(session: ServiceSessionDep) -> JSONResponse:
    """Kubernetes-style readiness probe gated on database connectivity."""
    try:
        await session.execute(text("SELECT 1"))
    except Exception as exc:
        logger.error("Readiness: DB check failed: %s", exc)
        return JSONResponse(status_code=503, content={"status": "not_ready", "version": __version__})
    return JSONResponse(status_code=200, content={"status": "ready", "version": __version__})
