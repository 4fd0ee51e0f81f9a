"""FastAPI application entry-point for the notification dispatcher."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from credit_engine.errors import LedgerError
from credit_engine.state.sqlite_adapter import create_local_tables
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from dispatch_api import __version__
from dispatch_api.config import APISettings, load_api_settings
from dispatch_api.dependencies import (
    dispose_engine,
    dispose_provider,
    init_engine,
    init_provider,
    init_settings,
    start_job_runner,
    stop_job_runner,
)
from dispatch_api.middleware.json_formatter import configure_json_logging
from dispatch_api.middleware.logging import RequestLoggingMiddleware
from dispatch_api.routers import cron, credits, health, sms_inbound

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application startup / shutdown lifecycle.

    On startup:
    - Switch to single-line JSON logs when structured logging is enabled.
    - Initialise the async database engine and, in local SQLite mode,
      create the tables (PostgreSQL deployments use Alembic migrations).
    - Initialise the messaging provider.
    - Start the in-process job runner when enabled.

    On shutdown the runner is stopped before the provider and the engine
    are released.
    """
    settings: APISettings = init_settings(load_api_settings())

    if settings.structured_logging:
        configure_json_logging(logging.DEBUG if settings.debug else logging.INFO)
        logger.info("Structured JSON logging enabled")

    engine = init_engine(settings)
    logger.info("Database engine initialised (%s)", "local" if settings.is_local() else "postgres")
    if settings.is_local():
        await create_local_tables(engine)

    init_provider(settings)

    if settings.scheduler_enabled:
        await start_job_runner(settings)
        logger.info("In-process job runner enabled (poll every %.0fs)", settings.scheduler_poll_seconds)

    yield

    await stop_job_runner()
    await dispose_provider()
    await dispose_engine()
    logger.info("Application shutdown complete")


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app() -> FastAPI:
    """Construct and configure the FastAPI application."""
    app = FastAPI(
        title="Dispatch API",
        description="Credit-metered, compliance-gated SMS notifications for salon tenants.",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(RequestLoggingMiddleware)

    # Versioned API routes.
    app.include_router(health.router, prefix="/api/v1")
    app.include_router(cron.router, prefix="/api/v1")
    app.include_router(credits.router, prefix="/api/v1")
    app.include_router(sms_inbound.router, prefix="/api/v1")

    # Infrastructure endpoints, outside versioning.
    app.include_router(health.readiness_router)

    # -- Exception handlers --------------------------------------------------

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
        logger.warning("ValueError on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=400, content={"detail": "Invalid request"})

    @app.exception_handler(LedgerError)
    async def ledger_error_handler(request: Request, exc: LedgerError) -> JSONResponse:
        logger.error("Ledger error on %s: %s", request.url.path, exc, exc_info=True)
        return JSONResponse(status_code=503, content={"detail": "Credit ledger unavailable"})

    @app.exception_handler(SQLAlchemyError)
    async def sqlalchemy_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
        logger.error("Database error: %s", exc, exc_info=True)
        return JSONResponse(status_code=500, content={"detail": "Internal database error"})

    return app


# Module-level application instance used by ``uvicorn dispatch_api.main:app``.
app = create_app()
