"""FastAPI dependency injection for settings, database sessions, the provider and the scheduler."""

from __future__ import annotations

import hmac
import logging
from collections.abc import AsyncGenerator
from datetime import timedelta
from typing import Annotated

from credit_engine.state.database import get_engine, get_session_factory as _factory_for, set_tenant_context
from fastapi import Depends, Header, HTTPException
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from dispatch_api.config import APISettings, load_api_settings
from dispatch_api.services.job_runner import JobRunner
from dispatch_api.services.messaging_provider import HTTPMessagingProvider, LoggingProvider, build_provider
from dispatch_api.services.notification_scheduler import NotificationScheduler

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

_settings_cache: APISettings | None = None


def init_settings(settings: APISettings) -> APISettings:
    """Pin *settings* as the process-wide instance (called from the lifespan)."""
    global _settings_cache  # noqa: PLW0603
    _settings_cache = settings
    return settings


def get_settings() -> APISettings:
    """Return the cached :class:`APISettings` singleton."""
    global _settings_cache  # noqa: PLW0603
    if _settings_cache is None:
        _settings_cache = load_api_settings()
    return _settings_cache


SettingsDep = Annotated[APISettings, Depends(get_settings)]

# ---------------------------------------------------------------------------
# Database session
# ---------------------------------------------------------------------------

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def init_engine(settings: APISettings) -> AsyncEngine:
    """Create and cache the global async engine."""
    global _engine, _session_factory  # noqa: PLW0603
    _engine = get_engine(settings.database_url)
    _session_factory = _factory_for(_engine)
    return _engine


async def dispose_engine() -> None:
    """Dispose the global engine pool (call during shutdown)."""
    global _engine, _session_factory  # noqa: PLW0603
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the global async session factory.

    Used by components that run outside a request, such as the scheduler and
    the job runner, which open their own per-candidate sessions.
    """
    if _session_factory is None:
        raise RuntimeError(
            "Database engine has not been initialised. Ensure init_engine() is called during application startup."
        )
    return _session_factory


async def get_service_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield an ``AsyncSession`` **without** tenant RLS context.

    .. warning:: **No Row-Level Security**

       Opt-outs are global to a phone number, so the inbound SMS webhook
       must deactivate consent rows across every tenant.  Use this
       dependency only for that route and for health probes.

    The session commits on clean exit and rolls back on exception.
    """
    session = get_session_factory()()
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


async def get_tenant_session(tenant_id: str) -> AsyncGenerator[AsyncSession, None]:
    """Yield an ``AsyncSession`` with the RLS tenant context set to the path's ``tenant_id``."""
    session = get_session_factory()()
    try:
        await set_tenant_context(session, tenant_id)
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


ServiceSessionDep = Annotated[AsyncSession, Depends(get_service_session)]
TenantSessionDep = Annotated[AsyncSession, Depends(get_tenant_session)]

# ---------------------------------------------------------------------------
# Internal bearer token
# ---------------------------------------------------------------------------


def require_internal_token(
    settings: SettingsDep,
    authorization: Annotated[str | None, Header()] = None,
) -> None:
    """Reject the request unless it carries ``Authorization: Bearer <cron_secret>``.

    The check is skipped when no secret is configured (local development).
    """
    secret = settings.cron_secret.get_secret_value()
    if not secret:
        return
    expected = f"Bearer {secret}"
    if authorization is None or not hmac.compare_digest(authorization.encode(), expected.encode()):
        raise HTTPException(status_code=401, detail="Unauthorized")


# ---------------------------------------------------------------------------
# Messaging provider
# ---------------------------------------------------------------------------

_provider: HTTPMessagingProvider | LoggingProvider | None = None


def init_provider(settings: APISettings) -> HTTPMessagingProvider | LoggingProvider:
    """Create and cache the global messaging provider."""
    global _provider  # noqa: PLW0603
    _provider = build_provider(settings)
    return _provider


async def dispose_provider() -> None:
    """Close the provider's underlying HTTP pool."""
    global _provider  # noqa: PLW0603
    if _provider is not None:
        await _provider.close()
        _provider = None


def get_provider() -> HTTPMessagingProvider | LoggingProvider:
    """Return the cached messaging provider."""
    if _provider is None:
        raise RuntimeError(
            "Messaging provider has not been initialised. Ensure init_provider() is called during application startup."
        )
    return _provider


ProviderDep = Annotated[HTTPMessagingProvider | LoggingProvider, Depends(get_provider)]

# ---------------------------------------------------------------------------
# Scheduler and job runner
# ---------------------------------------------------------------------------


def build_scheduler(
    settings: APISettings,
    provider: HTTPMessagingProvider | LoggingProvider,
    session_factory: async_sessionmaker[AsyncSession],
) -> NotificationScheduler:
    """Construct a :class:`NotificationScheduler` from *settings*."""
    return NotificationScheduler(
        session_factory,
        provider,
        failure_policy=settings.compliance_failure_policy,
        max_concurrency=settings.scheduler_max_concurrency,
        claim_lease=timedelta(seconds=settings.scheduler_claim_lease_seconds),
        send_timeout=settings.provider_timeout,
        booking_url=settings.booking_url,
    )


def get_scheduler(settings: SettingsDep, provider: ProviderDep) -> NotificationScheduler:
    return build_scheduler(settings, provider, get_session_factory())


SchedulerDep = Annotated[NotificationScheduler, Depends(get_scheduler)]

_job_runner: JobRunner | None = None


async def start_job_runner(settings: APISettings) -> JobRunner:
    """Create, cache and start the in-process :class:`JobRunner`."""
    global _job_runner  # noqa: PLW0603
    session_factory = get_session_factory()
    _job_runner = JobRunner(
        build_scheduler(settings, get_provider(), session_factory),
        session_factory,
        poll_seconds=settings.scheduler_poll_seconds,
    )
    await _job_runner.start()
    return _job_runner


async def stop_job_runner() -> None:
    """Stop the job runner if one was started."""
    global _job_runner  # noqa: PLW0603
    if _job_runner is not None:
        await _job_runner.stop()
        _job_runner = None


def get_job_runner() -> JobRunner | None:
    """Return the running :class:`JobRunner`, or ``None`` when disabled."""
    return _job_runner
