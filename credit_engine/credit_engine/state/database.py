"""Async SQLAlchemy engine and session factory for the credit state store.

Supports both PostgreSQL (production) and SQLite (local mode and tests).
Engine type is determined by the database URL scheme:
  - ``postgresql+asyncpg://`` → connection-pooled PostgreSQL engine
  - ``sqlite+aiosqlite://``   → single-writer SQLite engine
"""

from __future__ import annotations

import logging
import re
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

logger = logging.getLogger(__name__)

# Tenant IDs are alphanumeric with hyphens and underscores, 1-64 chars.
_TENANT_ID_RE = re.compile(r"^[a-zA-Z0-9_-]{1,64}$")

# async_sessionmaker instances keyed by engine identity.
_session_factories: dict[int, async_sessionmaker[AsyncSession]] = {}


def get_engine(
    database_url: str,
    pool_size: int = 10,
    max_overflow: int = 20,
) -> AsyncEngine:
    """Create an async SQLAlchemy engine.

    Parameters
    ----------
    database_url:
        Connection string (PostgreSQL or SQLite scheme).
    pool_size:
        Number of persistent connections for PostgreSQL (ignored for SQLite).
    max_overflow:
        Maximum overflow connections for PostgreSQL (ignored for SQLite).
    """
    if database_url.startswith("sqlite"):
        from credit_engine.state.sqlite_adapter import get_local_engine

        # sqlite+aiosqlite:///path/to/db
        db_path = database_url.split("///", 1)[-1] if "///" in database_url else ":memory:"
        return get_local_engine(db_path if db_path else ":memory:")

    engine = create_async_engine(
        database_url,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_pre_ping=True,
        pool_recycle=3600,
        pool_timeout=10,
        echo=False,
        connect_args={
            "server_settings": {
                # Batch jobs treat a stuck round-trip as a failed candidate.
                "statement_timeout": "15000",
                "lock_timeout": "5000",
            }
        },
    )
    logger.info(
        "Created async engine pool_size=%d max_overflow=%d",
        pool_size,
        max_overflow,
    )
    return engine


def get_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Return the cached session factory for *engine*."""
    engine_key = id(engine)
    factory = _session_factories.get(engine_key)
    if factory is None:
        factory = async_sessionmaker(engine, expire_on_commit=False)
        _session_factories[engine_key] = factory
    return factory


def is_postgres(session: AsyncSession) -> bool:
    """True when *session* is bound to a PostgreSQL engine."""
    bind = session.get_bind()
    return "postgresql" in str(getattr(getattr(bind, "dialect", None), "name", ""))


async def set_tenant_context(session: AsyncSession, tenant_id: str) -> None:
    """Set the transaction-scoped tenant for PostgreSQL row-level security.

    A no-op on SQLite, which has no RLS.

    Raises
    ------
    ValueError
        If *tenant_id* does not match the allowed identifier pattern.
    """
    bind = session.get_bind()
    dialect_name = str(getattr(getattr(bind, "dialect", None), "name", ""))
    if "sqlite" in dialect_name:
        return

    if not _TENANT_ID_RE.match(tenant_id):
        raise ValueError(f"Invalid tenant_id: must match {_TENANT_ID_RE.pattern!r}, got {tenant_id!r}")

    # Bound parameter, never interpolated; third argument scopes to the transaction.
    await session.execute(
        text("SELECT set_config('app.tenant_id', :tid, true)"),
        {"tid": tenant_id},
    )


@asynccontextmanager
async def get_session(engine: AsyncEngine) -> AsyncGenerator[AsyncSession, None]:
    """Yield an async session with automatic commit/rollback semantics.

    On successful exit the session is committed.  If an exception propagates
    the session is rolled back before the error is re-raised.
    """
    session = get_session_factory(engine)()
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()
