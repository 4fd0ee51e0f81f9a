"""Shared fixtures for credit engine tests.

Every test runs against a real SQLite database through aiosqlite.  The
single-session fixture uses an in-memory database; tests that need two
independent connections (concurrent resets, cross-session visibility) use a
file database under ``tmp_path``.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Awaitable, Callable
from datetime import date
from pathlib import Path

import pytest
import pytest_asyncio
from credit_engine.state.repository import TenantRepository
from credit_engine.state.sqlite_adapter import create_local_tables, get_local_engine
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker


@pytest_asyncio.fixture
async def async_session() -> AsyncIterator[AsyncSession]:
    """Async session backed by an in-memory SQLite database."""
    engine = get_local_engine(":memory:")
    await create_local_tables(engine)

    factory = async_sessionmaker(engine, expire_on_commit=False)
    async with factory() as session:
        yield session

    await engine.dispose()


@pytest_asyncio.fixture
async def file_engine(tmp_path: Path) -> AsyncIterator[AsyncEngine]:
    """File-backed SQLite engine for tests that open several sessions."""
    engine = get_local_engine(tmp_path / "state.db")
    await create_local_tables(engine)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(file_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(file_engine, expire_on_commit=False)


async def _make_tenant(
    session: AsyncSession,
    tenant_id: str = "salon-1",
    *,
    tier: str = "starter",
    monthly: int = 0,
    purchased: int = 0,
    used: int = 0,
    reset_date: date | None = None,
    timezone: str = "America/New_York",
    name: str = "Polished Nails",
) -> None:
    """Insert a tenant row with explicit balances."""
    tenant = await TenantRepository(session).create(
        tenant_id,
        name=name,
        subscription_tier=tier,
        timezone=timezone,
    )
    tenant.monthly_credits = monthly
    tenant.purchased_credits = purchased
    tenant.credits_used_this_month = used
    tenant.credits_reset_date = reset_date
    await session.flush()


@pytest.fixture
def make_tenant() -> Callable[..., Awaitable[None]]:
    """Factory fixture: ``await make_tenant(session, "t1", monthly=3, purchased=5)``."""
    return _make_tenant
