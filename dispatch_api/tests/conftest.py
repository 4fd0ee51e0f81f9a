"""Shared fixtures for dispatcher API tests.

Every test runs against a real SQLite file under ``tmp_path`` so that the
scheduler's per-candidate sessions see each other's commits.  Provides a
recording messaging provider, a data seeder, and an httpx client bound to
the FastAPI app through ``ASGITransport``.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from datetime import UTC, date, datetime
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio
from credit_engine.state.repository import ConsentRepository, OptOutRepository
from credit_engine.state.sqlite_adapter import create_local_tables
from credit_engine.state.tables import AppointmentTable, CustomerTable, TenantTable
from dispatch_api.config import APISettings
from dispatch_api.dependencies import (
    dispose_engine,
    get_provider,
    get_session_factory,
    init_engine,
    init_settings,
)
from dispatch_api.main import create_app
from dispatch_api.services.messaging_provider import SendResult
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

CRON_SECRET = "test-cron-secret"

# 2026-10-20 15:00 UTC is 11:00 in New York, outside quiet hours.
NOW = datetime(2026, 10, 20, 15, 0, tzinfo=UTC)


# ---------------------------------------------------------------------------
# Messaging provider
# ---------------------------------------------------------------------------


class RecordingProvider:
    """Provider double that records sends and can fail or stall on demand."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str]] = []
        self.fail_numbers: set[str] = set()
        self.delay: float = 0.0

    async def send(self, phone_number: str, body: str) -> SendResult:
        if self.delay:
            await asyncio.sleep(self.delay)
        if phone_number in self.fail_numbers:
            return SendResult(success=False, error="carrier rejected")
        self.sent.append((phone_number, body))
        return SendResult(success=True, message_id=f"msg-{len(self.sent)}")

    async def close(self) -> None:
        return None


@pytest.fixture()
def provider() -> RecordingProvider:
    return RecordingProvider()


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest.fixture()
def test_settings(tmp_path: Path) -> APISettings:
    """Return a settings object suitable for testing."""
    return APISettings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'dispatch.db'}",
        cron_secret=CRON_SECRET,
        provider_timeout=0.5,
        booking_url="https://book.example.com/polished",
    )


@pytest_asyncio.fixture()
async def session_factory(test_settings: APISettings) -> AsyncIterator[async_sessionmaker[AsyncSession]]:
    """Initialise the app's global engine on a fresh SQLite file."""
    init_settings(test_settings)
    engine = init_engine(test_settings)
    await create_local_tables(engine)
    yield get_session_factory()
    await dispose_engine()


class Seeder:
    """Insert tenants, customers, appointments, consents and opt-outs."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._factory = session_factory

    async def _add(self, row: Any) -> Any:
        async with self._factory() as session:
            session.add(row)
            await session.commit()
        return row

    async def tenant(
        self,
        tenant_id: str = "salon-1",
        *,
        monthly: int = 10,
        purchased: int = 0,
        tier: str = "starter",
        timezone: str = "America/New_York",
        name: str = "Polished Nails",
        reset_date: date | None = None,
    ) -> TenantTable:
        return await self._add(
            TenantTable(
                id=tenant_id,
                name=name,
                subscription_tier=tier,
                timezone=timezone,
                address="12 Main St",
                monthly_credits=monthly,
                purchased_credits=purchased,
                credits_used_this_month=0,
                credits_reset_date=reset_date,
            )
        )

    async def customer(
        self,
        customer_id: str = "cust-1",
        *,
        tenant_id: str = "salon-1",
        phone: str | None = "+15551234567",
        first_name: str = "Ana",
        **fields: Any,
    ) -> CustomerTable:
        return await self._add(
            CustomerTable(id=customer_id, tenant_id=tenant_id, phone=phone, first_name=first_name, **fields)
        )

    async def appointment(
        self,
        appointment_id: str,
        when: datetime,
        *,
        tenant_id: str = "salon-1",
        customer_id: str | None = "cust-1",
        status: str = "confirmed",
        **fields: Any,
    ) -> AppointmentTable:
        return await self._add(
            AppointmentTable(
                id=appointment_id,
                tenant_id=tenant_id,
                customer_id=customer_id,
                service_name="Gel Manicure",
                appointment_date=when,
                start_time=fields.pop("start_time", "10:00 AM"),
                status=status,
                **fields,
            )
        )

    async def consent(self, phone: str = "+15551234567", tenant_id: str = "salon-1") -> None:
        async with self._factory() as session:
            await ConsentRepository(session).add(
                phone_number=phone,
                tenant_id=tenant_id,
                consent_type="express_written",
                consent_method="web_form",
                purpose=["promotions"],
                consented_at=NOW,
            )
            await session.commit()

    async def opt_out(self, phone: str = "+15551234567") -> None:
        async with self._factory() as session:
            await OptOutRepository(session).add(phone, "user_request")
            await session.commit()


@pytest.fixture()
def seed(session_factory: async_sessionmaker[AsyncSession]) -> Seeder:
    return Seeder(session_factory)


# ---------------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------------


@pytest.fixture()
def app(session_factory: async_sessionmaker[AsyncSession], provider: RecordingProvider):
    """FastAPI app wired to the test database and the recording provider."""
    application = create_app()
    application.dependency_overrides[get_provider] = lambda: provider
    yield application
    application.dependency_overrides.clear()


@pytest_asyncio.fixture()
async def client(app) -> AsyncIterator[AsyncClient]:
    """Yield an async httpx client bound to the test app.

    Uses ASGITransport so requests go directly to the ASGI app; the lifespan
    is not run, the ``session_factory`` fixture has already initialised the
    engine.
    """
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture()
def auth_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {CRON_SECRET}"}


@pytest.fixture()
def now() -> datetime:
    return NOW
