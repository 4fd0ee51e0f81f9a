"""Shared fixtures for CLI tests.

Each test gets its own SQLite state store under ``tmp_path`` and runs with
the working directory moved there, so no ``.env`` file or ``DISPATCH_*``
variable from the host leaks into the commands.
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from pathlib import Path

import pytest
from credit_engine.state.database import get_engine, get_session_factory
from credit_engine.state.sqlite_adapter import create_local_tables
from credit_engine.state.tables import AppointmentTable, CustomerTable
from typer.testing import CliRunner


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.chdir(tmp_path)
    for name in (
        "DISPATCH_DATABASE_URL",
        "DISPATCH_PROVIDER_URL",
        "DISPATCH_SCHEDULER_ENABLED",
        "DISPATCH_COMPLIANCE_FAILURE_POLICY",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture()
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture()
def db_url(tmp_path: Path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'cli.db'}"


@pytest.fixture()
def seed_appointment(db_url: str):
    """Return a helper inserting a customer with a phone number and one confirmed appointment."""

    def _seed_appointment(appointment_id: str, when: datetime, *, tenant_id: str = "salon-1") -> None:
        asyncio.run(_seed(appointment_id, when, tenant_id))

    async def _seed(appointment_id: str, when: datetime, tenant_id: str) -> None:
        engine = get_engine(db_url)
        try:
            await create_local_tables(engine)
            async with get_session_factory(engine)() as session:
                session.add(CustomerTable(id="cust-1", tenant_id=tenant_id, phone="+15551234567", first_name="Ana"))
                session.add(
                    AppointmentTable(
                        id=appointment_id,
                        tenant_id=tenant_id,
                        customer_id="cust-1",
                        service_name="Gel Manicure",
                        appointment_date=when,
                        start_time="10:00 AM",
                        status="confirmed",
                    )
                )
                await session.commit()
        finally:
            await engine.dispose()

    return _seed_appointment
