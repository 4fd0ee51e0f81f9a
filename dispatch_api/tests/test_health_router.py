"""Tests for the health and readiness probes and the application lifespan."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest
from dispatch_api import __version__
from dispatch_api.dependencies import get_job_runner, get_provider, get_service_session
from dispatch_api.main import create_app
from dispatch_api.services.messaging_provider import LoggingProvider
from httpx import ASGITransport, AsyncClient
from sqlalchemy.exc import OperationalError


@pytest.fixture()
def broken_db(app):
    """Route health checks to a session whose every query fails."""
    session = MagicMock()
    session.execute = AsyncMock(side_effect=OperationalError("SELECT 1", {}, ConnectionError("down")))

    async def _broken():
        yield session

    app.dependency_overrides[get_service_session] = _broken


class TestHealth:
    @pytest.mark.asyncio
    async def test_healthy(self, client):
        resp = await client.get("/api/v1/health")

        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "healthy"
        assert data["version"] == __version__
        assert data["db"] == "ok"
        assert data["job_runner"] == "disabled"

    @pytest.mark.asyncio
    async def test_degraded_database(self, client, broken_db):
        resp = await client.get("/api/v1/health")

        assert resp.status_code == 200
        assert resp.json()["db"] == "degraded"

    @pytest.mark.asyncio
    async def test_no_auth_required(self, client):
        resp = await client.get("/api/v1/health", headers={"Authorization": "Bearer wrong"})
        assert resp.status_code == 200


class TestReadiness:
    @pytest.mark.asyncio
    async def test_ready(self, client):
        resp = await client.get("/ready")
        assert resp.status_code == 200
        assert resp.json()["status"] == "ready"

    @pytest.mark.asyncio
    async def test_not_ready_when_database_down(self, client, broken_db):
        resp = await client.get("/ready")
        assert resp.status_code == 503
        assert resp.json()["status"] == "not_ready"


class TestCorrelationId:
    @pytest.mark.asyncio
    async def test_generated_when_absent(self, client):
        resp = await client.get("/api/v1/health")
        assert resp.headers.get("x-correlation-id")

    @pytest.mark.asyncio
    async def test_echoed_when_supplied(self, client):
        resp = await client.get("/api/v1/health", headers={"X-Correlation-ID": "abc-123"})
        assert resp.headers["x-correlation-id"] == "abc-123"


class TestLifespan:
    @pytest.mark.asyncio
    async def test_local_startup_and_shutdown(self, tmp_path, monkeypatch):
        monkeypatch.setenv("DISPATCH_DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'life.db'}")
        monkeypatch.setenv("DISPATCH_PROVIDER_URL", "")
        monkeypatch.setenv("DISPATCH_SCHEDULER_ENABLED", "false")
        monkeypatch.setenv("DISPATCH_CRON_SECRET", "")
        app = create_app()

        async with app.router.lifespan_context(app):
            assert isinstance(get_provider(), LoggingProvider)
            assert get_job_runner() is None
            transport = ASGITransport(app=app)
            async with AsyncClient(transport=transport, base_url="http://test") as ac:
                resp = await ac.get("/ready")
            assert resp.status_code == 200

        assert (tmp_path / "life.db").exists()
        with pytest.raises(RuntimeError):
            get_provider()

    @pytest.mark.asyncio
    async def test_job_runner_started_when_enabled(self, tmp_path, monkeypatch):
        monkeypatch.setenv("DISPATCH_DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'life.db'}")
        monkeypatch.setenv("DISPATCH_PROVIDER_URL", "")
        monkeypatch.setenv("DISPATCH_SCHEDULER_ENABLED", "true")
        monkeypatch.setenv("DISPATCH_SCHEDULER_POLL_SECONDS", "30")
        app = create_app()

        async with app.router.lifespan_context(app):
            runner = get_job_runner()
            assert runner is not None
            assert runner.running is True

        assert get_job_runner() is None
