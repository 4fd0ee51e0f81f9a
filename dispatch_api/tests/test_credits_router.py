"""Tests for the credit balance, history and pack-grant endpoints."""

from __future__ import annotations

import pytest
from credit_engine.audit.sink import AuditAction
from credit_engine.state.repository import AuditRepository


class TestBalance:
    @pytest.mark.asyncio
    async def test_returns_both_pools(self, client, auth_headers, seed):
        await seed.tenant(monthly=10, purchased=5)

        resp = await client.get("/api/v1/credits/salon-1/balance", headers=auth_headers)

        assert resp.status_code == 200
        data = resp.json()
        assert data["tenant_id"] == "salon-1"
        assert data["monthly"] == 10
        assert data["purchased"] == 5
        assert data["total"] == 15

    @pytest.mark.asyncio
    async def test_unknown_tenant(self, client, auth_headers, session_factory):
        resp = await client.get("/api/v1/credits/ghost/balance", headers=auth_headers)
        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_requires_token(self, client, seed):
        await seed.tenant()
        resp = await client.get("/api/v1/credits/salon-1/balance")
        assert resp.status_code == 401


class TestPacks:
    @pytest.mark.asyncio
    async def test_grant_adds_to_purchased_pool(self, client, auth_headers, seed, session_factory):
        await seed.tenant(monthly=10, purchased=5)

        resp = await client.post(
            "/api/v1/credits/salon-1/packs",
            json={"pack_id": "pack_small", "payment_ref": "pi_123"},
            headers=auth_headers,
        )

        assert resp.status_code == 200
        assert resp.json()["purchased"] == 105
        assert resp.json()["monthly"] == 10

        async with session_factory() as session:
            events = await AuditRepository(session, tenant_id="salon-1").query(action=AuditAction.CREDIT_PURCHASED)
        assert len(events) == 1
        assert events[0].actor == "payment_webhook"

    @pytest.mark.asyncio
    async def test_unknown_pack(self, client, auth_headers, seed):
        await seed.tenant()

        resp = await client.post(
            "/api/v1/credits/salon-1/packs",
            json={"pack_id": "pack_gigantic"},
            headers=auth_headers,
        )

        assert resp.status_code == 400
        assert "pack_gigantic" in resp.json()["detail"]

    @pytest.mark.asyncio
    async def test_unknown_tenant(self, client, auth_headers, session_factory):
        resp = await client.post(
            "/api/v1/credits/ghost/packs",
            json={"pack_id": "pack_small"},
            headers=auth_headers,
        )
        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_missing_pack_id(self, client, auth_headers, seed):
        await seed.tenant()
        resp = await client.post("/api/v1/credits/salon-1/packs", json={}, headers=auth_headers)
        assert resp.status_code == 422


class TestTransactions:
    @pytest.mark.asyncio
    async def test_lists_newest_first(self, client, auth_headers, seed):
        await seed.tenant(monthly=10)
        for pack in ("pack_small", "pack_medium"):
            resp = await client.post(
                "/api/v1/credits/salon-1/packs",
                json={"pack_id": pack},
                headers=auth_headers,
            )
            assert resp.status_code == 200

        resp = await client.get("/api/v1/credits/salon-1/transactions", headers=auth_headers)

        assert resp.status_code == 200
        data = resp.json()
        assert data["tenant_id"] == "salon-1"
        amounts = [t["amount"] for t in data["transactions"]]
        assert amounts == [500, 100]
        assert all(t["operation"] == "purchase" for t in data["transactions"])
        assert data["transactions"][0]["balance_after"] == 610

    @pytest.mark.asyncio
    async def test_limit(self, client, auth_headers, seed):
        await seed.tenant(monthly=10)
        for _ in range(3):
            await client.post(
                "/api/v1/credits/salon-1/packs",
                json={"pack_id": "pack_small"},
                headers=auth_headers,
            )

        resp = await client.get("/api/v1/credits/salon-1/transactions?limit=2", headers=auth_headers)

        assert len(resp.json()["transactions"]) == 2

    @pytest.mark.asyncio
    async def test_limit_out_of_range(self, client, auth_headers, seed):
        await seed.tenant()
        resp = await client.get("/api/v1/credits/salon-1/transactions?limit=0", headers=auth_headers)
        assert resp.status_code == 422
