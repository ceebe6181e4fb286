"""Tests for provider catalogue and connection endpoints."""

import httpx
import pytest
from fastapi import FastAPI
from sqlalchemy import select

from app.api.connections import router
from app.api.deps import get_sync_service
from app.models.database import ProviderConnection, SyncConfiguration
from app.services.nutrition_sync import NutritionSyncService
from app.services.repositories import SyncRepositories

from tests.fakes import USER_ID


def _make_test_app(session, adapter):
    app = FastAPI()
    app.include_router(router)

    async def override_get_sync_service():
        return NutritionSyncService(SyncRepositories.from_session(session), adapter)

    app.dependency_overrides[get_sync_service] = override_get_sync_service
    return app


def _client(app):
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test")


class TestProviderCatalogue:

    @pytest.mark.asyncio
    async def test_lists_all_providers(self, async_session, adapter):
        async with _client(_make_test_app(async_session, adapter)) as client:
            resp = await client.get("/api/providers")

        assert resp.status_code == 200
        assert [p["provider"] for p in resp.json()] == ["myfitnesspal", "cronometer", "loseit", "fatsecret"]

    @pytest.mark.asyncio
    async def test_provider_detail(self, async_session, adapter):
        async with _client(_make_test_app(async_session, adapter)) as client:
            ok = await client.get("/api/providers/fatsecret")
            missing = await client.get("/api/providers/fitbit")

        assert ok.json()["name"] == "FatSecret"
        assert missing.status_code == 404


class TestConnections:

    @pytest.mark.asyncio
    async def test_connect_and_list(self, async_session, adapter):
        async with _client(_make_test_app(async_session, adapter)) as client:
            put = await client.put(
                f"/api/connections/cronometer?user_id={USER_ID}",
                json={"access_token": "tok", "refresh_token": "ref"},
            )
            listed = await client.get(f"/api/connections?user_id={USER_ID}")

        assert put.status_code == 200
        assert put.json()["success"] is True
        [connection] = listed.json()
        assert connection["provider"] == "cronometer"
        assert connection["is_connected"] is True
        assert connection["sync_config"]["conflict_resolution"] == "newest_wins"
        assert "access_token" not in connection

    @pytest.mark.asyncio
    async def test_connect_unsupported_provider_404(self, async_session, adapter):
        async with _client(_make_test_app(async_session, adapter)) as client:
            resp = await client.put(f"/api/connections/fitbit?user_id={USER_ID}", json={})
        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_disconnect(self, async_session, adapter):
        async with _client(_make_test_app(async_session, adapter)) as client:
            await client.put(f"/api/connections/loseit?user_id={USER_ID}", json={"access_token": "tok"})
            resp = await client.delete(f"/api/connections/loseit?user_id={USER_ID}")

        assert resp.status_code == 200
        connection = (await async_session.execute(select(ProviderConnection))).scalar_one()
        assert connection.is_active is False
        assert connection.access_token is None

    @pytest.mark.asyncio
    async def test_update_config(self, async_session, adapter):
        async with _client(_make_test_app(async_session, adapter)) as client:
            await client.put(f"/api/connections/cronometer?user_id={USER_ID}", json={})
            resp = await client.patch(
                f"/api/connections/cronometer/config?user_id={USER_ID}",
                json={"sync_direction": "export_only", "sync_frequency_minutes": 120},
            )

        assert resp.status_code == 200
        config = (await async_session.execute(select(SyncConfiguration))).scalar_one()
        assert config.sync_direction == "export_only"
        assert config.sync_frequency_minutes == 120

    @pytest.mark.asyncio
    async def test_update_config_without_connection_404(self, async_session, adapter):
        async with _client(_make_test_app(async_session, adapter)) as client:
            resp = await client.patch(
                f"/api/connections/cronometer/config?user_id={USER_ID}",
                json={"auto_sync": False},
            )
        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_update_config_validates_frequency(self, async_session, adapter):
        async with _client(_make_test_app(async_session, adapter)) as client:
            resp = await client.patch(
                f"/api/connections/cronometer/config?user_id={USER_ID}",
                json={"sync_frequency_minutes": 1},
            )
        assert resp.status_code == 422
