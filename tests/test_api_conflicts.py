"""Tests for conflict and meal log endpoints."""

from datetime import timedelta

import httpx
import pytest
from fastapi import FastAPI

from app.api import conflicts, meals
from app.api.deps import get_sync_service
from app.core.database import get_db
from app.services.nutrition_sync import NutritionSyncService
from app.services.repositories import SyncRepositories

from tests.fakes import USER_ID, FakeProviderAdapter, add_meal


def _make_test_app(session, adapter):
    app = FastAPI()
    app.include_router(conflicts.router)
    app.include_router(meals.router)

    async def override_get_db():
        yield session

    async def override_get_sync_service():
        return NutritionSyncService(SyncRepositories.from_session(session), adapter)

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_sync_service] = override_get_sync_service
    return app


def _client(app):
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test")


async def _conflicted(session, day):
    await add_meal(session, "Oatmeal", day + timedelta(hours=8), calories=200, carbs=40)
    adapter = FakeProviderAdapter([
        {"id": "ext-oat", "name": "Oatmeal", "timestamp": (day + timedelta(hours=8, minutes=20)).isoformat(),
         "calories": 220, "carbs": 44},
    ])
    service = NutritionSyncService(SyncRepositories.from_session(session), adapter)
    await service.connect_provider(USER_ID, "cronometer")
    await service.sync_nutrition_data(
        USER_ID, "cronometer", start_date=day, end_date=day + timedelta(hours=23), direction="import"
    )
    return adapter


class TestConflictEndpoints:

    @pytest.mark.asyncio
    async def test_list_pending(self, async_session, day):
        adapter = await _conflicted(async_session, day)
        async with _client(_make_test_app(async_session, adapter)) as client:
            resp = await client.get(f"/api/conflicts?user_id={USER_ID}")

        assert resp.status_code == 200
        [conflict] = resp.json()
        assert conflict["provider"] == "cronometer"
        assert conflict["external_record_id"] == "ext-oat"
        assert conflict["suggested_resolution"] == "use_external"
        assert conflict["local_data"]["food_name"] == "Oatmeal"

    @pytest.mark.asyncio
    async def test_resolve(self, async_session, day):
        adapter = await _conflicted(async_session, day)
        async with _client(_make_test_app(async_session, adapter)) as client:
            [conflict] = (await client.get(f"/api/conflicts?user_id={USER_ID}")).json()
            resp = await client.post(f"/api/conflicts/{conflict['id']}/resolve", json={"resolution": "merge"})
            again = await client.post(f"/api/conflicts/{conflict['id']}/resolve", json={"resolution": "merge"})
            pending = await client.get(f"/api/conflicts?user_id={USER_ID}")

        assert resp.status_code == 200
        assert resp.json()["success"] is True
        assert again.status_code == 404
        assert pending.json() == []

    @pytest.mark.asyncio
    async def test_resolve_rejects_unknown_resolution(self, async_session, adapter):
        async with _client(_make_test_app(async_session, adapter)) as client:
            resp = await client.post("/api/conflicts/1/resolve", json={"resolution": "flip_a_coin"})
        assert resp.status_code == 422

    @pytest.mark.asyncio
    async def test_resolve_missing_conflict_404(self, async_session, adapter):
        async with _client(_make_test_app(async_session, adapter)) as client:
            resp = await client.post("/api/conflicts/999/resolve", json={"resolution": "use_local"})
        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_auto_resolve(self, async_session, day):
        adapter = await _conflicted(async_session, day)
        async with _client(_make_test_app(async_session, adapter)) as client:
            resp = await client.post(f"/api/conflicts/auto-resolve?provider=cronometer&user_id={USER_ID}")
            meals_resp = await client.get(
                f"/api/meals?user_id={USER_ID}&start={day.isoformat()}"
                f"&end={(day + timedelta(hours=23)).isoformat()}"
            )

        assert resp.json() == {"provider": "cronometer", "resolved": 1}
        [meal] = meals_resp.json()
        assert meal["calories"] == 220


class TestMealEndpoints:

    @pytest.mark.asyncio
    async def test_log_and_list_meal(self, async_session, adapter, day):
        async with _client(_make_test_app(async_session, adapter)) as client:
            created = await client.post(
                f"/api/meals?user_id={USER_ID}",
                json={
                    "food_name": "Lentil soup",
                    "meal_type": "lunch",
                    "calories": 320,
                    "protein": 18,
                    "logged_at": (day + timedelta(hours=12)).isoformat(),
                },
            )
            listed = await client.get(
                f"/api/meals?user_id={USER_ID}&start={day.isoformat()}"
                f"&end={(day + timedelta(hours=23)).isoformat()}"
            )

        assert created.status_code == 201
        body = created.json()
        assert body["food_name"] == "Lentil soup"
        assert body["source"] == "local"
        assert body["id"] != "new"
        assert [m["id"] for m in listed.json()] == [body["id"]]

    @pytest.mark.asyncio
    async def test_log_meal_validates_calories(self, async_session, adapter):
        async with _client(_make_test_app(async_session, adapter)) as client:
            resp = await client.post(f"/api/meals?user_id={USER_ID}", json={"food_name": "Air", "calories": -5})
        assert resp.status_code == 422

    @pytest.mark.asyncio
    async def test_list_rejects_inverted_window(self, async_session, adapter, day):
        async with _client(_make_test_app(async_session, adapter)) as client:
            resp = await client.get(
                f"/api/meals?user_id={USER_ID}&start={(day + timedelta(days=1)).isoformat()}&end={day.isoformat()}"
            )
        assert resp.status_code == 422
