"""Tests for provider adapters and the provider catalogue."""

import json
from datetime import datetime

import httpx
import pytest

from app.core.config import Settings
from app.models.database import ProviderConnection
from app.schemas.nutrition import NutritionEntry
from app.services.providers import (
    SUPPORTED_PROVIDERS,
    GatewayProviderAdapter,
    ProviderAuthError,
    ProviderError,
    StubProviderAdapter,
    create_provider_adapter,
    get_provider_info,
    is_supported_provider,
)

START = datetime(2025, 3, 10)
END = datetime(2025, 3, 10, 23, 59)


def connection(token="tok"):
    return ProviderConnection(user_id="user-1", provider="cronometer", access_token=token)


def entry():
    return NutritionEntry(id="12", food_name="Oatmeal", calories=200, timestamp=datetime(2025, 3, 10, 8, 0))


def gateway(handler):
    return GatewayProviderAdapter("http://gateway.test/", transport=httpx.MockTransport(handler))


class TestProviderCatalogue:

    def test_supported_providers(self):
        assert SUPPORTED_PROVIDERS == ("myfitnesspal", "cronometer", "loseit", "fatsecret")
        assert is_supported_provider("loseit")
        assert not is_supported_provider("fitbit")

    def test_provider_info(self):
        info = get_provider_info("cronometer")
        assert info.provider == "cronometer"
        assert info.name == "Cronometer"
        assert "Food diary sync" in info.features

    def test_unknown_provider_info_raises(self):
        with pytest.raises(ValueError):
            get_provider_info("fitbit")


class TestStubProviderAdapter:

    @pytest.mark.asyncio
    async def test_fetch_returns_nothing(self):
        adapter = StubProviderAdapter()
        assert await adapter.fetch_meals("cronometer", connection(), START, END) == []

    @pytest.mark.asyncio
    async def test_send_returns_synthetic_id(self):
        external_id = await StubProviderAdapter().send_meal("cronometer", connection(), entry())
        assert external_id.startswith("cronometer_12_")


class TestCreateProviderAdapter:

    def test_stub_without_gateway(self):
        assert isinstance(create_provider_adapter(Settings(provider_gateway_url=None)), StubProviderAdapter)

    def test_gateway_when_configured(self):
        adapter = create_provider_adapter(Settings(provider_gateway_url="http://gateway.test"))
        assert isinstance(adapter, GatewayProviderAdapter)
        assert adapter.base_url == "http://gateway.test"


class TestGatewayProviderAdapter:

    @pytest.mark.asyncio
    async def test_fetch_meals_sends_window_and_token(self):
        seen = {}

        def handler(request):
            seen["url"] = request.url
            seen["auth"] = request.headers["Authorization"]
            return httpx.Response(200, json=[{"id": "ext-1", "name": "Oatmeal"}])

        adapter = gateway(handler)
        meals = await adapter.fetch_meals("cronometer", connection(), START, END)
        await adapter.close()

        assert meals == [{"id": "ext-1", "name": "Oatmeal"}]
        assert seen["url"].path == "/providers/cronometer/meals"
        assert seen["url"].params["start"] == "2025-03-10T00:00:00"
        assert seen["url"].params["end"] == "2025-03-10T23:59:00"
        assert seen["auth"] == "Bearer tok"

    @pytest.mark.asyncio
    async def test_fetch_meals_accepts_wrapped_payload(self):
        adapter = gateway(lambda request: httpx.Response(200, json={"meals": [{"id": "ext-1"}]}))
        assert await adapter.fetch_meals("cronometer", connection(), START, END) == [{"id": "ext-1"}]

    @pytest.mark.asyncio
    async def test_fetch_meals_rejected_credentials(self):
        adapter = gateway(lambda request: httpx.Response(401, text="expired"))
        with pytest.raises(ProviderAuthError):
            await adapter.fetch_meals("cronometer", connection(), START, END)

    @pytest.mark.asyncio
    async def test_fetch_meals_server_error(self):
        adapter = gateway(lambda request: httpx.Response(503, text="down"))
        with pytest.raises(ProviderError, match="HTTP 503"):
            await adapter.fetch_meals("cronometer", connection(), START, END)

    @pytest.mark.asyncio
    async def test_fetch_meals_invalid_json(self):
        adapter = gateway(lambda request: httpx.Response(200, text="<html>"))
        with pytest.raises(ProviderError, match="invalid JSON"):
            await adapter.fetch_meals("cronometer", connection(), START, END)

    @pytest.mark.asyncio
    async def test_transport_error_wrapped(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        adapter = gateway(handler)
        with pytest.raises(ProviderError, match="connection refused"):
            await adapter.fetch_meals("cronometer", connection(), START, END)

    @pytest.mark.asyncio
    async def test_missing_token_raises_auth_error(self):
        adapter = gateway(lambda request: httpx.Response(200, json=[]))
        with pytest.raises(ProviderAuthError):
            await adapter.fetch_meals("cronometer", connection(token=None), START, END)

    @pytest.mark.asyncio
    async def test_send_meal_posts_entry(self):
        seen = {}

        def handler(request):
            seen["method"] = request.method
            seen["body"] = json.loads(request.content)
            return httpx.Response(201, json={"id": 9001})

        adapter = gateway(handler)
        external_id = await adapter.send_meal("cronometer", connection(), entry())

        assert external_id == "9001"
        assert seen["method"] == "POST"
        assert seen["body"]["id"] == "12"
        assert seen["body"]["food_name"] == "Oatmeal"
        assert seen["body"]["timestamp"] == "2025-03-10T08:00:00"

    @pytest.mark.asyncio
    async def test_send_meal_without_id_in_response(self):
        adapter = gateway(lambda request: httpx.Response(200, json={}))
        with pytest.raises(ProviderError, match="no record id"):
            await adapter.send_meal("cronometer", connection(), entry())

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self):
        adapter = gateway(lambda request: httpx.Response(200, json=[]))
        await adapter.fetch_meals("cronometer", connection(), START, END)
        await adapter.close()
        await adapter.close()
        assert adapter.client is None
