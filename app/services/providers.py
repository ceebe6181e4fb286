"""Nutrition provider adapters."""

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Optional
import httpx

from app.core.config import Settings
from app.models.database import ProviderConnection
from app.schemas.nutrition import NutritionEntry, ProviderInfo

logger = logging.getLogger(__name__)

SUPPORTED_PROVIDERS = ("myfitnesspal", "cronometer", "loseit", "fatsecret")

PROVIDER_INFO: dict[str, dict[str, Any]] = {
    "myfitnesspal": {
        "name": "MyFitnessPal",
        "description": "Sync your food diary with one of the most popular nutrition tracking apps",
        "features": ["Food diary sync", "Barcode database", "Recipe import", "Goal tracking"],
    },
    "cronometer": {
        "name": "Cronometer",
        "description": "Comprehensive nutrition tracking with detailed micronutrient data",
        "features": ["Detailed micronutrients", "Food diary sync", "Biometric tracking", "Custom foods"],
    },
    "loseit": {
        "name": "Lose It!",
        "description": "Weight loss focused nutrition tracking and goal setting",
        "features": ["Calorie tracking", "Weight goals", "Food photos", "Community support"],
    },
    "fatsecret": {
        "name": "FatSecret",
        "description": "Free calorie counter and diet tracker with food database",
        "features": ["Food diary", "Exercise logging", "Community recipes", "Barcode scanner"],
    },
}


class ProviderError(Exception):
    """Raised when a provider call fails."""
    pass


class ProviderAuthError(ProviderError):
    """Raised when the provider rejects the connection's credentials."""
    pass


def is_supported_provider(provider: str) -> bool:
    return provider in SUPPORTED_PROVIDERS


def get_provider_info(provider: str) -> ProviderInfo:
    """Display information for a provider."""
    if provider not in PROVIDER_INFO:
        raise ValueError(f"Unsupported provider: {provider}")
    return ProviderInfo(provider=provider, **PROVIDER_INFO[provider])


class ProviderAdapter(ABC):
    """Moves meal records to and from an external nutrition provider."""

    @abstractmethod
    async def fetch_meals(
        self,
        provider: str,
        connection: ProviderConnection,
        start_date: datetime,
        end_date: datetime,
    ) -> list[dict[str, Any]]:
        """Return the provider's raw meal records logged in [start_date, end_date]."""

    @abstractmethod
    async def send_meal(
        self,
        provider: str,
        connection: ProviderConnection,
        meal: NutritionEntry,
    ) -> str:
        """Send one meal and return the provider's id for it."""

    async def close(self):
        """Release any held resources."""
        return None


class StubProviderAdapter(ProviderAdapter):
    """Adapter used when no provider gateway is configured.

    Fetches nothing and acknowledges every send with a synthetic id.
    """

    async def fetch_meals(self, provider, connection, start_date, end_date):
        return []

    async def send_meal(self, provider, connection, meal):
        return f"{provider}_{meal.id}_{int(datetime.utcnow().timestamp() * 1000)}"


class GatewayProviderAdapter(ProviderAdapter):
    """Async client for a provider gateway exposing a uniform meal API.

    GET  {base_url}/providers/{provider}/meals?start=...&end=...
    POST {base_url}/providers/{provider}/meals
    """

    def __init__(self, base_url: str, timeout: float = 30.0, transport: httpx.AsyncBaseTransport | None = None):
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.transport = transport
        self.client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create async HTTP client."""
        if self.client is None:
            self.client = httpx.AsyncClient(timeout=self.timeout, transport=self.transport)
        return self.client

    async def close(self):
        """Close the HTTP client."""
        if self.client:
            await self.client.aclose()
            self.client = None

    def _headers(self, connection: ProviderConnection) -> dict[str, str]:
        if not connection.access_token:
            raise ProviderAuthError(f"No access token for {connection.provider}")
        return {"Authorization": f"Bearer {connection.access_token}"}

    def _raise_for_status(self, response: httpx.Response, context: str) -> None:
        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            if status in (401, 403):
                raise ProviderAuthError(f"{context}: authorization rejected (HTTP {status})") from e
            raise ProviderError(f"{context}: HTTP {status}: {e.response.text[:200]}") from e

    async def fetch_meals(self, provider, connection, start_date, end_date):
        context = f"fetch_meals ({provider})"
        client = await self._get_client()
        try:
            response = await client.get(
                f"{self.base_url}/providers/{provider}/meals",
                params={"start": start_date.isoformat(), "end": end_date.isoformat()},
                headers=self._headers(connection),
            )
        except httpx.HTTPError as e:
            raise ProviderError(f"{context}: {e}") from e

        self._raise_for_status(response, context)

        try:
            payload = response.json()
        except ValueError as e:
            raise ProviderError(f"{context}: invalid JSON: {response.text[:200]}") from e

        # Gateways answer either with a bare list or {"meals": [...]}
        if isinstance(payload, dict):
            payload = payload.get("meals", [])
        if not isinstance(payload, list):
            raise ProviderError(f"{context}: unexpected payload type {type(payload).__name__}")

        logger.info(f"Fetched {len(payload)} meals from {provider}")
        return payload

    async def send_meal(self, provider, connection, meal):
        context = f"send_meal ({provider})"
        client = await self._get_client()
        try:
            response = await client.post(
                f"{self.base_url}/providers/{provider}/meals",
                json=meal.model_dump(mode="json"),
                headers=self._headers(connection),
            )
        except httpx.HTTPError as e:
            raise ProviderError(f"{context}: {e}") from e

        self._raise_for_status(response, context)

        try:
            external_id = response.json().get("id")
        except (ValueError, AttributeError) as e:
            raise ProviderError(f"{context}: invalid JSON: {response.text[:200]}") from e

        if not external_id:
            raise ProviderError(f"{context}: response has no record id")
        return str(external_id)


def create_provider_adapter(settings: Settings) -> ProviderAdapter:
    """Build the adapter selected by configuration."""
    if settings.provider_gateway_url:
        logger.info(f"Using provider gateway at {settings.provider_gateway_url}")
        return GatewayProviderAdapter(settings.provider_gateway_url, settings.provider_gateway_timeout)
    logger.info("No provider gateway configured, using stub adapter")
    return StubProviderAdapter()
