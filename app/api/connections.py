"""Provider catalogue and connection management endpoints."""

import logging
from fastapi import APIRouter, Depends, HTTPException, Query

from app.api.deps import get_sync_service
from app.schemas.nutrition import (
    ProviderAuth,
    ProviderConnectionInfo,
    ProviderInfo,
    SyncConfigUpdate,
)
from app.schemas.responses import ActionResponse
from app.services.nutrition_sync import NutritionSyncService
from app.services.providers import SUPPORTED_PROVIDERS, get_provider_info, is_supported_provider

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["connections"])


def _require_supported(provider: str) -> None:
    if not is_supported_provider(provider):
        raise HTTPException(status_code=404, detail=f"Unsupported provider: {provider}")


@router.get("/providers", response_model=list[ProviderInfo])
async def list_providers():
    """Every provider that can be connected."""
    return [get_provider_info(provider) for provider in SUPPORTED_PROVIDERS]


@router.get("/providers/{provider}", response_model=ProviderInfo)
async def provider_detail(provider: str):
    _require_supported(provider)
    return get_provider_info(provider)


@router.get("/connections", response_model=list[ProviderConnectionInfo])
async def list_connections(
    user_id: str = Query(..., min_length=1),
    service: NutritionSyncService = Depends(get_sync_service),
):
    """The user's provider connections, active or not."""
    return await service.get_connected_providers(user_id)


@router.put("/connections/{provider}", response_model=ActionResponse)
async def connect_provider(
    provider: str,
    auth: ProviderAuth,
    user_id: str = Query(..., min_length=1),
    service: NutritionSyncService = Depends(get_sync_service),
):
    """Connect (or reconnect) a provider with the tokens from its OAuth flow."""
    _require_supported(provider)
    if not await service.connect_provider(user_id, provider, auth):
        raise HTTPException(status_code=500, detail=f"Could not connect {provider}")
    return ActionResponse(success=True, message=f"Connected {provider}")


@router.delete("/connections/{provider}", response_model=ActionResponse)
async def disconnect_provider(
    provider: str,
    user_id: str = Query(..., min_length=1),
    service: NutritionSyncService = Depends(get_sync_service),
):
    """Disconnect a provider. Sync history and conflicts are kept."""
    _require_supported(provider)
    if not await service.disconnect_provider(user_id, provider):
        raise HTTPException(status_code=500, detail=f"Could not disconnect {provider}")
    return ActionResponse(success=True, message=f"Disconnected {provider}")


@router.patch("/connections/{provider}/config", response_model=ActionResponse)
async def update_sync_config(
    provider: str,
    update: SyncConfigUpdate,
    user_id: str = Query(..., min_length=1),
    service: NutritionSyncService = Depends(get_sync_service),
):
    """Change direction, frequency or conflict policy of a connection."""
    _require_supported(provider)
    if not await service.update_sync_config(user_id, provider, update):
        raise HTTPException(status_code=404, detail=f"No active {provider} connection to configure")
    return ActionResponse(success=True, message=f"Updated {provider} sync settings")
