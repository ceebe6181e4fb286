"""Sync API endpoints."""

import logging
from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from app.api.deps import get_sync_service
from app.schemas.nutrition import NutritionEntry, SyncHistoryEntry, SyncResult
from app.schemas.responses import ActionResponse, ImportRequest, SyncRequest
from app.services.nutrition_sync import NutritionSyncService, in_flight
from app.services.providers import is_supported_provider

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/sync", tags=["sync"])


class SyncStatusResponse(BaseModel):
    provider: str
    is_running: bool


def _require_supported(provider: str) -> None:
    if not is_supported_provider(provider):
        raise HTTPException(status_code=404, detail=f"Unsupported provider: {provider}")


@router.get("/history", response_model=list[SyncHistoryEntry])
async def sync_history(
    user_id: str = Query(..., min_length=1),
    provider: str | None = None,
    limit: int = Query(20, ge=1, le=200),
    service: NutritionSyncService = Depends(get_sync_service),
):
    """Most recent sync attempts, optionally for one provider."""
    return await service.get_sync_history(user_id, provider, limit)


@router.get("/{provider}/status", response_model=SyncStatusResponse)
async def sync_status(provider: str, user_id: str = Query(..., min_length=1)):
    """Whether a sync pass is running for this user and provider."""
    _require_supported(provider)
    return SyncStatusResponse(provider=provider, is_running=in_flight.is_running(user_id, provider))


@router.post("/{provider}", response_model=SyncResult)
async def sync_provider(
    provider: str,
    request: SyncRequest,
    user_id: str = Query(..., min_length=1),
    service: NutritionSyncService = Depends(get_sync_service),
):
    """Run a sync pass and return its outcome."""
    _require_supported(provider)
    if not in_flight.try_acquire(user_id, provider):
        raise HTTPException(
            status_code=409,
            detail=f"A {provider} sync is already running for this user.",
        )

    try:
        return await service.sync_nutrition_data(
            user_id,
            provider,
            start_date=request.start_date,
            end_date=request.end_date,
            direction=request.direction,
        )
    finally:
        in_flight.release(user_id, provider)


@router.post("/{provider}/export", response_model=ActionResponse)
async def export_meal(
    provider: str,
    meal: NutritionEntry,
    user_id: str = Query(..., min_length=1),
    service: NutritionSyncService = Depends(get_sync_service),
):
    """Export a single meal right away."""
    _require_supported(provider)
    if not await service.export_meal_to_provider(user_id, provider, meal):
        raise HTTPException(status_code=502, detail=f"Could not export meal {meal.id} to {provider}")
    return ActionResponse(success=True, message=f"Exported meal {meal.id} to {provider}")


@router.post("/{provider}/import", response_model=list[NutritionEntry])
async def import_meals(
    provider: str,
    request: ImportRequest,
    user_id: str = Query(..., min_length=1),
    service: NutritionSyncService = Depends(get_sync_service),
):
    """Import new meals from a provider and return them."""
    _require_supported(provider)
    return await service.import_meals_from_provider(user_id, provider, request.start_date, request.end_date)
