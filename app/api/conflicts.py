"""Sync conflict endpoints."""

import logging
from fastapi import APIRouter, Depends, HTTPException, Query

from app.api.deps import get_sync_service
from app.schemas.nutrition import PendingConflict
from app.schemas.responses import ActionResponse, AutoResolveResponse, ResolveConflictRequest
from app.services.nutrition_sync import NutritionSyncService
from app.services.providers import is_supported_provider

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/conflicts", tags=["conflicts"])


@router.get("", response_model=list[PendingConflict])
async def pending_conflicts(
    user_id: str = Query(..., min_length=1),
    service: NutritionSyncService = Depends(get_sync_service),
):
    """Unresolved conflicts, newest first."""
    return await service.get_pending_conflicts(user_id)


@router.post("/auto-resolve", response_model=AutoResolveResponse)
async def auto_resolve(
    provider: str,
    user_id: str = Query(..., min_length=1),
    service: NutritionSyncService = Depends(get_sync_service),
):
    """Resolve a provider's pending conflicts using its conflict policy."""
    if not is_supported_provider(provider):
        raise HTTPException(status_code=404, detail=f"Unsupported provider: {provider}")
    resolved = await service.auto_resolve_conflicts(user_id, provider)
    return AutoResolveResponse(provider=provider, resolved=resolved)


@router.post("/{conflict_id}/resolve", response_model=ActionResponse)
async def resolve_conflict(
    conflict_id: int,
    request: ResolveConflictRequest,
    service: NutritionSyncService = Depends(get_sync_service),
):
    """Resolve one conflict; apply=true also updates the local meal."""
    if not await service.resolve_sync_conflict(conflict_id, request.resolution, apply=request.apply):
        raise HTTPException(status_code=404, detail=f"Conflict {conflict_id} not found or already resolved")
    return ActionResponse(success=True, message=f"Conflict {conflict_id} resolved with {request.resolution}")
