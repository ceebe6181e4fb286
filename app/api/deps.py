"""Shared FastAPI dependencies."""

from datetime import timedelta
from functools import lru_cache
from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import get_settings
from app.core.database import get_db
from app.services.nutrition_sync import NutritionSyncService
from app.services.providers import ProviderAdapter, create_provider_adapter
from app.services.repositories import SyncRepositories


@lru_cache()
def get_provider_adapter() -> ProviderAdapter:
    """Process-wide provider adapter."""
    return create_provider_adapter(get_settings())


async def get_sync_service(db: AsyncSession = Depends(get_db)) -> NutritionSyncService:
    """Create a sync service bound to the request's session."""
    settings = get_settings()
    return NutritionSyncService(
        SyncRepositories.from_session(db),
        get_provider_adapter(),
        conflict_window=timedelta(minutes=settings.conflict_window_minutes),
        default_window=timedelta(hours=settings.default_sync_window_hours),
    )
