from fastapi import APIRouter
from pydantic import BaseModel

from app.core.config import get_settings

router = APIRouter(prefix="/api", tags=["config"])


class HealthResponse(BaseModel):
    status: str
    version: str


class ConfigResponse(BaseModel):
    db_path: str
    provider_gateway_url: str | None
    default_sync_window_hours: int
    conflict_window_minutes: int
    auto_sync_enabled: bool
    auto_sync_check_minutes: int
    debug: bool


@router.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """Health check endpoint."""
    return HealthResponse(status="ok", version="0.1.0")


@router.get("/config", response_model=ConfigResponse)
async def get_config() -> ConfigResponse:
    """Get current configuration."""
    settings = get_settings()
    return ConfigResponse(
        db_path=settings.db_path,
        provider_gateway_url=settings.provider_gateway_url,
        default_sync_window_hours=settings.default_sync_window_hours,
        conflict_window_minutes=settings.conflict_window_minutes,
        auto_sync_enabled=settings.auto_sync_enabled,
        auto_sync_check_minutes=settings.auto_sync_check_minutes,
        debug=settings.debug,
    )
