"""Pydantic models shared by the sync service and the API."""

from datetime import datetime
from typing import Any, Literal
from pydantic import BaseModel, Field

NutritionProvider = Literal["myfitnesspal", "cronometer", "loseit", "fatsecret"]
MealType = Literal["breakfast", "lunch", "dinner", "snack"]
SyncDirection = Literal["export_only", "import_only", "bidirectional"]
SyncRequestDirection = Literal["export", "import", "both"]
ConflictPolicy = Literal["newest_wins", "external_wins", "local_wins", "manual"]
Resolution = Literal["use_local", "use_external", "merge"]


class NutritionEntry(BaseModel):
    """In-memory meal representation used while syncing."""
    id: str
    food_name: str
    meal_type: MealType = "snack"
    calories: float = 0
    carbs: float = 0
    protein: float = 0
    fat: float = 0
    fiber: float | None = None
    sugar: float | None = None
    sodium: float | None = None
    serving_size: str | None = None
    servings: float | None = None
    timestamp: datetime
    source: str = "local"
    external_id: str | None = None


class ProviderAuth(BaseModel):
    """Credentials handed over by the provider's OAuth flow."""
    access_token: str | None = None
    refresh_token: str | None = None
    expires_at: datetime | None = None


class SyncConfigInfo(BaseModel):
    provider: str
    sync_direction: SyncDirection = "bidirectional"
    auto_sync: bool = True
    sync_frequency_minutes: int = 60
    conflict_resolution: ConflictPolicy = "newest_wins"
    data_types: list[str] = ["nutrition"]


class SyncConfigUpdate(BaseModel):
    """Partial update; fields left as None are not changed."""
    sync_direction: SyncDirection | None = None
    auto_sync: bool | None = None
    sync_frequency_minutes: int | None = Field(default=None, ge=5, le=1440)
    conflict_resolution: ConflictPolicy | None = None


class ProviderConnectionInfo(BaseModel):
    id: int
    provider: str
    is_connected: bool
    last_sync_at: datetime | None
    sync_config: SyncConfigInfo
    error_count: int = 0
    last_error: str | None = None


class SyncResult(BaseModel):
    """Outcome of one sync pass. success is true iff errors is empty."""
    success: bool = False
    exported: int = 0
    imported: int = 0
    conflicts: int = 0
    errors: list[str] = []
    synced_at: datetime


class SyncHistoryEntry(BaseModel):
    id: int
    provider: str | None
    connection_id: int
    sync_type: str
    sync_direction: str
    data_type: str
    status: str
    started_at: datetime
    completed_at: datetime | None
    records_processed: int
    records_succeeded: int
    error_message: str | None = None


class PendingConflict(BaseModel):
    id: int
    provider: str | None
    connection_id: int
    sync_history_id: int | None
    data_type: str
    conflict_type: str
    external_record_id: str
    local_record_id: str | None
    local_data: dict[str, Any]
    external_data: dict[str, Any]
    suggested_resolution: Resolution | None = None
    created_at: datetime | None


class ProviderInfo(BaseModel):
    provider: str
    name: str
    description: str
    features: list[str]
    auth_url: str | None = None
