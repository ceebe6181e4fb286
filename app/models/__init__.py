# Database models
from app.models.database import (
    ProviderConnection,
    SyncConfiguration,
    MealLog,
    ExportedHealthData,
    ImportedHealthData,
    HealthSyncConflict,
)
from app.models.sync_history import SyncHistory

__all__ = [
    "ProviderConnection",
    "SyncConfiguration",
    "MealLog",
    "ExportedHealthData",
    "ImportedHealthData",
    "HealthSyncConflict",
    "SyncHistory",
]
