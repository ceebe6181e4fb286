from datetime import datetime
from sqlalchemy import (
    Column,
    Integer,
    String,
    Text,
    Boolean,
    DateTime,
    Float,
    JSON,
    ForeignKey,
    UniqueConstraint,
)
from app.core.database import Base


class ProviderConnection(Base):
    """A user's link to one third-party nutrition provider."""

    __tablename__ = "health_app_connections"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, nullable=False, index=True)
    provider = Column(String, nullable=False)  # "myfitnesspal", "cronometer", "loseit", "fatsecret"
    is_active = Column(Boolean, nullable=False, default=True)
    access_token = Column(Text, nullable=True)
    refresh_token = Column(Text, nullable=True)
    token_expires_at = Column(DateTime, nullable=True)
    scopes = Column(JSON, nullable=True)
    connection_metadata = Column(JSON, nullable=True)
    error_count = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    last_sync_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (UniqueConstraint("user_id", "provider", name="uix_connection_user_provider"),)


class SyncConfiguration(Base):
    """Per-connection, per-data-type sync settings."""

    __tablename__ = "sync_configurations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, nullable=False, index=True)
    connection_id = Column(Integer, ForeignKey("health_app_connections.id"), nullable=False)
    data_type = Column(String, nullable=False, default="nutrition")
    sync_direction = Column(String, nullable=False, default="bidirectional")  # "export_only", "import_only", "bidirectional"
    is_enabled = Column(Boolean, nullable=False, default=True)
    sync_frequency_minutes = Column(Integer, nullable=False, default=60)
    conflict_resolution = Column(String, nullable=False, default="newest_wins")
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (UniqueConstraint("connection_id", "data_type", name="uix_config_connection_type"),)


class MealLog(Base):
    """A locally logged meal."""

    __tablename__ = "meal_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, nullable=False, index=True)
    food_name = Column(String, nullable=False)
    meal_type = Column(String, nullable=False, default="snack")
    calories = Column(Float, nullable=False, default=0)
    carbs = Column(Float, nullable=False, default=0)
    protein = Column(Float, nullable=False, default=0)
    fat = Column(Float, nullable=False, default=0)
    fiber = Column(Float, nullable=True)
    sugars = Column(Float, nullable=True)
    sodium = Column(Float, nullable=True)
    portion_size = Column(String, nullable=True)
    servings = Column(Float, nullable=True)
    logged_at = Column(DateTime, nullable=False, index=True)
    source = Column(String, nullable=False, default="local")  # "local" or the provider it came from
    external_id = Column(String, nullable=True)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class ExportedHealthData(Base):
    """Marker proving a local record was sent to a provider."""

    __tablename__ = "exported_health_data"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, nullable=False)
    connection_id = Column(Integer, ForeignKey("health_app_connections.id"), nullable=False)
    sync_history_id = Column(Integer, ForeignKey("health_sync_history.id"), nullable=True)
    data_type = Column(String, nullable=False, default="nutrition")
    local_record_id = Column(String, nullable=False)
    local_table_name = Column(String, nullable=False, default="meal_logs")
    external_record_id = Column(String, nullable=True)
    exported_data = Column(JSON, nullable=True)
    export_status = Column(String, nullable=False, default="pending")  # "pending", "confirmed"
    exported_at = Column(DateTime, default=datetime.utcnow)
    confirmed_at = Column(DateTime, nullable=True)

    __table_args__ = (UniqueConstraint("connection_id", "local_record_id", name="uix_export_connection_record"),)


class ImportedHealthData(Base):
    """Marker proving an external record was brought in (or settled by a conflict)."""

    __tablename__ = "imported_health_data"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, nullable=False)
    connection_id = Column(Integer, ForeignKey("health_app_connections.id"), nullable=False)
    sync_history_id = Column(Integer, ForeignKey("health_sync_history.id"), nullable=True)
    data_type = Column(String, nullable=False, default="nutrition")
    external_record_id = Column(String, nullable=False)
    local_record_id = Column(String, nullable=True)
    local_table_name = Column(String, nullable=False, default="meal_logs")
    imported_data = Column(JSON, nullable=True)
    import_status = Column(String, nullable=False, default="pending")  # "pending", "stored", "resolved", "linked"
    imported_at = Column(DateTime, default=datetime.utcnow)
    processed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint(
            "connection_id", "external_record_id", "data_type", name="uix_import_connection_record_type"
        ),
    )


class HealthSyncConflict(Base):
    """A local/external record pair awaiting resolution."""

    __tablename__ = "health_sync_conflicts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, nullable=False, index=True)
    connection_id = Column(Integer, ForeignKey("health_app_connections.id"), nullable=False)
    sync_history_id = Column(Integer, ForeignKey("health_sync_history.id"), nullable=True)
    data_type = Column(String, nullable=False, default="nutrition")
    external_record_id = Column(String, nullable=False)
    local_record_id = Column(String, nullable=True)
    local_data = Column(JSON, nullable=False)
    external_data = Column(JSON, nullable=False)
    conflict_type = Column(String, nullable=False, default="duplicate_entry")
    is_resolved = Column(Boolean, nullable=False, default=False)
    resolved_at = Column(DateTime, nullable=True)
    resolved_by = Column(String, nullable=True)  # "use_local", "use_external", "merge"
    resolution_data = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint(
            "connection_id", "external_record_id", "data_type", name="uix_conflict_connection_record_type"
        ),
    )
