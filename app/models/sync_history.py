"""Sync history model for auditing sync attempts."""

from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, Text, JSON, ForeignKey

from app.core.database import Base


class SyncHistory(Base):
    """One row per sync invocation."""

    __tablename__ = "health_sync_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, nullable=False, index=True)
    connection_id = Column(Integer, ForeignKey("health_app_connections.id"), nullable=False)
    sync_type = Column(String, nullable=False, default="manual")  # "manual", "scheduled"
    sync_direction = Column(String, nullable=False)  # "export_only", "import_only", "bidirectional"
    data_type = Column(String, nullable=False, default="nutrition")
    status = Column(String, nullable=False, default="in_progress")  # "in_progress", "completed", "partial", "failed"
    started_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    completed_at = Column(DateTime, nullable=True)
    records_processed = Column(Integer, nullable=False, default=0)
    records_succeeded = Column(Integer, nullable=False, default=0)
    details = Column(JSON, nullable=True)
    error_message = Column(Text, nullable=True)
