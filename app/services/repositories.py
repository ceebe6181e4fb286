"""Repository layer over the sync tables.

Each repository wraps one AsyncSession; none of them commit. The caller
decides where a unit of work ends.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional
from sqlalchemy import select, delete, desc
from sqlalchemy.dialects.sqlite import insert
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.database import (
    ProviderConnection,
    SyncConfiguration,
    MealLog,
    ExportedHealthData,
    ImportedHealthData,
    HealthSyncConflict,
)
from app.models.sync_history import SyncHistory
from app.schemas.nutrition import NutritionEntry


DATA_TYPE = "nutrition"


class ConnectionRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, user_id: str, provider: str) -> Optional[ProviderConnection]:
        result = await self.session.execute(
            select(ProviderConnection).where(
                ProviderConnection.user_id == user_id,
                ProviderConnection.provider == provider,
            )
        )
        return result.scalar_one_or_none()

    async def get_active(self, user_id: str, provider: str) -> Optional[ProviderConnection]:
        connection = await self.get(user_id, provider)
        if connection is None or not connection.is_active:
            return None
        return connection

    async def list_for_user(self, user_id: str, providers: tuple[str, ...]) -> list[ProviderConnection]:
        result = await self.session.execute(
            select(ProviderConnection)
            .where(
                ProviderConnection.user_id == user_id,
                ProviderConnection.provider.in_(providers),
            )
            .order_by(ProviderConnection.id)
        )
        return list(result.scalars().all())

    async def upsert_active(
        self,
        user_id: str,
        provider: str,
        access_token: Optional[str],
        refresh_token: Optional[str],
        token_expires_at: Optional[datetime],
    ) -> ProviderConnection:
        """Create the connection, or reactivate and refresh an existing one."""
        now = datetime.utcnow()
        connection = await self.get(user_id, provider)
        if connection is None:
            connection = ProviderConnection(
                user_id=user_id,
                provider=provider,
                scopes=["read_nutrition", "write_nutrition"],
                connection_metadata={"connected_at": now.isoformat()},
                created_at=now,
            )
            self.session.add(connection)

        connection.is_active = True
        connection.access_token = access_token
        connection.refresh_token = refresh_token
        connection.token_expires_at = token_expires_at
        connection.error_count = 0
        connection.last_error = None
        connection.updated_at = now
        await self.session.flush()
        return connection

    async def deactivate(self, user_id: str, provider: str) -> Optional[ProviderConnection]:
        connection = await self.get(user_id, provider)
        if connection is None:
            return None
        connection.is_active = False
        connection.access_token = None
        connection.refresh_token = None
        connection.updated_at = datetime.utcnow()
        return connection

    async def record_sync(self, connection: ProviderConnection, errors: list[str]) -> None:
        """Advance the sync watermark and track connection health."""
        now = datetime.utcnow()
        connection.last_sync_at = now
        connection.updated_at = now
        if errors:
            connection.error_count = (connection.error_count or 0) + 1
            connection.last_error = errors[0]
        else:
            connection.error_count = 0
            connection.last_error = None

    async def record_error(self, connection: ProviderConnection, error: str) -> None:
        connection.error_count = (connection.error_count or 0) + 1
        connection.last_error = error
        connection.updated_at = datetime.utcnow()


class SyncConfigRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, connection_id: int) -> Optional[SyncConfiguration]:
        result = await self.session.execute(
            select(SyncConfiguration).where(
                SyncConfiguration.connection_id == connection_id,
                SyncConfiguration.data_type == DATA_TYPE,
            )
        )
        return result.scalar_one_or_none()

    async def ensure_default(self, connection: ProviderConnection) -> None:
        """Insert the default config unless one already exists."""
        now = datetime.utcnow()
        stmt = insert(SyncConfiguration).values(
            user_id=connection.user_id,
            connection_id=connection.id,
            data_type=DATA_TYPE,
            sync_direction="bidirectional",
            is_enabled=True,
            sync_frequency_minutes=60,
            conflict_resolution="newest_wins",
            created_at=now,
            updated_at=now,
        ).on_conflict_do_nothing(index_elements=["connection_id", "data_type"])
        await self.session.execute(stmt)

    async def list_for_connections(self, connection_ids: list[int]) -> dict[int, SyncConfiguration]:
        if not connection_ids:
            return {}
        result = await self.session.execute(
            select(SyncConfiguration).where(
                SyncConfiguration.connection_id.in_(connection_ids),
                SyncConfiguration.data_type == DATA_TYPE,
            )
        )
        return {config.connection_id: config for config in result.scalars().all()}

    async def list_due(self, now: datetime) -> list[tuple[ProviderConnection, SyncConfiguration]]:
        """Enabled configs of active connections whose last sync is older than their frequency."""
        result = await self.session.execute(
            select(ProviderConnection, SyncConfiguration)
            .join(SyncConfiguration, SyncConfiguration.connection_id == ProviderConnection.id)
            .where(
                ProviderConnection.is_active.is_(True),
                SyncConfiguration.is_enabled.is_(True),
                SyncConfiguration.data_type == DATA_TYPE,
            )
        )
        due = []
        for connection, config in result.all():
            last = connection.last_sync_at
            if last is None or now - last >= timedelta(minutes=config.sync_frequency_minutes):
                due.append((connection, config))
        return due


class MealLogRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, meal_id: int) -> Optional[MealLog]:
        return await self.session.get(MealLog, meal_id)

    async def list_for_user(self, user_id: str, start: datetime, end: datetime) -> list[MealLog]:
        result = await self.session.execute(
            select(MealLog)
            .where(
                MealLog.user_id == user_id,
                MealLog.logged_at >= start,
                MealLog.logged_at <= end,
            )
            .order_by(MealLog.logged_at, MealLog.id)
        )
        return list(result.scalars().all())

    async def find_conflict(
        self,
        user_id: str,
        food_name: str,
        timestamp: datetime,
        window: timedelta,
    ) -> Optional[MealLog]:
        """Closest local meal whose name contains food_name, logged within the window."""
        result = await self.session.execute(
            select(MealLog)
            .where(
                MealLog.user_id == user_id,
                MealLog.food_name.icontains(food_name, autoescape=True),
                MealLog.logged_at >= timestamp - window,
                MealLog.logged_at <= timestamp + window,
            )
            .order_by(MealLog.logged_at, MealLog.id)
        )
        candidates = list(result.scalars().all())
        if not candidates:
            return None
        return min(candidates, key=lambda meal: abs((meal.logged_at - timestamp).total_seconds()))

    async def add(self, user_id: str, entry: NutritionEntry, notes: Optional[str] = None) -> MealLog:
        meal = MealLog(
            user_id=user_id,
            food_name=entry.food_name,
            meal_type=entry.meal_type,
            calories=entry.calories,
            carbs=entry.carbs,
            protein=entry.protein,
            fat=entry.fat,
            fiber=entry.fiber,
            sugars=entry.sugar,
            sodium=entry.sodium,
            portion_size=entry.serving_size,
            servings=entry.servings,
            logged_at=entry.timestamp,
            source=entry.source,
            external_id=entry.external_id,
            notes=notes,
            created_at=datetime.utcnow(),
        )
        self.session.add(meal)
        await self.session.flush()
        return meal


class ExportRecordRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def exported_ids(self, connection_id: int) -> set[str]:
        result = await self.session.execute(
            select(ExportedHealthData.local_record_id).where(
                ExportedHealthData.connection_id == connection_id,
            )
        )
        return set(result.scalars().all())

    async def confirmed_by_external_id(self, connection_id: int) -> dict[str, str]:
        """Provider record id -> local record id for confirmed exports."""
        result = await self.session.execute(
            select(ExportedHealthData.external_record_id, ExportedHealthData.local_record_id).where(
                ExportedHealthData.connection_id == connection_id,
                ExportedHealthData.export_status == "confirmed",
                ExportedHealthData.external_record_id.is_not(None),
            )
        )
        return {external_id: local_id for external_id, local_id in result.all()}

    async def exists(self, connection_id: int, local_record_id: str) -> bool:
        result = await self.session.execute(
            select(ExportedHealthData.id).where(
                ExportedHealthData.connection_id == connection_id,
                ExportedHealthData.local_record_id == local_record_id,
            )
        )
        return result.first() is not None

    async def claim(
        self,
        user_id: str,
        connection_id: int,
        sync_history_id: int,
        local_record_id: str,
        exported_data: dict[str, Any],
    ) -> Optional[int]:
        """
        Insert a pending export marker.

        Returns the marker id, or None when the record is already claimed
        for this connection.
        """
        stmt = (
            insert(ExportedHealthData)
            .values(
                user_id=user_id,
                connection_id=connection_id,
                sync_history_id=sync_history_id,
                data_type=DATA_TYPE,
                local_record_id=local_record_id,
                local_table_name="meal_logs",
                exported_data=exported_data,
                export_status="pending",
                exported_at=datetime.utcnow(),
            )
            .on_conflict_do_nothing(index_elements=["connection_id", "local_record_id"])
            .returning(ExportedHealthData.id)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def confirm(self, record_id: int, external_record_id: str) -> None:
        record = await self.session.get(ExportedHealthData, record_id)
        record.external_record_id = external_record_id
        record.export_status = "confirmed"
        record.confirmed_at = datetime.utcnow()

    async def release(self, record_id: int) -> None:
        await self.session.execute(delete(ExportedHealthData).where(ExportedHealthData.id == record_id))


class ImportRecordRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def exists(self, connection_id: int, external_record_id: str) -> bool:
        result = await self.session.execute(
            select(ImportedHealthData.id).where(
                ImportedHealthData.connection_id == connection_id,
                ImportedHealthData.external_record_id == external_record_id,
                ImportedHealthData.data_type == DATA_TYPE,
            )
        )
        return result.first() is not None

    async def claim(
        self,
        user_id: str,
        connection_id: int,
        sync_history_id: Optional[int],
        external_record_id: str,
        imported_data: dict[str, Any],
        status: str = "pending",
        local_record_id: Optional[str] = None,
    ) -> Optional[int]:
        """Insert an import marker; None when one already exists."""
        now = datetime.utcnow()
        stmt = (
            insert(ImportedHealthData)
            .values(
                user_id=user_id,
                connection_id=connection_id,
                sync_history_id=sync_history_id,
                data_type=DATA_TYPE,
                external_record_id=external_record_id,
                local_record_id=local_record_id,
                local_table_name="meal_logs",
                imported_data=imported_data,
                import_status=status,
                imported_at=now,
                processed_at=now if status != "pending" else None,
            )
            .on_conflict_do_nothing(index_elements=["connection_id", "external_record_id", "data_type"])
            .returning(ImportedHealthData.id)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def mark_stored(self, record_id: int, local_record_id: str) -> None:
        record = await self.session.get(ImportedHealthData, record_id)
        record.local_record_id = local_record_id
        record.import_status = "stored"
        record.processed_at = datetime.utcnow()

    async def release(self, record_id: int) -> None:
        await self.session.execute(delete(ImportedHealthData).where(ImportedHealthData.id == record_id))


class ConflictRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, conflict_id: int) -> Optional[HealthSyncConflict]:
        return await self.session.get(HealthSyncConflict, conflict_id)

    async def exists(self, connection_id: int, external_record_id: str) -> bool:
        result = await self.session.execute(
            select(HealthSyncConflict.id).where(
                HealthSyncConflict.connection_id == connection_id,
                HealthSyncConflict.external_record_id == external_record_id,
                HealthSyncConflict.data_type == DATA_TYPE,
            )
        )
        return result.first() is not None

    async def record(
        self,
        user_id: str,
        connection_id: int,
        sync_history_id: Optional[int],
        external_record_id: str,
        local_record_id: str,
        local_data: dict[str, Any],
        external_data: dict[str, Any],
    ) -> Optional[int]:
        """Store a conflict; None when this external record already has one."""
        stmt = (
            insert(HealthSyncConflict)
            .values(
                user_id=user_id,
                connection_id=connection_id,
                sync_history_id=sync_history_id,
                data_type=DATA_TYPE,
                external_record_id=external_record_id,
                local_record_id=local_record_id,
                local_data=local_data,
                external_data=external_data,
                conflict_type="duplicate_entry",
                is_resolved=False,
                created_at=datetime.utcnow(),
            )
            .on_conflict_do_nothing(index_elements=["connection_id", "external_record_id", "data_type"])
            .returning(HealthSyncConflict.id)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_pending(
        self,
        user_id: str,
        connection_id: Optional[int] = None,
    ) -> list[tuple[HealthSyncConflict, ProviderConnection]]:
        """Unresolved conflicts with their connection, newest first."""
        query = (
            select(HealthSyncConflict, ProviderConnection)
            .join(ProviderConnection, ProviderConnection.id == HealthSyncConflict.connection_id)
            .where(
                HealthSyncConflict.user_id == user_id,
                HealthSyncConflict.is_resolved.is_(False),
            )
            .order_by(desc(HealthSyncConflict.created_at), desc(HealthSyncConflict.id))
        )
        if connection_id is not None:
            query = query.where(HealthSyncConflict.connection_id == connection_id)
        result = await self.session.execute(query)
        return [(conflict, connection) for conflict, connection in result.all()]

    async def mark_resolved(self, conflict: HealthSyncConflict, resolution: str, data: dict[str, Any]) -> None:
        conflict.is_resolved = True
        conflict.resolved_at = datetime.utcnow()
        conflict.resolved_by = resolution
        conflict.resolution_data = data


class SyncHistoryRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def open(self, user_id: str, connection_id: int, direction: str, sync_type: str = "manual") -> SyncHistory:
        history = SyncHistory(
            user_id=user_id,
            connection_id=connection_id,
            sync_type=sync_type,
            sync_direction=direction,
            data_type=DATA_TYPE,
            status="in_progress",
            started_at=datetime.utcnow(),
        )
        self.session.add(history)
        await self.session.flush()
        return history

    async def close(
        self,
        history: SyncHistory,
        status: str,
        processed: int,
        succeeded: int,
        errors: Optional[list[str]] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        history.status = status
        history.completed_at = datetime.utcnow()
        history.records_processed = processed
        history.records_succeeded = succeeded
        history.details = details
        history.error_message = "; ".join(errors) if errors else None

    async def list_recent(
        self,
        user_id: str,
        connection_ids: Optional[list[int]] = None,
        limit: int = 20,
    ) -> list[tuple[SyncHistory, ProviderConnection]]:
        query = (
            select(SyncHistory, ProviderConnection)
            .join(ProviderConnection, ProviderConnection.id == SyncHistory.connection_id)
            .where(SyncHistory.user_id == user_id)
            .order_by(desc(SyncHistory.started_at), desc(SyncHistory.id))
            .limit(limit)
        )
        if connection_ids is not None:
            query = query.where(SyncHistory.connection_id.in_(connection_ids))
        result = await self.session.execute(query)
        return [(history, connection) for history, connection in result.all()]


@dataclass
class SyncRepositories:
    """All repositories bound to one session."""

    session: AsyncSession
    connections: ConnectionRepository
    configs: SyncConfigRepository
    meals: MealLogRepository
    exports: ExportRecordRepository
    imports: ImportRecordRepository
    conflicts: ConflictRepository
    history: SyncHistoryRepository

    @classmethod
    def from_session(cls, session: AsyncSession) -> "SyncRepositories":
        return cls(
            session=session,
            connections=ConnectionRepository(session),
            configs=SyncConfigRepository(session),
            meals=MealLogRepository(session),
            exports=ExportRecordRepository(session),
            imports=ImportRecordRepository(session),
            conflicts=ConflictRepository(session),
            history=SyncHistoryRepository(session),
        )

    async def commit(self) -> None:
        await self.session.commit()

    async def rollback(self) -> None:
        await self.session.rollback()

    async def recover(self, *instances) -> None:
        """Roll back, then reload instances the rollback expired."""
        await self.session.rollback()
        for instance in instances:
            await self.session.refresh(instance)
