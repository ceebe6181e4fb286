"""Nutrition sync orchestration - reconciles local meal logs with providers."""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Optional

from app.models.database import ProviderConnection
from app.models.sync_history import SyncHistory
from app.schemas.nutrition import (
    NutritionEntry,
    PendingConflict,
    ProviderAuth,
    ProviderConnectionInfo,
    SyncConfigInfo,
    SyncConfigUpdate,
    SyncHistoryEntry,
    SyncResult,
)
from app.services.conversion import (
    convert_to_local_format,
    external_record_id,
    meal_snapshot,
    meal_to_entry,
    merge_nutrition_data,
    resolved_nutrients,
    suggest_resolution,
    to_naive_utc,
)
from app.services.providers import SUPPORTED_PROVIDERS, ProviderAdapter, is_supported_provider
from app.services.repositories import SyncRepositories

logger = logging.getLogger(__name__)

DIRECTION_TO_HISTORY = {
    "both": "bidirectional",
    "export": "export_only",
    "import": "import_only",
}

HISTORY_TO_DIRECTION = {value: key for key, value in DIRECTION_TO_HISTORY.items()}

RESOLUTIONS = ("use_local", "use_external", "merge")


@dataclass
class _PhaseOutcome:
    """Counters for one export or import phase."""
    processed: int = 0
    succeeded: int = 0
    conflicts: int = 0
    errors: list[str] = field(default_factory=list)
    entries: list[NutritionEntry] = field(default_factory=list)


def final_status(errors: list[str], succeeded: int) -> str:
    """Terminal status of a sync attempt."""
    if not errors:
        return "completed"
    if succeeded > 0:
        return "partial"
    return "failed"


class InFlightRegistry:
    """Tracks (user, provider) pairs with a sync pass running in this process."""

    def __init__(self):
        self._keys: set[tuple[str, str]] = set()

    def try_acquire(self, user_id: str, provider: str) -> bool:
        key = (user_id, provider)
        if key in self._keys:
            return False
        self._keys.add(key)
        return True

    def release(self, user_id: str, provider: str) -> None:
        self._keys.discard((user_id, provider))

    def is_running(self, user_id: str, provider: str) -> bool:
        return (user_id, provider) in self._keys


in_flight = InFlightRegistry()


class NutritionSyncService:
    """Orchestrates connection lifecycle, sync passes and conflict handling."""

    def __init__(
        self,
        repos: SyncRepositories,
        adapter: ProviderAdapter,
        conflict_window: timedelta = timedelta(minutes=30),
        default_window: timedelta = timedelta(hours=24),
    ):
        self.repos = repos
        self.adapter = adapter
        self.conflict_window = conflict_window
        self.default_window = default_window

    # Connection lifecycle

    async def connect_provider(self, user_id: str, provider: str, auth: Optional[ProviderAuth] = None) -> bool:
        """Create or reactivate a connection and make sure it has a sync config."""
        if not is_supported_provider(provider):
            logger.warning(f"Refusing to connect unsupported provider {provider!r}")
            return False

        auth = auth or ProviderAuth()
        try:
            connection = await self.repos.connections.upsert_active(
                user_id,
                provider,
                auth.access_token,
                auth.refresh_token,
                to_naive_utc(auth.expires_at),
            )
            await self.repos.configs.ensure_default(connection)
            await self.repos.commit()
            logger.info(f"Connected {provider} for user {user_id}")
            return True
        except Exception as e:
            logger.error(f"Error connecting to {provider}: {e}")
            await self.repos.rollback()
            return False

    async def disconnect_provider(self, user_id: str, provider: str) -> bool:
        """Deactivate a connection and drop its tokens. Sync records are kept."""
        try:
            connection = await self.repos.connections.deactivate(user_id, provider)
            await self.repos.commit()
            if connection is None:
                logger.info(f"No {provider} connection to disconnect for user {user_id}")
            else:
                logger.info(f"Disconnected {provider} for user {user_id}")
            return True
        except Exception as e:
            logger.error(f"Error disconnecting from {provider}: {e}")
            await self.repos.rollback()
            return False

    async def get_connected_providers(self, user_id: str) -> list[ProviderConnectionInfo]:
        connections = await self.repos.connections.list_for_user(user_id, SUPPORTED_PROVIDERS)
        configs = await self.repos.configs.list_for_connections([c.id for c in connections])

        results = []
        for connection in connections:
            config = configs.get(connection.id)
            sync_config = SyncConfigInfo(provider=connection.provider)
            if config is not None:
                sync_config = SyncConfigInfo(
                    provider=connection.provider,
                    sync_direction=config.sync_direction,
                    auto_sync=config.is_enabled,
                    sync_frequency_minutes=config.sync_frequency_minutes,
                    conflict_resolution=config.conflict_resolution,
                )
            results.append(ProviderConnectionInfo(
                id=connection.id,
                provider=connection.provider,
                is_connected=connection.is_active,
                last_sync_at=connection.last_sync_at,
                sync_config=sync_config,
                error_count=connection.error_count or 0,
                last_error=connection.last_error,
            ))
        return results

    async def update_sync_config(self, user_id: str, provider: str, update: SyncConfigUpdate) -> bool:
        """Apply the non-empty fields of update to the connection's nutrition config."""
        try:
            connection = await self.repos.connections.get_active(user_id, provider)
            if connection is None:
                return False

            await self.repos.configs.ensure_default(connection)
            config = await self.repos.configs.get(connection.id)
            if update.sync_direction is not None:
                config.sync_direction = update.sync_direction
            if update.auto_sync is not None:
                config.is_enabled = update.auto_sync
            if update.sync_frequency_minutes is not None:
                config.sync_frequency_minutes = update.sync_frequency_minutes
            if update.conflict_resolution is not None:
                config.conflict_resolution = update.conflict_resolution
            config.updated_at = datetime.utcnow()

            await self.repos.commit()
            return True
        except Exception as e:
            logger.error(f"Error updating sync config for {provider}: {e}")
            await self.repos.rollback()
            return False

    # Sync passes

    def _window(self, start_date: Optional[datetime], end_date: Optional[datetime]) -> tuple[datetime, datetime]:
        end = to_naive_utc(end_date) or datetime.utcnow()
        start = to_naive_utc(start_date) or end - self.default_window
        return start, end

    async def sync_nutrition_data(
        self,
        user_id: str,
        provider: str,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        direction: str = "both",
        sync_type: str = "manual",
    ) -> SyncResult:
        """
        Run one export and/or import pass for a (user, provider) pair.

        Never raises: every failure ends up in the result's errors.
        """
        result = SyncResult(synced_at=datetime.utcnow())
        start, end = self._window(start_date, end_date)

        if direction not in DIRECTION_TO_HISTORY:
            result.errors.append(f"Invalid sync direction: {direction}")
            return result
        if start > end:
            result.errors.append("start_date must be before or equal to end_date")
            return result

        history_id: Optional[int] = None
        try:
            connection = await self.repos.connections.get_active(user_id, provider)
            if connection is None:
                result.errors.append(f"No active connection for {provider}")
                return result

            history = await self.repos.history.open(
                user_id, connection.id, DIRECTION_TO_HISTORY[direction], sync_type
            )
            history_id = history.id
            await self.repos.commit()
            logger.info(f"Syncing {provider} for user {user_id} ({direction}, {start} - {end})")

            outcomes = []
            if direction in ("export", "both"):
                exported = await self._export_local_meals(user_id, connection, start, end, history_id)
                result.exported = exported.succeeded
                result.errors.extend(exported.errors)
                outcomes.append(exported)

            if direction in ("import", "both"):
                imported = await self._import_external_meals(user_id, connection, start, end, history_id)
                result.imported = imported.succeeded
                result.conflicts = imported.conflicts
                result.errors.extend(imported.errors)
                outcomes.append(imported)

            processed = sum(o.processed for o in outcomes)
            succeeded = result.exported + result.imported
            history = await self.repos.session.get(SyncHistory, history_id)
            await self.repos.history.close(
                history,
                final_status(result.errors, succeeded),
                processed,
                succeeded,
                errors=result.errors,
                details={
                    "exported": result.exported,
                    "imported": result.imported,
                    "conflicts": result.conflicts,
                },
            )
            await self.repos.connections.record_sync(connection, result.errors)
            await self.repos.commit()

            result.success = not result.errors
            logger.info(
                f"Sync with {provider} finished: exported={result.exported} imported={result.imported} "
                f"conflicts={result.conflicts}"
                + (f" (errors: {result.errors})" if result.errors else "")
            )
        except Exception as e:
            logger.error(f"Error syncing with {provider}: {e}")
            await self._rollback_quietly()
            result.success = False
            result.errors.append(str(e) or "Unknown error")
            if history_id is not None:
                await self._fail_history(history_id, result.errors)

        return result

    async def _fail_history(self, history_id: int, errors: list[str]) -> None:
        """Close a history entry as failed after an unexpected error."""
        try:
            history = await self.repos.session.get(SyncHistory, history_id)
            if history is not None and history.status == "in_progress":
                await self.repos.history.close(history, "failed", history.records_processed or 0, 0, errors=errors)
                await self.repos.commit()
        except Exception as e:
            logger.error(f"Could not mark sync history {history_id} as failed: {e}")
            await self._rollback_quietly()

    async def _rollback_quietly(self) -> None:
        """Roll back on an error path without letting a second failure escape."""
        try:
            await self.repos.rollback()
        except Exception as e:
            logger.error(f"Rollback failed: {e}")

    async def _export_local_meals(
        self,
        user_id: str,
        connection: ProviderConnection,
        start: datetime,
        end: datetime,
        sync_history_id: int,
    ) -> _PhaseOutcome:
        outcome = _PhaseOutcome()
        try:
            meals = await self.repos.meals.list_for_user(user_id, start, end)
            exported_ids = await self.repos.exports.exported_ids(connection.id)
        except Exception as e:
            logger.error(f"Failed to read local meals for {connection.provider} export: {e}")
            await self.repos.recover(connection)
            outcome.errors.append(f"Export failed: {e}")
            return outcome

        # Meals imported from this provider are never sent back to it
        pending = [
            meal for meal in meals
            if str(meal.id) not in exported_ids and meal.source != connection.provider
        ]
        logger.info(f"{len(pending)} of {len(meals)} local meals to export to {connection.provider}")

        for meal in pending:
            entry = meal_to_entry(meal)
            record_id = await self.repos.exports.claim(
                user_id, connection.id, sync_history_id, entry.id, entry.model_dump(mode="json")
            )
            if record_id is None:
                # Claimed by a concurrent pass
                continue
            await self.repos.commit()
            outcome.processed += 1

            try:
                external_id = await self.adapter.send_meal(connection.provider, connection, entry)
            except Exception as e:
                logger.warning(f"Failed to export meal {meal.id} to {connection.provider}: {e}")
                await self.repos.exports.release(record_id)
                await self.repos.commit()
                outcome.errors.append(f"Failed to export meal {meal.id}: {e}")
                continue

            await self.repos.exports.confirm(record_id, external_id)
            await self.repos.commit()
            outcome.succeeded += 1

        return outcome

    async def _import_external_meals(
        self,
        user_id: str,
        connection: ProviderConnection,
        start: datetime,
        end: datetime,
        sync_history_id: int,
    ) -> _PhaseOutcome:
        outcome = _PhaseOutcome()
        provider = connection.provider

        try:
            external_meals = await self.adapter.fetch_meals(provider, connection, start, end)
        except Exception as e:
            logger.error(f"Failed to fetch meals from {provider}: {e}")
            outcome.errors.append(f"Import failed: {e}")
            return outcome

        try:
            # Records this connection received from us come back on fetch
            exported = await self.repos.exports.confirmed_by_external_id(connection.id)
        except Exception as e:
            logger.error(f"Failed to read export records for {provider}: {e}")
            await self.repos.recover(connection)
            outcome.errors.append(f"Import failed: {e}")
            return outcome

        for record in external_meals:
            if not isinstance(record, dict):
                outcome.errors.append(f"Failed to import meal: expected an object, got {type(record).__name__}")
                continue
            external_id = external_record_id(record)
            if external_id is None:
                outcome.errors.append("Failed to import meal: record has no id")
                continue

            try:
                if await self.repos.imports.exists(connection.id, external_id):
                    continue
                if await self.repos.conflicts.exists(connection.id, external_id):
                    continue
                if external_id in exported:
                    await self.repos.imports.claim(
                        user_id,
                        connection.id,
                        sync_history_id,
                        external_id,
                        record,
                        status="linked",
                        local_record_id=exported[external_id],
                    )
                    await self.repos.commit()
                    continue

                outcome.processed += 1
                entry = await self._import_one(user_id, connection, record, external_id, sync_history_id, outcome)
            except Exception as e:
                logger.warning(f"Failed to import meal {external_id} from {provider}: {e}")
                await self.repos.recover(connection)
                outcome.errors.append(f"Failed to import meal {external_id}: {e}")
                continue
            if entry is not None:
                outcome.entries.append(entry)
                outcome.succeeded += 1

        return outcome

    async def _import_one(
        self,
        user_id: str,
        connection: ProviderConnection,
        record: dict[str, Any],
        external_id: str,
        sync_history_id: int,
        outcome: _PhaseOutcome,
    ) -> Optional[NutritionEntry]:
        """Import a single record, or route it to the conflict store."""
        entry = convert_to_local_format(record, connection.provider)

        local = await self.repos.meals.find_conflict(user_id, entry.food_name, entry.timestamp, self.conflict_window)
        if local is not None:
            conflict_id = await self.repos.conflicts.record(
                user_id,
                connection.id,
                sync_history_id,
                external_id,
                str(local.id),
                meal_snapshot(local),
                record,
            )
            await self.repos.commit()
            if conflict_id is not None:
                logger.info(f"Meal {external_id} from {connection.provider} conflicts with local meal {local.id}")
                outcome.conflicts += 1
            return None

        import_id = await self.repos.imports.claim(user_id, connection.id, sync_history_id, external_id, record)
        if import_id is None:
            return None
        await self.repos.commit()

        try:
            meal = await self.repos.meals.add(user_id, entry, notes=f"Imported from {connection.provider}")
            await self.repos.imports.mark_stored(import_id, str(meal.id))
            await self.repos.commit()
        except Exception:
            await self.repos.rollback()
            await self.repos.imports.release(import_id)
            await self.repos.commit()
            raise

        return entry.model_copy(update={"id": str(meal.id)})

    # Single-record paths

    async def export_meal_to_provider(self, user_id: str, provider: str, meal: NutritionEntry) -> bool:
        """Export one meal now, outside of a batch pass."""
        try:
            connection = await self.repos.connections.get_active(user_id, provider)
            if connection is None:
                logger.error(f"Error exporting meal to {provider}: No active connection for {provider}")
                return False

            if await self.repos.exports.exists(connection.id, meal.id):
                logger.info(f"Meal {meal.id} already exported to {provider}")
                return True

            history = await self.repos.history.open(user_id, connection.id, "export_only")
            record_id = await self.repos.exports.claim(
                user_id, connection.id, history.id, meal.id, meal.model_dump(mode="json")
            )
            if record_id is None:
                await self.repos.history.close(history, "completed", 0, 0)
                await self.repos.commit()
                return True
            await self.repos.commit()

            try:
                external_id = await self.adapter.send_meal(provider, connection, meal)
            except Exception as e:
                logger.error(f"Error exporting meal to {provider}: {e}")
                error = f"Failed to export meal {meal.id}: {e}"
                await self.repos.exports.release(record_id)
                await self.repos.history.close(history, "failed", 1, 0, errors=[error])
                await self.repos.connections.record_error(connection, error)
                await self.repos.commit()
                return False

            await self.repos.exports.confirm(record_id, external_id)
            await self.repos.history.close(history, "completed", 1, 1)
            await self.repos.commit()
            return True
        except Exception as e:
            logger.error(f"Error exporting meal to {provider}: {e}")
            await self.repos.rollback()
            return False

    async def import_meals_from_provider(
        self,
        user_id: str,
        provider: str,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> list[NutritionEntry]:
        """Import new provider meals and return them; duplicates and conflicts are skipped."""
        start, end = self._window(start_date, end_date)
        try:
            connection = await self.repos.connections.get_active(user_id, provider)
            if connection is None:
                logger.error(f"Error importing meals from {provider}: No active connection for {provider}")
                return []

            history = await self.repos.history.open(user_id, connection.id, "import_only")
            history_id = history.id
            await self.repos.commit()

            outcome = await self._import_external_meals(user_id, connection, start, end, history_id)
            history = await self.repos.session.get(SyncHistory, history_id)
            await self.repos.history.close(
                history,
                final_status(outcome.errors, outcome.succeeded),
                outcome.processed,
                outcome.succeeded,
                errors=outcome.errors,
                details={"imported": outcome.succeeded, "conflicts": outcome.conflicts},
            )
            await self.repos.commit()
            return outcome.entries
        except Exception as e:
            logger.error(f"Error importing meals from {provider}: {e}")
            await self.repos.rollback()
            return []

    # Conflicts

    async def get_pending_conflicts(self, user_id: str) -> list[PendingConflict]:
        rows = await self.repos.conflicts.list_pending(user_id)
        configs = await self.repos.configs.list_for_connections(list({c.id for _, c in rows}))

        results = []
        for conflict, connection in rows:
            config = configs.get(connection.id)
            policy = config.conflict_resolution if config is not None else "newest_wins"
            results.append(PendingConflict(
                id=conflict.id,
                provider=connection.provider,
                connection_id=conflict.connection_id,
                sync_history_id=conflict.sync_history_id,
                data_type=conflict.data_type,
                conflict_type=conflict.conflict_type,
                external_record_id=conflict.external_record_id,
                local_record_id=conflict.local_record_id,
                local_data=conflict.local_data,
                external_data=conflict.external_data,
                suggested_resolution=suggest_resolution(policy, conflict.local_data, conflict.external_data),
                created_at=conflict.created_at,
            ))
        return results

    async def resolve_sync_conflict(self, conflict_id: int, resolution: str, apply: bool = False) -> bool:
        """
        Resolve a pending conflict.

        With apply=True the resolved nutrients are also written to the
        matched local meal log (nothing to write for use_local).
        """
        if resolution not in RESOLUTIONS:
            logger.warning(f"Unknown conflict resolution {resolution!r}")
            return False

        try:
            conflict = await self.repos.conflicts.get(conflict_id)
            if conflict is None:
                logger.warning(f"Conflict {conflict_id} not found")
                return False
            if conflict.is_resolved:
                logger.warning(f"Conflict {conflict_id} is already resolved")
                return False

            if resolution == "use_local":
                resolved = dict(conflict.local_data)
            elif resolution == "use_external":
                resolved = dict(conflict.external_data)
            else:
                resolved = merge_nutrition_data(conflict.local_data, conflict.external_data)

            await self.repos.conflicts.mark_resolved(conflict, resolution, resolved)

            # Settles the external record so later passes skip it
            await self.repos.imports.claim(
                conflict.user_id,
                conflict.connection_id,
                conflict.sync_history_id,
                conflict.external_record_id,
                conflict.external_data,
                status="resolved",
                local_record_id=conflict.local_record_id,
            )

            if apply and resolution != "use_local" and conflict.local_record_id:
                meal = await self.repos.meals.get(int(conflict.local_record_id))
                if meal is not None:
                    for column, value in resolved_nutrients(resolved).items():
                        setattr(meal, column, value)
                    note = f"Resolved sync conflict {conflict.id} ({resolution})"
                    meal.notes = f"{meal.notes}\n{note}" if meal.notes else note

            await self.repos.commit()
            logger.info(f"Resolved conflict {conflict_id} with {resolution}" + (" (applied)" if apply else ""))
            return True
        except Exception as e:
            logger.error(f"Error resolving sync conflict {conflict_id}: {e}")
            await self.repos.rollback()
            return False

    async def auto_resolve_conflicts(self, user_id: str, provider: str, apply: bool = True) -> int:
        """Resolve a connection's pending conflicts by its conflict policy. Returns how many were resolved."""
        connection = await self.repos.connections.get(user_id, provider)
        if connection is None:
            return 0
        config = await self.repos.configs.get(connection.id)
        policy = config.conflict_resolution if config is not None else "newest_wins"
        if policy == "manual":
            return 0

        pending = [
            (conflict.id, suggest_resolution(policy, conflict.local_data, conflict.external_data))
            for conflict, _ in await self.repos.conflicts.list_pending(user_id, connection.id)
        ]

        resolved = 0
        for conflict_id, resolution in pending:
            if resolution and await self.resolve_sync_conflict(conflict_id, resolution, apply=apply):
                resolved += 1
        logger.info(f"Auto-resolved {resolved} conflicts for {provider} ({policy})")
        return resolved

    # History

    async def get_sync_history(
        self,
        user_id: str,
        provider: Optional[str] = None,
        limit: int = 20,
    ) -> list[SyncHistoryEntry]:
        connection_ids = None
        if provider is not None:
            connection = await self.repos.connections.get(user_id, provider)
            if connection is None:
                return []
            connection_ids = [connection.id]

        rows = await self.repos.history.list_recent(user_id, connection_ids, limit)
        return [
            SyncHistoryEntry(
                id=history.id,
                provider=connection.provider,
                connection_id=history.connection_id,
                sync_type=history.sync_type,
                sync_direction=history.sync_direction,
                data_type=history.data_type,
                status=history.status,
                started_at=history.started_at,
                completed_at=history.completed_at,
                records_processed=history.records_processed or 0,
                records_succeeded=history.records_succeeded or 0,
                error_message=history.error_message,
            )
            for history, connection in rows
        ]
