"""APScheduler setup for automatic nutrition sync."""

import logging
from datetime import datetime, timedelta
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from app.core.config import get_settings
from app.core.database import async_session_maker
from app.services.nutrition_sync import HISTORY_TO_DIRECTION, NutritionSyncService, in_flight
from app.services.providers import ProviderAdapter
from app.services.repositories import SyncRepositories

logger = logging.getLogger(__name__)

# Global scheduler instance
scheduler: AsyncIOScheduler | None = None


async def run_auto_sync(adapter: ProviderAdapter, session_maker=async_session_maker) -> list[dict]:
    """Sync every enabled connection whose configured frequency has elapsed."""
    settings = get_settings()
    logger.info("Starting scheduled nutrition sync")

    async with session_maker() as session:
        repos = SyncRepositories.from_session(session)
        due = [
            (connection.user_id, connection.provider, config.sync_direction, connection.last_sync_at)
            for connection, config in await repos.configs.list_due(datetime.utcnow())
        ]

    results = []
    for user_id, provider, sync_direction, last_sync_at in due:
        if not in_flight.try_acquire(user_id, provider):
            logger.info(f"Skipping {provider} for user {user_id}: sync already running")
            continue

        try:
            async with session_maker() as session:
                service = NutritionSyncService(
                    SyncRepositories.from_session(session),
                    adapter,
                    conflict_window=timedelta(minutes=settings.conflict_window_minutes),
                    default_window=timedelta(hours=settings.default_sync_window_hours),
                )
                # Resume from the previous watermark
                result = await service.sync_nutrition_data(
                    user_id,
                    provider,
                    start_date=last_sync_at,
                    direction=HISTORY_TO_DIRECTION.get(sync_direction, "both"),
                    sync_type="scheduled",
                )
        finally:
            in_flight.release(user_id, provider)

        results.append({"user_id": user_id, "provider": provider, "result": result.model_dump(mode="json")})
        if not result.success:
            logger.warning(f"Scheduled sync of {provider} for user {user_id} had errors: {result.errors}")

    logger.info(f"Scheduled sync completed: {len(results)} connections synced")
    return results


def start_scheduler(adapter: ProviderAdapter):
    """Start the APScheduler."""
    global scheduler

    if scheduler is not None:
        logger.warning("Scheduler already started")
        return

    settings = get_settings()
    if not settings.auto_sync_enabled:
        logger.info("Automatic sync disabled")
        return

    scheduler = AsyncIOScheduler()

    scheduler.add_job(
        run_auto_sync,
        IntervalTrigger(minutes=settings.auto_sync_check_minutes),
        args=[adapter],
        id="auto_sync",
        name="Automatic nutrition provider sync",
        replace_existing=True,
        max_instances=1,
    )

    scheduler.start()
    logger.info(f"Scheduler started - checking for due syncs every {settings.auto_sync_check_minutes} minutes")


def stop_scheduler():
    """Stop the APScheduler."""
    global scheduler

    if scheduler is not None:
        scheduler.shutdown()
        scheduler = None
        logger.info("Scheduler stopped")
