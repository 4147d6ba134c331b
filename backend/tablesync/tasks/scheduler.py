"""Background task scheduler driving the refresh sweep."""

import logging
from datetime import UTC, datetime, timedelta

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from tablesync.config import get_settings
from tablesync.runtime import RefreshRuntime
from tablesync.services.checkpoints import CheckpointRepository

logger = logging.getLogger(__name__)
settings = get_settings()

# Global scheduler instance
scheduler: AsyncIOScheduler | None = None


async def refresh_sweep_job(runtime: RefreshRuntime) -> None:
    """Background job running one orchestration sweep."""
    logger.info("Starting scheduled refresh sweep")
    try:
        result = await runtime.orchestrator().sweep()
        logger.info(
            f"Refresh sweep complete: {result.dispatched} dispatched, "
            f"{len(result.reconciled)} reconciled"
        )
    except Exception as e:
        logger.error(f"Refresh sweep failed: {e}", exc_info=True)


async def expire_checkpoints_job(runtime: RefreshRuntime) -> None:
    """Background job expiring checkpoints past their TTL."""
    try:
        async with runtime.session_maker() as db:
            expired = await CheckpointRepository(db).expire_stale(runtime.clock.now())
        if expired:
            logger.info(f"Checkpoint cleanup expired {expired} checkpoints")
    except Exception as e:
        logger.error(f"Checkpoint cleanup failed: {e}", exc_info=True)


def setup_scheduler(runtime: RefreshRuntime) -> AsyncIOScheduler:
    """Set up and start the background task scheduler."""
    global scheduler

    scheduler = AsyncIOScheduler()
    now = datetime.now(UTC)

    scheduler.add_job(
        refresh_sweep_job,
        trigger=IntervalTrigger(minutes=settings.sweep_interval_minutes),
        args=[runtime],
        next_run_time=now + timedelta(seconds=10),
        id="refresh_sweep",
        name="Dispatch due refresh targets",
        replace_existing=True,
        max_instances=1,
    )

    scheduler.add_job(
        expire_checkpoints_job,
        trigger=IntervalTrigger(minutes=settings.checkpoint_cleanup_interval_minutes),
        args=[runtime],
        id="expire_checkpoints",
        name="Expire stale refresh checkpoints",
        replace_existing=True,
    )

    scheduler.start()
    logger.info("Scheduler started")

    return scheduler


def shutdown_scheduler() -> None:
    """Shut down the scheduler gracefully."""
    global scheduler

    if scheduler:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler shut down")
        scheduler = None
