"""METASYNC: Scheduler Jobs.

APScheduler daily job that syncs yesterday's insights at the configured hour.
Runs on a background thread, like every other sync caller.
"""

from apscheduler.schedulers.background import BackgroundScheduler
from sqlmodel import Session

from metasync.config import settings
from metasync.core.errors import MetaSyncError
from metasync.core.logging import get_logger
from metasync.database import engine
from metasync.processing.pipeline import run_sync

logger = get_logger("scheduler")

scheduler = BackgroundScheduler()


def daily_sync_job():
    """Sync yesterday's data for every account."""
    logger.info("Scheduled daily sync starting...")
    try:
        with Session(engine) as session:
            summary = run_sync(session=session, date_range="yesterday")
        logger.info(
            f"Scheduled sync complete: {summary.succeeded} succeeded, "
            f"{summary.failed} failed"
        )
    except MetaSyncError as e:
        logger.error(f"Scheduled sync failed: {e}")


def start_scheduler():
    """Configure and start the scheduler."""
    if not settings.scheduler_enabled:
        logger.info("Scheduler disabled via config")
        return

    scheduler.add_job(
        daily_sync_job,
        "cron",
        hour=settings.sync_hour,
        minute=0,
        id="daily_sync",
        replace_existing=True,
        misfire_grace_time=3600,
        max_instances=1,
    )
    scheduler.start()
    logger.info(f"Scheduler started. Daily sync at {settings.sync_hour}:00 UTC")


def stop_scheduler():
    """Shutdown the scheduler gracefully."""
    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")
