"""
APScheduler jobs for background sync.

Every sync_interval_minutes the scheduler runs all active configurations.
max_instances=1 keeps a slow run from overlapping the next tick; a missed
tick is coalesced into one run.
"""
import logging
from datetime import datetime
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from tablesync.config import get_settings

logger = logging.getLogger(__name__)


def build_scheduler(engine, service=None) -> AsyncIOScheduler:
    """
    Create and configure the APScheduler.

    Args:
        engine: SQLAlchemy engine to pass to the sync service.
        service: SyncService to reuse across ticks. Built on the first tick
            when not given.

    Returns:
        Configured AsyncIOScheduler (not yet started).
    """
    settings = get_settings()
    scheduler = AsyncIOScheduler()

    scheduler.add_job(
        _sync_all,
        trigger="interval",
        minutes=settings.sync_interval_minutes,
        id="sync_all",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
        kwargs={"engine": engine, "service": service},
    )

    return scheduler


async def _sync_all(engine, service=None) -> Optional[dict]:
    """Scheduled job: run every active configuration. Never raises."""
    from tablesync.sync_service import SyncService

    logger.info("Scheduled sync starting at %s", datetime.utcnow().isoformat())
    try:
        if service is None:
            service = SyncService(engine=engine)
        reports = await service.run_all()
        for config_id, report in reports.items():
            if report is not None:
                logger.info("Synced %s: %s", config_id, report.status.value)
        return reports

    except Exception as exc:
        logger.error("Scheduled sync failed: %s", exc)
        return None
