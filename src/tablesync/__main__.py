"""
Main entrypoint: runs the sync scheduler, or a single configuration once.

FastAPI runs separately under uvicorn.

Usage:
    python -m tablesync                     # scheduler: all active configs every N minutes
    python -m tablesync run <config-id>     # one run, report printed as JSON
    uvicorn tablesync.api.main:app --host 0.0.0.0 --port 8000  # starts API
"""
import asyncio
import json
import logging
import sys

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(name)s %(levelname)s %(message)s",
)
logger = logging.getLogger(__name__)


async def _run_once(config_id: str) -> int:
    from tablesync.db.engine import get_engine
    from tablesync.sync_service import SyncService

    service = SyncService(engine=get_engine())
    report = await service.run_config(config_id)
    if report is None:
        logger.error("Configuration %s was not run (unknown, paused or busy).", config_id)
        return 1
    print(json.dumps(report.to_dict(), indent=2))
    return 0 if report.status.value != "failed" else 2


async def _run_scheduler() -> None:
    from tablesync.config import get_settings
    from tablesync.db.engine import get_engine
    from tablesync.scheduler.jobs import build_scheduler
    from tablesync.sync_service import SyncService

    settings = get_settings()
    engine = get_engine()
    service = SyncService(engine=engine)

    scheduler = build_scheduler(engine, service=service)
    scheduler.start()
    logger.info(
        "Scheduler started (sync every %d minute(s)). Press Ctrl+C to stop.",
        settings.sync_interval_minutes,
    )
    try:
        await asyncio.Event().wait()
    except (KeyboardInterrupt, SystemExit):
        logger.info("Shutting down...")
    finally:
        scheduler.shutdown()
        logger.info("Goodbye.")


if __name__ == "__main__":
    # Dispatch on first argument: `python -m tablesync run <id>` or just `python -m tablesync`
    if len(sys.argv) > 2 and sys.argv[1] == "run":
        sys.exit(asyncio.run(_run_once(sys.argv[2])))
    else:
        asyncio.run(_run_scheduler())
