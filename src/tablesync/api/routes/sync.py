"""Sync trigger, status and pause/resume routes."""
import logging
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException
from pydantic import BaseModel
from sqlmodel import Session

from tablesync.db import repository
from tablesync.db.engine import get_engine, get_session
from tablesync.models.sync import SyncConfigRecord

logger = logging.getLogger(__name__)

router = APIRouter()

_service = None


class SyncStatusResponse(BaseModel):
    config_id: str
    status: str
    started_at: Optional[datetime]
    finished_at: Optional[datetime]
    rows_written: Optional[int]
    conflicts: Optional[int]
    error_message: Optional[str]


class ActiveRequest(BaseModel):
    active: bool


def get_service():
    """Process-wide SyncService, so every trigger shares one set of rate limiters."""
    global _service
    if _service is None:
        from tablesync.sync_service import SyncService
        _service = SyncService(engine=get_engine())
    return _service


async def _do_sync(config_id: str) -> None:
    """Background task: run one configuration."""
    try:
        await get_service().run_config(config_id)
    except Exception:
        logger.exception("Triggered sync for %s failed", config_id)


@router.get("/failed", response_model=List[SyncStatusResponse])
def failed_runs(limit: int = 20, session: Session = Depends(get_session)):
    """Recent runs that failed or only partly succeeded, newest first."""
    return [_to_response(log) for log in repository.recent_failed_logs(session, limit=limit)]


@router.post("/{config_id}/trigger")
async def trigger_sync(
    config_id: str,
    background_tasks: BackgroundTasks,
    session: Session = Depends(get_session),
):
    """
    Trigger an on-demand sync of one configuration.
    Returns immediately; sync runs in background.
    """
    record = session.get(SyncConfigRecord, config_id)
    if not record:
        raise HTTPException(status_code=404, detail="Configuration not found")
    if not record.active:
        raise HTTPException(status_code=409, detail="Configuration is paused")
    background_tasks.add_task(_do_sync, config_id)
    return {"message": "Sync started", "config_id": config_id}


@router.get("/{config_id}/status", response_model=SyncStatusResponse)
def sync_status(config_id: str, session: Session = Depends(get_session)):
    """Return the status of the most recent run of a configuration."""
    log = repository.latest_log(session, config_id)
    if not log:
        return SyncStatusResponse(
            config_id=config_id,
            status="never_run",
            started_at=None,
            finished_at=None,
            rows_written=None,
            conflicts=None,
            error_message=None,
        )
    return _to_response(log)


@router.post("/{config_id}/active")
def set_active(config_id: str, request: ActiveRequest, session: Session = Depends(get_session)):
    """Pause (active=false) or resume (active=true) scheduled runs of a configuration."""
    record = session.get(SyncConfigRecord, config_id)
    if not record:
        raise HTTPException(status_code=404, detail="Configuration not found")
    record.active = request.active
    session.add(record)
    session.commit()
    return {"config_id": config_id, "active": request.active}


def _to_response(log) -> SyncStatusResponse:
    return SyncStatusResponse(
        config_id=log.config_id,
        status=log.status,
        started_at=log.started_at,
        finished_at=log.finished_at,
        rows_written=log.rows_written,
        conflicts=log.conflicts,
        error_message=log.error_message,
    )
