"""
Persistence helpers for configurations, checkpoints and the audit log.

Each helper opens its own short-lived Session on the given engine, the same
way the sync service has always talked to the database.
"""
from datetime import datetime
from typing import List, Optional

from sqlmodel import Session, col, select

from tablesync.engine.checkpoint import Checkpoint
from tablesync.engine.report import RunReport
from tablesync.errors import StateError
from tablesync.models.sync import CheckpointRecord, SyncConfigRecord, SyncLog


# ─── Configurations ───────────────────────────────────────────────────────────

def get_config(engine, config_id: str) -> Optional[SyncConfigRecord]:
    with Session(engine) as s:
        return s.get(SyncConfigRecord, config_id)


def list_active_configs(engine) -> List[SyncConfigRecord]:
    with Session(engine) as s:
        return list(s.exec(select(SyncConfigRecord).where(SyncConfigRecord.active == True)).all())  # noqa: E712


def record_run_result(engine, config_id: str, report: RunReport) -> None:
    """Store the last status and error summary on the configuration itself."""
    with Session(engine) as s:
        record = s.get(SyncConfigRecord, config_id)
        if record is None:
            return
        record.last_synced_at = report.finished_at.replace(tzinfo=None) if report.finished_at else datetime.utcnow()
        record.last_status = report.status.value
        record.last_error = report.error_summary()
        s.add(record)
        s.commit()


# ─── Checkpoints ──────────────────────────────────────────────────────────────

def load_checkpoint(engine, config_id: str) -> Optional[Checkpoint]:
    """
    Load the stored checkpoint for a configuration.

    Returns:
        The checkpoint, or None if there is none yet.

    Raises:
        StateError: if the stored payload is corrupt.
    """
    with Session(engine) as s:
        record = s.get(CheckpointRecord, config_id)
        if record is None or not record.payload:
            return None
        checkpoint = Checkpoint.from_dict(record.payload)
    if checkpoint.config_id != config_id:
        raise StateError(f"Stored checkpoint for {config_id} belongs to {checkpoint.config_id}")
    return checkpoint


def save_checkpoint(engine, checkpoint: Checkpoint) -> None:
    with Session(engine) as s:
        record = s.get(CheckpointRecord, checkpoint.config_id)
        if record is None:
            record = CheckpointRecord(config_id=checkpoint.config_id)
        record.payload = checkpoint.to_dict()
        record.updated_at = datetime.utcnow()
        s.add(record)
        s.commit()


# ─── Audit log ────────────────────────────────────────────────────────────────

def start_log(engine, config_id: str) -> SyncLog:
    log = SyncLog(config_id=config_id, started_at=datetime.utcnow(), status="running")
    with Session(engine) as s:
        s.add(log)
        s.commit()
        s.refresh(log)
    return log


def finish_log(
    engine,
    log: SyncLog,
    *,
    status: str,
    report: Optional[RunReport] = None,
    error_message: Optional[str] = None,
) -> None:
    with Session(engine) as s:
        db_log = s.get(SyncLog, log.id)
        db_log.status = status
        db_log.finished_at = datetime.utcnow()
        if report is not None:
            db_log.rows_written = report.rows_written
            db_log.conflicts = report.conflicts.detected
            db_log.report = report.to_dict()
            error_message = error_message or report.error_summary()
        db_log.error_message = error_message
        s.add(db_log)
        s.commit()


def latest_log(session: Session, config_id: str) -> Optional[SyncLog]:
    return session.exec(
        select(SyncLog)
        .where(SyncLog.config_id == config_id)
        .order_by(SyncLog.started_at.desc(), SyncLog.id.desc())
    ).first()


def recent_failed_logs(session: Session, limit: int = 20) -> List[SyncLog]:
    return list(session.exec(
        select(SyncLog)
        .where(col(SyncLog.status).in_(["failed", "partial"]))
        .order_by(SyncLog.started_at.desc(), SyncLog.id.desc())
        .limit(limit)
    ).all())
