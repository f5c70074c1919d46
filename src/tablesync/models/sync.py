"""Sync configuration, checkpoint and audit log models."""
from datetime import datetime
from typing import Dict, Optional

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel

from tablesync.engine.configuration import ConflictPolicy, SyncConfiguration, SyncDirection


class SyncConfigRecord(SQLModel, table=True):
    """A stored sync configuration. field_mapping is left field id -> column index."""

    id: str = Field(primary_key=True)
    name: str = ""
    left_table: str
    right_table: str
    field_mapping: Dict[str, int] = Field(default_factory=dict, sa_column=Column(JSON))
    label_fields: Dict[str, str] = Field(default_factory=dict, sa_column=Column(JSON))
    direction: str = SyncDirection.BIDIRECTIONAL.value
    conflict_policy: str = ConflictPolicy.LEFT_WINS.value
    active: bool = True
    resolve_links: bool = True
    create_missing_links: bool = False
    dry_run: bool = False
    created_at: datetime = Field(default_factory=datetime.utcnow)
    last_synced_at: Optional[datetime] = None
    last_status: Optional[str] = None
    last_error: Optional[str] = None

    def to_configuration(self) -> SyncConfiguration:
        return SyncConfiguration(
            id=self.id,
            name=self.name,
            left_table=self.left_table,
            right_table=self.right_table,
            field_mapping={k: int(v) for k, v in (self.field_mapping or {}).items()},
            direction=SyncDirection(self.direction),
            conflict_policy=ConflictPolicy(self.conflict_policy),
            active=self.active,
            resolve_links=self.resolve_links,
            create_missing_links=self.create_missing_links,
            dry_run=self.dry_run,
            label_fields=dict(self.label_fields or {}),
        )


class CheckpointRecord(SQLModel, table=True):
    """The latest checkpoint per configuration, replaced wholesale after each run."""

    config_id: str = Field(primary_key=True, foreign_key="syncconfigrecord.id")
    payload: Dict = Field(default_factory=dict, sa_column=Column(JSON))
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class SyncLog(SQLModel, table=True):
    """Records each sync run for audit and debugging."""

    id: Optional[int] = Field(default=None, primary_key=True)
    config_id: str = Field(index=True)
    started_at: datetime = Field(default_factory=datetime.utcnow)
    finished_at: Optional[datetime] = None
    status: str = "running"  # "running", "success", "partial", "failed"
    rows_written: int = 0
    conflicts: int = 0
    error_message: Optional[str] = None
    report: Optional[Dict] = Field(default=None, sa_column=Column(JSON))
