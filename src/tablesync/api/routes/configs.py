"""Sync configuration routes."""
from typing import Dict, List

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlmodel import Session, select

from tablesync.db.engine import get_session
from tablesync.engine.configuration import ConflictPolicy, SyncDirection
from tablesync.models.sync import SyncConfigRecord

router = APIRouter()


class SyncConfigCreate(BaseModel):
    id: str
    name: str = ""
    left_table: str
    right_table: str
    field_mapping: Dict[str, int]
    label_fields: Dict[str, str] = {}
    direction: SyncDirection = SyncDirection.BIDIRECTIONAL
    conflict_policy: ConflictPolicy = ConflictPolicy.LEFT_WINS
    active: bool = True
    resolve_links: bool = True
    create_missing_links: bool = False
    dry_run: bool = False


@router.get("/", response_model=List[SyncConfigRecord])
def list_configs(session: Session = Depends(get_session)):
    """List every stored configuration."""
    return session.exec(select(SyncConfigRecord).order_by(SyncConfigRecord.id)).all()


@router.get("/{config_id}", response_model=SyncConfigRecord)
def get_config(config_id: str, session: Session = Depends(get_session)):
    record = session.get(SyncConfigRecord, config_id)
    if not record:
        raise HTTPException(status_code=404, detail="Configuration not found")
    return record


@router.post("/", response_model=SyncConfigRecord, status_code=201)
def create_config(body: SyncConfigCreate, session: Session = Depends(get_session)):
    """Store a new configuration. Column indices in field_mapping must be distinct."""
    if session.get(SyncConfigRecord, body.id):
        raise HTTPException(status_code=409, detail="Configuration already exists")
    columns = list(body.field_mapping.values())
    if len(columns) != len(set(columns)):
        raise HTTPException(status_code=422, detail="Two fields are mapped to the same column")
    if any(c < 0 for c in columns):
        raise HTTPException(status_code=422, detail="Column indices must be non-negative")

    record = SyncConfigRecord(
        id=body.id,
        name=body.name,
        left_table=body.left_table,
        right_table=body.right_table,
        field_mapping=dict(body.field_mapping),
        label_fields=dict(body.label_fields),
        direction=body.direction.value,
        conflict_policy=body.conflict_policy.value,
        active=body.active,
        resolve_links=body.resolve_links,
        create_missing_links=body.create_missing_links,
        dry_run=body.dry_run,
    )
    session.add(record)
    session.commit()
    session.refresh(record)
    return record
