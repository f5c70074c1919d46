"""
Checkpoint: the per-row state recorded at the end of the last successful run.

A Checkpoint is an immutable value. A run never mutates the one it was given;
it builds a new one and hands it back in the RunReport for the caller to
persist. to_dict()/from_dict() give the JSON-safe form stored in the database.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Mapping, Optional

from tablesync.errors import StateError


@dataclass(frozen=True)
class RowState:
    row_id: str
    left_hash: Optional[str] = None
    right_hash: Optional[str] = None
    left_modified: Optional[datetime] = None
    right_modified: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "row_id": self.row_id,
            "left_hash": self.left_hash,
            "right_hash": self.right_hash,
            "left_modified": _dt_out(self.left_modified),
            "right_modified": _dt_out(self.right_modified),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "RowState":
        return cls(
            row_id=str(data["row_id"]),
            left_hash=data.get("left_hash"),
            right_hash=data.get("right_hash"),
            left_modified=_dt_in(data.get("left_modified")),
            right_modified=_dt_in(data.get("right_modified")),
        )


@dataclass(frozen=True)
class Checkpoint:
    config_id: str
    rows: Mapping[str, RowState] = field(default_factory=dict)
    taken_at: Optional[datetime] = None

    @classmethod
    def empty(cls, config_id: str) -> "Checkpoint":
        return cls(config_id=config_id, rows={}, taken_at=None)

    @property
    def is_empty(self) -> bool:
        return not self.rows

    def get(self, row_id: str) -> Optional[RowState]:
        return self.rows.get(row_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "config_id": self.config_id,
            "taken_at": _dt_out(self.taken_at),
            "rows": [state.to_dict() for state in self.rows.values()],
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Checkpoint":
        """
        Rebuild a checkpoint from its stored form.

        Raises:
            StateError: if the payload is not a checkpoint.
        """
        try:
            states = [RowState.from_dict(item) for item in data.get("rows", [])]
            return cls(
                config_id=str(data["config_id"]),
                rows={s.row_id: s for s in states},
                taken_at=_dt_in(data.get("taken_at")),
            )
        except (KeyError, TypeError, ValueError, AttributeError) as exc:
            raise StateError(f"Malformed checkpoint: {exc}") from exc


def _dt_out(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _dt_in(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))
