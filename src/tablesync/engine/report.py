"""Run report: what a sync run did, phase by phase."""
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from tablesync.engine.checkpoint import Checkpoint
from tablesync.errors import ErrorKind


class Phase(str, Enum):
    FETCHING = "fetching"
    DETECTING_CONFLICTS = "detecting_conflicts"
    RESOLVING_CONFLICTS = "resolving_conflicts"
    WRITING_LEFT_TO_RIGHT = "writing_left_to_right"
    WRITING_RIGHT_TO_LEFT = "writing_right_to_left"
    UPDATING_CHECKPOINT = "updating_checkpoint"


PHASE_ORDER = list(Phase)


class PhaseStatus(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"
    SKIPPED = "skipped"


class RunStatus(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


@dataclass
class SyncErrorEntry:
    phase: Phase
    message: str
    kind: ErrorKind = ErrorKind.UNKNOWN
    row_id: Optional[str] = None
    attempts: int = 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "phase": self.phase.value,
            "row_id": self.row_id,
            "message": self.message,
            "kind": self.kind.value,
            "attempts": self.attempts,
        }


@dataclass
class PhaseResult:
    phase: Phase
    status: PhaseStatus = PhaseStatus.SUCCESS
    duration_seconds: float = 0.0
    errors: List[SyncErrorEntry] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "phase": self.phase.value,
            "status": self.status.value,
            "duration_seconds": round(self.duration_seconds, 3),
            "errors": [e.to_dict() for e in self.errors],
            "warnings": list(self.warnings),
            "metadata": dict(self.metadata),
        }


@dataclass
class DirectionCounts:
    added: int = 0
    updated: int = 0
    deleted: int = 0
    failed: int = 0

    @property
    def written(self) -> int:
        return self.added + self.updated + self.deleted

    def to_dict(self) -> Dict[str, int]:
        return {"added": self.added, "updated": self.updated, "deleted": self.deleted, "failed": self.failed}


@dataclass
class ConflictCounts:
    detected: int = 0
    left_won: int = 0
    right_won: int = 0
    applied: int = 0
    failed: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "detected": self.detected,
            "left_won": self.left_won,
            "right_won": self.right_won,
            "applied": self.applied,
            "failed": self.failed,
        }


@dataclass
class RunReport:
    """
    The result of one run. Always returned, even when the run failed.

    checkpoint is the state the caller should persist for the next run. When
    the checkpoint phase did not run it is the input checkpoint, unchanged.
    """

    config_id: str
    status: RunStatus = RunStatus.SUCCESS
    phases: List[PhaseResult] = field(default_factory=list)
    detected: Dict[str, int] = field(default_factory=dict)
    left_to_right: DirectionCounts = field(default_factory=DirectionCounts)
    right_to_left: DirectionCounts = field(default_factory=DirectionCounts)
    conflicts: ConflictCounts = field(default_factory=ConflictCounts)
    resolutions: List[Dict[str, Any]] = field(default_factory=list)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    cancelled: bool = False
    dry_run: bool = False
    checkpoint: Optional[Checkpoint] = None

    @property
    def duration_seconds(self) -> float:
        if not self.started_at or not self.finished_at:
            return 0.0
        return (self.finished_at - self.started_at).total_seconds()

    @property
    def errors(self) -> List[SyncErrorEntry]:
        return [e for p in self.phases for e in p.errors]

    @property
    def warnings(self) -> List[str]:
        return [w for p in self.phases for w in p.warnings]

    @property
    def rows_written(self) -> int:
        return self.left_to_right.written + self.right_to_left.written

    def phase(self, phase: Phase) -> Optional[PhaseResult]:
        for result in self.phases:
            if result.phase is phase:
                return result
        return None

    def error_summary(self) -> Optional[str]:
        """One line for the audit log, e.g. "3 errors (2 validation, 1 write): <first message>"."""
        errors = self.errors
        if not errors:
            return None
        by_kind = Counter(e.kind.value for e in errors)
        kinds = ", ".join(f"{n} {k}" for k, n in sorted(by_kind.items()))
        noun = "error" if len(errors) == 1 else "errors"
        return f"{len(errors)} {noun} ({kinds}): {errors[0].message}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "config_id": self.config_id,
            "status": self.status.value,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "duration_seconds": round(self.duration_seconds, 3),
            "cancelled": self.cancelled,
            "dry_run": self.dry_run,
            "detected": dict(self.detected),
            "left_to_right": self.left_to_right.to_dict(),
            "right_to_left": self.right_to_left.to_dict(),
            "conflicts": self.conflicts.to_dict(),
            "resolutions": list(self.resolutions),
            "phases": [p.to_dict() for p in self.phases],
        }
