"""
Conflict resolution policies.

resolve() is a pure function of the conflict and the policy: the same input
always produces the same Resolution, and the checkpoint is never touched.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, List, Optional

from tablesync.engine.configuration import ConflictPolicy
from tablesync.engine.conflict_detector import ConflictRecord, ConflictType
from tablesync.engine.values import Row
from tablesync.errors import ConflictError

LEFT = "left"
RIGHT = "right"

ACTION_WRITE = "write"
ACTION_DELETE = "delete"


@dataclass(frozen=True)
class Resolution:
    """
    The outcome of one conflict.

    Attributes:
        row_id: id of the conflicting row.
        winner: "left" or "right".
        action: "write" to copy resulting_row onto the losing side, "delete"
            to remove the row from the losing side.
        resulting_row: the winning row (None when the winner deleted it).
        rationale: human-readable reason, recorded in the run report.
    """

    row_id: str
    winner: str
    action: str
    resulting_row: Optional[Row]
    rationale: str

    @property
    def loser(self) -> str:
        return RIGHT if self.winner == LEFT else LEFT


def resolve(conflict: ConflictRecord, policy: ConflictPolicy) -> Resolution:
    _check(conflict)
    winner, why = _pick_winner(conflict, policy)
    row = conflict.left if winner == LEFT else conflict.right
    if row is None:
        action = ACTION_DELETE
        what = "deletion"
    else:
        action = ACTION_WRITE
        what = "edit"
    rationale = f"{policy.value}: {why}; applying {winner} {what}"
    return Resolution(
        row_id=conflict.row_id,
        winner=winner,
        action=action,
        resulting_row=row,
        rationale=rationale,
    )


def resolve_all(
    conflicts: List[ConflictRecord],
    policy: ConflictPolicy,
    on_error: Optional[Callable[[ConflictRecord, ConflictError], None]] = None,
) -> List[Resolution]:
    """
    Resolve each conflict and attach the resolution to its record.

    A record that cannot be resolved raises ConflictError, unless on_error is
    given: then it is handed to on_error, left without a resolution and
    skipped.
    """
    resolutions = []
    for conflict in conflicts:
        try:
            resolution = resolve(conflict, policy)
        except ConflictError as exc:
            if on_error is None:
                raise
            on_error(conflict, exc)
            continue
        conflict.resolution = resolution
        resolutions.append(resolution)
    return resolutions


def _check(conflict: ConflictRecord) -> None:
    if conflict.left is None and conflict.right is None:
        raise ConflictError("conflict has no row on either side", row_id=conflict.row_id)
    expected = {
        ConflictType.BOTH_MODIFIED: (True, True),
        ConflictType.DELETED_ON_LEFT: (False, True),
        ConflictType.DELETED_ON_RIGHT: (True, False),
    }[conflict.conflict_type]
    if (conflict.left is not None, conflict.right is not None) != expected:
        raise ConflictError(
            f"{conflict.conflict_type.value} conflict has the wrong sides present", row_id=conflict.row_id,
        )


def _pick_winner(conflict: ConflictRecord, policy: ConflictPolicy):
    if policy is ConflictPolicy.LEFT_WINS:
        return LEFT, "left side always wins"
    if policy is ConflictPolicy.RIGHT_WINS:
        return RIGHT, "right side always wins"

    # NEWEST_WINS: a deletion counts as the most recent change
    if conflict.conflict_type is ConflictType.DELETED_ON_LEFT:
        return LEFT, "deletion is treated as the newest change"
    if conflict.conflict_type is ConflictType.DELETED_ON_RIGHT:
        return RIGHT, "deletion is treated as the newest change"

    left_ts = conflict.left.modified_at if conflict.left else None
    right_ts = conflict.right.modified_at if conflict.right else None
    if left_ts is None or right_ts is None:
        return LEFT, "modification time missing, defaulting to left"
    left_ts, right_ts = _as_utc(left_ts), _as_utc(right_ts)
    if right_ts > left_ts:
        return RIGHT, f"right modified at {right_ts.isoformat()} is newer"
    if left_ts > right_ts:
        return LEFT, f"left modified at {left_ts.isoformat()} is newer"
    return LEFT, "equal modification times, defaulting to left"


def _as_utc(value: datetime) -> datetime:
    # naive timestamps are taken to be UTC so they compare with aware ones
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
