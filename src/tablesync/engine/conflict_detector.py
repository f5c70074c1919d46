"""
Change detection against the checkpoint.

Both row sets are in canonical form (keyed by left field id, links as labels)
so a left row and a right row with the same content hash alike. Each row id
lands in exactly one bucket:

    in left  in right  in checkpoint   outcome
    -------  --------  -------------   -------------------------------------------
      yes      yes         yes         unchanged / left_updated / right_updated /
                                       both_changed (converged edits are unchanged)
      yes      yes         no          unchanged if equal, else both_changed
      yes      no          yes         right_deleted (both_changed if left edited)
      yes      no          no          left_added
      no       yes         yes         left_deleted (both_changed if right edited)
      no       yes         no          right_added
      no       no          yes         both_deleted

Right rows without an id have never been linked and are always right_added.
"""
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from tablesync.engine.checkpoint import Checkpoint, RowState
from tablesync.engine.values import Row, content_hash

logger = logging.getLogger(__name__)

UNLINKED_PREFIX = "~unlinked:"


class ConflictType(str, Enum):
    BOTH_MODIFIED = "both_modified"
    DELETED_ON_LEFT = "deleted_on_left"
    DELETED_ON_RIGHT = "deleted_on_right"


@dataclass
class ConflictRecord:
    row_id: str
    conflict_type: ConflictType
    left: Optional[Row]
    right: Optional[Row]
    previous: Optional[RowState] = None
    resolution: Optional[Any] = None


@dataclass
class DetectionResult:
    left_rows: Dict[str, Row] = field(default_factory=dict)
    right_rows: Dict[str, Row] = field(default_factory=dict)
    left_hashes: Dict[str, str] = field(default_factory=dict)
    right_hashes: Dict[str, str] = field(default_factory=dict)
    unchanged: List[str] = field(default_factory=list)
    left_added: List[str] = field(default_factory=list)
    left_updated: List[str] = field(default_factory=list)
    left_deleted: List[str] = field(default_factory=list)
    right_added: List[str] = field(default_factory=list)
    right_updated: List[str] = field(default_factory=list)
    right_deleted: List[str] = field(default_factory=list)
    both_changed: List[ConflictRecord] = field(default_factory=list)
    both_deleted: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def summary(self) -> Dict[str, int]:
        return {
            "unchanged": len(self.unchanged),
            "left_added": len(self.left_added),
            "left_updated": len(self.left_updated),
            "left_deleted": len(self.left_deleted),
            "right_added": len(self.right_added),
            "right_updated": len(self.right_updated),
            "right_deleted": len(self.right_deleted),
            "both_changed": len(self.both_changed),
            "both_deleted": len(self.both_deleted),
        }

    @property
    def has_changes(self) -> bool:
        counts = self.summary()
        counts.pop("unchanged")
        counts.pop("both_deleted")
        return any(counts.values())


def detect(
    checkpoint: Optional[Checkpoint],
    left_rows: Iterable[Row],
    right_rows: Iterable[Row],
    *,
    config_id: Optional[str] = None,
) -> DetectionResult:
    """
    Partition every row id seen on either side or in the checkpoint.

    Args:
        checkpoint: state from the last successful run. None means first sync.
        left_rows: canonical left rows.
        right_rows: canonical right rows.
        config_id: when given, a checkpoint recorded for another configuration
            is ignored with a warning and every row is treated as new.

    Returns:
        DetectionResult with rows, hashes and one bucket entry per id.
    """
    result = DetectionResult()
    previous: Dict[str, RowState] = {}
    if checkpoint is not None:
        if config_id is not None and checkpoint.config_id != config_id:
            msg = (
                f"Checkpoint belongs to configuration {checkpoint.config_id!r}, "
                f"not {config_id!r}; treating all rows as new"
            )
            logger.warning(msg)
            result.warnings.append(msg)
        else:
            previous = dict(checkpoint.rows)

    for row in left_rows:
        if row.id is None:
            result.warnings.append("Skipped a left row without an id")
            continue
        if row.id in result.left_rows:
            result.warnings.append(f"Duplicate left row id {row.id}; keeping the first")
            continue
        result.left_rows[row.id] = row
        result.left_hashes[row.id] = content_hash(row.fields)

    for index, row in enumerate(right_rows):
        if row.id is None:
            key = f"{UNLINKED_PREFIX}{row.ref if row.ref is not None else index}"
            result.right_rows[key] = row
            result.right_hashes[key] = content_hash(row.fields)
            result.right_added.append(key)
            continue
        if row.id in result.right_rows:
            result.warnings.append(f"Duplicate right row id {row.id}; keeping the first")
            continue
        result.right_rows[row.id] = row
        result.right_hashes[row.id] = content_hash(row.fields)

    seen = set(result.left_rows) | {k for k in result.right_rows if not k.startswith(UNLINKED_PREFIX)}
    for row_id in sorted(seen):
        _classify(result, row_id, previous.get(row_id))

    for row_id in sorted(set(previous) - seen):
        result.both_deleted.append(row_id)

    logger.info("Detected changes: %s", result.summary())
    return result


def _classify(result: DetectionResult, row_id: str, state: Optional[RowState]) -> None:
    left = result.left_rows.get(row_id)
    right = result.right_rows.get(row_id)
    left_hash = result.left_hashes.get(row_id)
    right_hash = result.right_hashes.get(row_id)

    if left is not None and right is not None:
        if state is None:
            if left_hash == right_hash:
                result.unchanged.append(row_id)
            else:
                result.both_changed.append(
                    ConflictRecord(row_id, ConflictType.BOTH_MODIFIED, left, right, None)
                )
            return
        left_changed = left_hash != state.left_hash
        right_changed = right_hash != state.right_hash
        if left_changed and right_changed:
            if left_hash == right_hash:
                result.unchanged.append(row_id)
            else:
                result.both_changed.append(
                    ConflictRecord(row_id, ConflictType.BOTH_MODIFIED, left, right, state)
                )
        elif left_changed:
            result.left_updated.append(row_id)
        elif right_changed:
            result.right_updated.append(row_id)
        else:
            result.unchanged.append(row_id)
        return

    if left is not None:
        if state is None:
            result.left_added.append(row_id)
        elif left_hash != state.left_hash:
            result.both_changed.append(
                ConflictRecord(row_id, ConflictType.DELETED_ON_RIGHT, left, None, state)
            )
        else:
            result.right_deleted.append(row_id)
        return

    if state is None:
        result.right_added.append(row_id)
    elif right_hash != state.right_hash:
        result.both_changed.append(
            ConflictRecord(row_id, ConflictType.DELETED_ON_LEFT, None, right, state)
        )
    else:
        result.left_deleted.append(row_id)
