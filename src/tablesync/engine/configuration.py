"""Sync configuration: which tables, which fields, which way, and who wins."""
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Mapping, Optional


class SyncDirection(str, Enum):
    LEFT_TO_RIGHT = "left_to_right"
    RIGHT_TO_LEFT = "right_to_left"
    BIDIRECTIONAL = "bidirectional"

    @property
    def writes_right(self) -> bool:
        return self in (SyncDirection.LEFT_TO_RIGHT, SyncDirection.BIDIRECTIONAL)

    @property
    def writes_left(self) -> bool:
        return self in (SyncDirection.RIGHT_TO_LEFT, SyncDirection.BIDIRECTIONAL)


class ConflictPolicy(str, Enum):
    LEFT_WINS = "left_wins"
    RIGHT_WINS = "right_wins"
    NEWEST_WINS = "newest_wins"


@dataclass(frozen=True)
class SyncConfiguration:
    """
    One pairing of a left table with a right table.

    field_mapping maps a left field id to a right column index. Only mapped
    fields take part in the sync. conflict_policy is consulted only when
    direction is BIDIRECTIONAL.
    """

    id: str
    left_table: str
    right_table: str
    field_mapping: Mapping[str, int]
    direction: SyncDirection = SyncDirection.BIDIRECTIONAL
    conflict_policy: ConflictPolicy = ConflictPolicy.LEFT_WINS
    name: str = ""
    active: bool = True
    resolve_links: bool = True
    create_missing_links: bool = False
    dry_run: bool = False
    label_fields: Dict[str, str] = field(default_factory=dict)

    def column_for(self, field_id: str) -> Optional[int]:
        return self.field_mapping.get(field_id)
