"""
Field values and rows.

A field value is one of a fixed set of kinds (a tagged union of frozen
dataclasses). None stands for an empty field. Rows carry a logical id shared by
both endpoints, their fields, and an optional last-modified timestamp.

content_hash() is what change detection compares: two rows hash alike when
their values are equal after normalisation (trimmed strings, rounded numbers,
sorted lists, linked records reduced to their labels).
"""
import hashlib
import json
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, Mapping, Optional, Tuple, Union

NUMBER_PRECISION = 6


@dataclass(frozen=True)
class TextValue:
    value: str
    kind = "text"

    def normalized(self) -> Any:
        text = self.value.strip()
        return text or None


@dataclass(frozen=True)
class NumberValue:
    value: float
    kind = "number"

    def normalized(self) -> Any:
        return round(float(self.value), NUMBER_PRECISION)


@dataclass(frozen=True)
class BooleanValue:
    value: bool
    kind = "boolean"

    def normalized(self) -> Any:
        # unchecked and empty are the same state
        return True if self.value else None


@dataclass(frozen=True)
class DateValue:
    value: Union[date, datetime]
    kind = "date"

    def normalized(self) -> Any:
        return self.value.isoformat()


@dataclass(frozen=True)
class ChoiceValue:
    """Selected option names. A single-choice field holds at most one."""

    options: Tuple[str, ...]
    kind = "choice"

    def normalized(self) -> Any:
        cleaned = sorted(o.strip() for o in self.options if o and o.strip())
        return cleaned or None


@dataclass(frozen=True)
class TextListValue:
    items: Tuple[str, ...]
    kind = "text_list"

    def normalized(self) -> Any:
        cleaned = sorted(i.strip() for i in self.items if i and i.strip())
        return cleaned or None


@dataclass(frozen=True)
class LinkedRef:
    """A reference to a record in another table, with its display label when known."""

    id: Optional[str] = None
    label: Optional[str] = None

    def display(self) -> str:
        return self.label if self.label else (self.id or "")


@dataclass(frozen=True)
class LinkValue:
    refs: Tuple[LinkedRef, ...]
    kind = "link"

    def normalized(self) -> Any:
        keys = sorted(r.display().strip() for r in self.refs if r.display().strip())
        return keys or None

    def labels(self) -> Tuple[str, ...]:
        return tuple(r.display() for r in self.refs)


@dataclass(frozen=True)
class AttachmentValue:
    urls: Tuple[str, ...]
    kind = "attachment"

    def normalized(self) -> Any:
        cleaned = sorted(u.strip() for u in self.urls if u and u.strip())
        return cleaned or None


FieldValue = Union[
    TextValue,
    NumberValue,
    BooleanValue,
    DateValue,
    ChoiceValue,
    TextListValue,
    LinkValue,
    AttachmentValue,
]


@dataclass(frozen=True)
class Row:
    """
    One record on either endpoint.

    Attributes:
        id: logical identifier shared by both sides. None for a spreadsheet row
            that has never been linked to a left record.
        fields: field key -> value (None when empty). Left rows are keyed by
            field id, right rows by column index as a string.
        modified_at: last-modified timestamp reported by the endpoint, if any.
        ref: endpoint-native locator (e.g. sheet row number) used on update.
    """

    id: Optional[str]
    fields: Mapping[str, Optional[FieldValue]] = field(default_factory=dict)
    modified_at: Optional[datetime] = None
    ref: Optional[str] = None

    def get(self, key: str) -> Optional[FieldValue]:
        return self.fields.get(key)

    def with_fields(self, fields: Mapping[str, Optional[FieldValue]]) -> "Row":
        return Row(id=self.id, fields=dict(fields), modified_at=self.modified_at, ref=self.ref)

    def with_id(self, row_id: str) -> "Row":
        return Row(id=row_id, fields=self.fields, modified_at=self.modified_at, ref=self.ref)


# ─── Hashing ──────────────────────────────────────────────────────────────────

def normalize_fields(fields: Mapping[str, Optional[FieldValue]]) -> Dict[str, Any]:
    """Drop empty values and reduce the rest to their JSON-safe normalised form."""
    out: Dict[str, Any] = {}
    for key, value in fields.items():
        if value is None:
            continue
        norm = value.normalized()
        if norm is None:
            continue
        out[str(key)] = norm
    return out


def content_hash(fields: Mapping[str, Optional[FieldValue]]) -> str:
    """SHA-256 over the key-sorted JSON of the normalised fields."""
    payload = json.dumps(normalize_fields(fields), sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def is_empty(value: Optional[FieldValue]) -> bool:
    return value is None or value.normalized() is None
