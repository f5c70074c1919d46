"""
What the engine needs from an endpoint client.

Concrete clients (the relational-record API on the left, the spreadsheet API
on the right) live outside this package. They handle their own auth,
pagination and wire formats, and raise the typed errors from tablesync.errors.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Protocol, Sequence, Tuple, runtime_checkable

from tablesync.engine.values import Row


class FieldType(str, Enum):
    TEXT = "text"
    LONG_TEXT = "long_text"
    NUMBER = "number"
    CURRENCY = "currency"
    PERCENT = "percent"
    CHECKBOX = "checkbox"
    DATE = "date"
    DATETIME = "datetime"
    SINGLE_SELECT = "single_select"
    MULTI_SELECT = "multi_select"
    LINK = "link"
    ATTACHMENT = "attachment"
    EMAIL = "email"
    URL = "url"
    PHONE = "phone"
    FORMULA = "formula"
    LOOKUP = "lookup"
    ROLLUP = "rollup"
    AUTO_NUMBER = "auto_number"
    CREATED_TIME = "created_time"
    MODIFIED_TIME = "modified_time"


READ_ONLY_TYPES = frozenset({
    FieldType.FORMULA,
    FieldType.LOOKUP,
    FieldType.ROLLUP,
    FieldType.AUTO_NUMBER,
    FieldType.CREATED_TIME,
    FieldType.MODIFIED_TIME,
})

NUMERIC_TYPES = frozenset({FieldType.NUMBER, FieldType.CURRENCY, FieldType.PERCENT})
CHOICE_TYPES = frozenset({FieldType.SINGLE_SELECT, FieldType.MULTI_SELECT})


@dataclass(frozen=True)
class SchemaField:
    id: str
    name: str
    type: FieldType
    choices: Tuple[str, ...] = ()
    linked_table_id: Optional[str] = None
    read_only: bool = False

    @property
    def is_writable(self) -> bool:
        return not self.read_only and self.type not in READ_ONLY_TYPES


@dataclass(frozen=True)
class Schema:
    table: str
    fields: Tuple[SchemaField, ...] = ()
    primary_field_id: Optional[str] = None

    def field_by_id(self, field_id: str) -> Optional[SchemaField]:
        for f in self.fields:
            if f.id == field_id:
                return f
        return None

    @property
    def choice_sets(self) -> Dict[str, Tuple[str, ...]]:
        """Allowed values per choice field, keyed by field id."""
        return {f.id: f.choices for f in self.fields if f.type in CHOICE_TYPES}


@dataclass(frozen=True)
class ValidationRule:
    """Dropdown constraint for one spreadsheet column."""

    column_index: int
    choices: Tuple[str, ...]
    show_dropdown: bool
    strict: bool


@dataclass(frozen=True)
class RowSelector:
    """Which rows to list. ids=None means the whole table."""

    table: Optional[str] = None
    ids: Optional[Tuple[str, ...]] = None


@runtime_checkable
class EndpointClient(Protocol):
    """Async client contract. `table=None` means the client's configured table."""

    max_batch_size: int

    async def list_rows(self, selector: RowSelector) -> List[Row]:
        ...

    async def create_rows(self, rows: Sequence[Row], *, table: Optional[str] = None) -> List[Row]:
        """Create rows; returns them with their assigned ids, in input order."""
        ...

    async def update_rows(self, rows: Sequence[Row], *, table: Optional[str] = None) -> List[Row]:
        ...

    async def delete_rows(self, ids: Sequence[str], *, table: Optional[str] = None) -> None:
        ...

    async def get_schema(self, table: Optional[str] = None) -> Schema:
        ...


@runtime_checkable
class ValidatingClient(Protocol):
    """Optional extra for spreadsheet clients that can enforce dropdown choices on columns."""

    async def set_validations(self, rules: Sequence[ValidationRule], *, table: Optional[str] = None) -> None:
        """Replace the data validation of each rule's column. Rows below the header only."""
        ...
