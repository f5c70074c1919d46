"""
Row conversion between the two endpoints and the canonical form.

The canonical row is keyed by left field id and holds only mapped fields.
Linked records are carried as labels, which is how the spreadsheet shows
them, so a left row and the sheet row written from it hash alike.

    left row  --left_to_canonical-->   canonical  --render_right-->  right row
    right row --right_to_canonical-->  canonical  --canonical_to_left--> left row

Spreadsheet cells arrive as text (or as loosely-typed values) and are parsed
by the type of the left field they map to. A cell that cannot be parsed makes
the whole row fail with a TransformError; the orchestrator skips that row for
the run and keeps its checkpoint entry as it was.
"""
import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Dict, Iterable, List, Optional, Set

from tablesync.engine import choice_fields
from tablesync.engine.configuration import SyncConfiguration
from tablesync.engine.contracts import (
    CHOICE_TYPES,
    NUMERIC_TYPES,
    FieldType,
    Schema,
    SchemaField,
)
from tablesync.engine.cross_reference import CrossReferenceResolver
from tablesync.engine.values import (
    AttachmentValue,
    BooleanValue,
    ChoiceValue,
    DateValue,
    FieldValue,
    LinkedRef,
    LinkValue,
    NumberValue,
    Row,
    TextListValue,
    TextValue,
)
from tablesync.errors import SyncEngineError, TransformError, ValidationError

logger = logging.getLogger(__name__)

TRUE_WORDS = frozenset({"TRUE", "1", "YES", "Y", "CHECKED"})
FALSE_WORDS = frozenset({"FALSE", "0", "NO", "N", ""})
LIST_SEPARATOR = ", "


@dataclass
class RowFailure:
    key: str
    error: SyncEngineError


@dataclass
class MappedRows:
    rows: List[Row] = field(default_factory=list)
    failures: List[RowFailure] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


class FieldMapper:
    """Converts rows for one sync configuration."""

    def __init__(
        self,
        config: SyncConfiguration,
        left_schema: Schema,
        resolver: Optional[CrossReferenceResolver] = None,
    ):
        self.config = config
        self.schema = left_schema
        self.resolver = resolver
        self.warnings: List[str] = []
        self._fields: Dict[str, SchemaField] = {}
        for field_id in config.field_mapping:
            schema_field = left_schema.field_by_id(field_id)
            if schema_field is None:
                self._warn_once(f"Mapped field {field_id} is not in the schema of {config.left_table}; skipping it")
                continue
            self._fields[field_id] = schema_field
        self._dropdowns = {
            info.field_id: info
            for info in choice_fields.detect(left_schema.fields, config.field_mapping, self.warnings)
        }

    @property
    def mapped_fields(self) -> Dict[str, SchemaField]:
        return dict(self._fields)

    @property
    def dropdowns(self) -> List[choice_fields.DropdownFieldInfo]:
        return list(self._dropdowns.values())

    # ─── Left -> canonical ────────────────────────────────────────────────────

    async def left_to_canonical(self, rows: Iterable[Row]) -> MappedRows:
        """Project left rows onto mapped fields and turn link ids into labels."""
        rows = list(rows)
        result = MappedRows()
        labels = await self._labels_for_links(rows, result.warnings)
        for row in rows:
            fields: Dict[str, Optional[FieldValue]] = {}
            for field_id, schema_field in self._fields.items():
                value = row.get(field_id)
                if isinstance(value, LinkValue):
                    table = schema_field.linked_table_id or ""
                    value = LinkValue(tuple(
                        LinkedRef(id=ref.id, label=ref.label or labels.get((table, ref.id or "")))
                        for ref in value.refs
                    ))
                fields[field_id] = value
            result.rows.append(row.with_fields(fields))
        return result

    async def _labels_for_links(self, rows: List[Row], warnings: List[str]) -> Dict[tuple, str]:
        if self.resolver is None or not self.config.resolve_links:
            return {}
        wanted: Dict[str, Set[str]] = {}
        for field_id, schema_field in self._fields.items():
            if schema_field.type is not FieldType.LINK or not schema_field.linked_table_id:
                continue
            for row in rows:
                value = row.get(field_id)
                if isinstance(value, LinkValue):
                    ids = wanted.setdefault(schema_field.linked_table_id, set())
                    ids.update(ref.id for ref in value.refs if ref.id and not ref.label)

        labels: Dict[tuple, str] = {}
        for table, ids in wanted.items():
            lookup = await self.resolver.resolve_ids_to_labels(table, sorted(ids))
            warnings.extend(lookup.warnings)
            if lookup.missing:
                warnings.append(
                    f"{len(lookup.missing)} linked record(s) in {table} have no label; showing ids"
                )
            for row_id, label in lookup.resolved.items():
                labels[(table, row_id)] = label
        return labels

    # ─── Right -> canonical ───────────────────────────────────────────────────

    def right_to_canonical(self, rows: Iterable[Row]) -> MappedRows:
        """Parse spreadsheet cells by the type of the left field each column maps to."""
        result = MappedRows()
        for index, row in enumerate(rows):
            key = row.id or (row.ref if row.ref is not None else f"#{index}")
            try:
                fields = {
                    field_id: self._parse_cell(schema_field, row.get(str(self.config.field_mapping[field_id])))
                    for field_id, schema_field in self._fields.items()
                }
            except TransformError as exc:
                exc.row_id = key
                result.failures.append(RowFailure(key=key, error=exc))
                continue
            result.rows.append(row.with_fields(fields))
        return result

    def _parse_cell(self, schema_field: SchemaField, cell: Optional[FieldValue]) -> Optional[FieldValue]:
        if cell is None:
            return None
        ftype = schema_field.type

        # values already of the right kind pass straight through
        if ftype in NUMERIC_TYPES and isinstance(cell, NumberValue):
            return cell
        if ftype is FieldType.CHECKBOX and isinstance(cell, BooleanValue):
            return cell
        if ftype in (FieldType.DATE, FieldType.DATETIME) and isinstance(cell, DateValue):
            return cell

        text = display_text(cell).strip()
        if not text:
            return None

        if ftype in NUMERIC_TYPES or ftype is FieldType.AUTO_NUMBER:
            return NumberValue(_parse_number(text, schema_field))
        if ftype is FieldType.CHECKBOX:
            upper = text.upper()
            if upper in TRUE_WORDS:
                return BooleanValue(True)
            if upper in FALSE_WORDS:
                return BooleanValue(False)
            raise TransformError(f"Cannot convert {text!r} to checkbox for {schema_field.name} (use TRUE/FALSE)")
        if ftype is FieldType.DATE:
            return DateValue(_parse_date(text, schema_field))
        if ftype in (FieldType.DATETIME, FieldType.CREATED_TIME, FieldType.MODIFIED_TIME):
            return DateValue(_parse_datetime(text, schema_field))
        if ftype is FieldType.SINGLE_SELECT:
            return ChoiceValue((text,))
        if ftype is FieldType.MULTI_SELECT:
            return ChoiceValue(tuple(choice_fields.split_multi(text)))
        if ftype is FieldType.LINK:
            return LinkValue(tuple(LinkedRef(label=part) for part in choice_fields.split_multi(text)))
        if ftype is FieldType.ATTACHMENT:
            return AttachmentValue(tuple(choice_fields.split_multi(text)))
        if ftype is FieldType.LOOKUP:
            return TextListValue(tuple(choice_fields.split_multi(text)))
        if ftype in (FieldType.FORMULA, FieldType.ROLLUP):
            return _infer(text)
        return TextValue(text)

    # ─── Canonical -> right ───────────────────────────────────────────────────

    def render_right(self, row: Row, ref: Optional[str] = None) -> Row:
        """Spreadsheet row (column index -> display text) for a canonical row."""
        cells: Dict[str, Optional[FieldValue]] = {}
        for field_id in self._fields:
            value = row.get(field_id)
            text = display_text(value) if value is not None else ""
            cells[str(self.config.field_mapping[field_id])] = TextValue(text) if text else None
        return Row(id=row.id, fields=cells, modified_at=row.modified_at, ref=ref if ref is not None else row.ref)

    # ─── Canonical -> left ────────────────────────────────────────────────────

    async def canonical_to_left(self, rows: Iterable[Row], create_missing: Optional[bool] = None) -> MappedRows:
        """
        Build left rows from canonical rows.

        Read-only and attachment fields are skipped. Choice values are checked
        against the field's options: a bad single-choice value fails the row
        with a ValidationError, bad multi-choice items are dropped with a
        warning. Link labels are looked up (and optionally created) in the
        linked table; labels that can't be found are dropped with a warning.
        """
        rows = list(rows)
        result = MappedRows()
        if create_missing is None:
            create_missing = self.config.create_missing_links
        ids = await self._ids_for_labels(rows, create_missing, result.warnings)

        for index, row in enumerate(rows):
            key = row.id or (row.ref if row.ref is not None else f"#{index}")
            fields: Dict[str, Optional[FieldValue]] = {}
            try:
                for field_id, schema_field in self._fields.items():
                    if not schema_field.is_writable or schema_field.type is FieldType.ATTACHMENT:
                        self._warn_once(f"Field {schema_field.name} is not writable on the left; skipping it")
                        continue
                    value = row.get(field_id)
                    if schema_field.type in CHOICE_TYPES:
                        value = self._check_choice(schema_field, value, key, result.warnings)
                    elif schema_field.type is FieldType.LINK and isinstance(value, LinkValue):
                        value = self._link_ids(schema_field, value, ids, key, result.warnings)
                    fields[field_id] = value
            except ValidationError as exc:
                exc.row_id = key
                result.failures.append(RowFailure(key=key, error=exc))
                continue
            result.rows.append(row.with_fields(fields))
        return result

    def _check_choice(self, schema_field: SchemaField, value, key: str, warnings: List[str]):
        if value is None:
            return None
        info = self._dropdowns.get(schema_field.id)
        options = value.options if isinstance(value, ChoiceValue) else tuple(choice_fields.split_multi(display_text(value)))
        if info is None:
            return ChoiceValue(options)

        by_name = {c.casefold(): c for c in info.choices}
        matched = [by_name.get(o.strip().casefold()) for o in options if o.strip()]
        if info.strict:
            if not matched:
                return None
            if len(matched) > 1 or matched[0] is None:
                _, message = choice_fields.validate_value(LIST_SEPARATOR.join(options), info)
                raise ValidationError(
                    f"{schema_field.name}: {message}. Check that this column is mapped to the right field",
                    row_id=key,
                )
            return ChoiceValue((matched[0],))

        invalid = [o for o, m in zip(options, matched) if m is None]
        if invalid:
            _, message = choice_fields.validate_value(list(invalid), info)
            warnings.append(f"Row {key}, {schema_field.name}: {message}; dropping them")
        kept = tuple(m for m in matched if m is not None)
        return ChoiceValue(kept) if kept else None

    async def _ids_for_labels(self, rows: List[Row], create_missing: bool, warnings: List[str]) -> Dict[tuple, LinkedRef]:
        wanted: Dict[str, Set[str]] = {}
        for field_id, schema_field in self._fields.items():
            if schema_field.type is not FieldType.LINK or not schema_field.is_writable:
                continue
            for row in rows:
                value = row.get(field_id)
                if isinstance(value, LinkValue):
                    labels = wanted.setdefault(schema_field.linked_table_id or "", set())
                    labels.update(ref.label for ref in value.refs if ref.label and not ref.id)

        ids: Dict[tuple, LinkedRef] = {}
        if self.resolver is None:
            return ids
        for table, labels in wanted.items():
            if not table or not labels:
                continue
            lookup = await self.resolver.resolve_labels_to_ids(table, sorted(labels), create_missing=create_missing)
            warnings.extend(lookup.warnings)
            if lookup.created:
                logger.info("Created %d record(s) in linked table %s", len(lookup.created), table)
            for label, row_id in lookup.resolved.items():
                ids[(table, label)] = LinkedRef(id=row_id, label=lookup.labels.get(label, label))
        return ids

    def _link_ids(self, schema_field: SchemaField, value: LinkValue, ids: Dict[tuple, LinkedRef], key: str, warnings: List[str]):
        table = schema_field.linked_table_id or ""
        refs = []
        missing = []
        for ref in value.refs:
            if ref.id:
                refs.append(ref)
                continue
            match = ids.get((table, ref.label or ""))
            if match is None:
                missing.append(ref.label or "")
            else:
                refs.append(match)
        if missing:
            warnings.append(
                f"Row {key}, {schema_field.name}: linked record(s) not found: {', '.join(missing)}"
            )
        return LinkValue(tuple(refs)) if refs else None

    def _warn_once(self, message: str) -> None:
        if message not in self.warnings:
            logger.warning(message)
            self.warnings.append(message)


# ─── Formatting and parsing helpers ───────────────────────────────────────────

def display_text(value: Optional[FieldValue]) -> str:
    """How a value is shown in a spreadsheet cell."""
    if value is None:
        return ""
    if isinstance(value, TextValue):
        return value.value
    if isinstance(value, NumberValue):
        return format_number(value.value)
    if isinstance(value, BooleanValue):
        return "TRUE" if value.value else "FALSE"
    if isinstance(value, DateValue):
        return value.value.isoformat()
    if isinstance(value, ChoiceValue):
        return LIST_SEPARATOR.join(value.options)
    if isinstance(value, TextListValue):
        return LIST_SEPARATOR.join(value.items)
    if isinstance(value, LinkValue):
        return LIST_SEPARATOR.join(value.labels())
    if isinstance(value, AttachmentValue):
        return LIST_SEPARATOR.join(value.urls)
    return str(value)


def format_number(number: float) -> str:
    if float(number).is_integer():
        return str(int(number))
    return repr(float(number))


def _parse_number(text: str, schema_field: SchemaField) -> float:
    cleaned = text.replace(",", "").replace("$", "").strip()
    if cleaned.endswith("%"):
        cleaned = cleaned[:-1]
    try:
        return float(cleaned)
    except ValueError:
        raise TransformError(f"Cannot convert {text!r} to a number for {schema_field.name}")


def _parse_date(text: str, schema_field: SchemaField) -> date:
    try:
        return date.fromisoformat(text[:10])
    except ValueError:
        pass
    try:
        return datetime.strptime(text, "%m/%d/%Y").date()
    except ValueError:
        raise TransformError(f"Cannot parse {text!r} as a date for {schema_field.name}")


def _parse_datetime(text: str, schema_field: SchemaField) -> datetime:
    iso = text[:-1] + "+00:00" if text.endswith("Z") else text
    try:
        return datetime.fromisoformat(iso)
    except ValueError:
        raise TransformError(f"Cannot parse {text!r} as a date-time for {schema_field.name}")


def _infer(text: str) -> FieldValue:
    if text.upper() in ("TRUE", "FALSE"):
        return BooleanValue(text.upper() == "TRUE")
    try:
        return NumberValue(float(text.replace(",", "")))
    except ValueError:
        return TextValue(text)
