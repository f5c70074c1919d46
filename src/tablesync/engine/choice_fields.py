"""
Choice-field inspection.

Finds the left table's single- and multi-choice fields, works out which
spreadsheet column each one lands in, and produces the constraint the
spreadsheet should enforce:

  - single choice -> strict: a value outside the option list is rejected
  - multi choice  -> permissive: comma-separated entries, checked item by item

A field that is in the mapping uses its mapped column. A field that isn't
falls back to its position in the schema; this assumes the schema's field
order matches the sheet's column order, so the result is flagged with
positional=True for callers that want to treat it with suspicion.
"""
import logging
from dataclasses import dataclass
from typing import List, Mapping, Optional, Sequence, Tuple, Union

from tablesync.engine.contracts import CHOICE_TYPES, FieldType, SchemaField, ValidationRule

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DropdownFieldInfo:
    field_id: str
    field_name: str
    field_type: FieldType
    column_index: int
    choices: Tuple[str, ...]
    positional: bool = False

    @property
    def strict(self) -> bool:
        return self.field_type is FieldType.SINGLE_SELECT


def detect(
    schema_fields: Sequence[SchemaField],
    field_mapping: Optional[Mapping[str, int]] = None,
    warnings: Optional[List[str]] = None,
) -> List[DropdownFieldInfo]:
    """
    Detect choice fields and their spreadsheet columns.

    Args:
        schema_fields: left table fields, in schema order.
        field_mapping: left field id -> column index.
        warnings: if given, skipped-field warnings are appended here too.

    Returns:
        One DropdownFieldInfo per choice field that has options.
    """
    mapping = field_mapping or {}
    found = []
    for index, schema_field in enumerate(schema_fields):
        if schema_field.type not in CHOICE_TYPES:
            continue
        if not schema_field.choices:
            msg = f"Choice field {schema_field.name!r} has no options defined; skipping validation"
            logger.warning(msg)
            if warnings is not None:
                warnings.append(msg)
            continue

        if schema_field.id in mapping:
            column, positional = mapping[schema_field.id], False
        else:
            column, positional = index, True
            logger.debug(
                "Choice field %r has no column mapping; using position %d",
                schema_field.name,
                index,
            )

        found.append(
            DropdownFieldInfo(
                field_id=schema_field.id,
                field_name=schema_field.name,
                field_type=schema_field.type,
                column_index=column,
                choices=tuple(schema_field.choices),
                positional=positional,
            )
        )
    return found


def to_validation_rule(info: DropdownFieldInfo) -> ValidationRule:
    return ValidationRule(
        column_index=info.column_index,
        choices=info.choices,
        show_dropdown=True,
        strict=info.strict,
    )


def validate_value(value: Union[str, Sequence[str]], info: DropdownFieldInfo) -> Tuple[bool, Optional[str]]:
    """
    Check a value against a field's options.

    Multi-choice values may be a list or a comma-separated string.

    Returns:
        (True, None) when valid, otherwise (False, message).
    """
    available = ", ".join(info.choices)
    if info.field_type is FieldType.SINGLE_SELECT:
        text = value if isinstance(value, str) else ", ".join(value)
        if text not in info.choices:
            return False, f"Value {text!r} is not a valid choice. Available: {available}"
        return True, None

    items = split_multi(value)
    invalid = [item for item in items if item not in info.choices]
    if invalid:
        return False, f"Invalid choices: {', '.join(invalid)}. Available: {available}"
    return True, None


def split_multi(value: Union[str, Sequence[str]]) -> List[str]:
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    return [str(part).strip() for part in value if str(part).strip()]
