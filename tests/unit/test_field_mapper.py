"""Tests for FieldMapper conversions."""
from datetime import date, datetime, timezone

import pytest

from tablesync.engine.configuration import SyncConfiguration
from tablesync.engine.contracts import FieldType, Schema, SchemaField
from tablesync.engine.cross_reference import CrossReferenceResolver
from tablesync.engine.field_mapper import FieldMapper, display_text, format_number
from tablesync.engine.values import (
    BooleanValue,
    ChoiceValue,
    DateValue,
    LinkedRef,
    LinkValue,
    NumberValue,
    Row,
    TextValue,
    content_hash,
)
from tablesync.errors import TransformError, ValidationError

from fakes import contacts_schema

MAPPING = {"fldName": 0, "fldEmail": 1, "fldScore": 2, "fldStatus": 3, "fldTags": 4, "fldCompany": 5}


def _config(**overrides):
    values = dict(id="cfg", left_table="tblMain", right_table="Sheet1", field_mapping=MAPPING)
    values.update(overrides)
    return SyncConfiguration(**values)


def _sheet_row(cells, row_id="rec1"):
    return Row(
        id=row_id,
        fields={str(col): TextValue(text) for col, text in cells.items()},
        ref="2",
    )


@pytest.fixture(name="resolver")
def resolver_fixture(left, left_limiter, retry, clock):
    left.add({"fldCoName": TextValue("Acme")}, table="tblCompanies", row_id="co1")
    return CrossReferenceResolver(left, left_limiter, retry, clock=clock)


@pytest.fixture(name="mapper")
def mapper_fixture(resolver):
    return FieldMapper(_config(), contacts_schema(), resolver)


class TestConstruction:
    def test_unknown_mapped_field_warns(self):
        config = _config(field_mapping={"fldName": 0, "fldGone": 1})
        mapper = FieldMapper(config, contacts_schema())
        assert list(mapper.mapped_fields) == ["fldName"]
        assert any("fldGone" in w for w in mapper.warnings)

    def test_choice_field_without_options_warns(self):
        schema = Schema(
            table="tblMain",
            primary_field_id="fldName",
            fields=(
                SchemaField("fldName", "Name", FieldType.TEXT),
                SchemaField("fldKind", "Kind", FieldType.SINGLE_SELECT),
            ),
        )
        mapper = FieldMapper(_config(field_mapping={"fldName": 0, "fldKind": 1}), schema)
        assert any("Kind" in w for w in mapper.warnings)


class TestLeftToCanonical:
    async def test_projects_mapped_fields_and_labels_links(self, mapper):
        row = Row(id="rec1", fields={
            "fldName": TextValue("Ada"),
            "fldUnmapped": TextValue("ignored"),
            "fldCompany": LinkValue((LinkedRef(id="co1"),)),
        })
        mapped = await mapper.left_to_canonical([row])
        canonical = mapped.rows[0]
        assert "fldUnmapped" not in canonical.fields
        assert canonical.get("fldCompany").labels() == ("Acme",)
        assert canonical.get("fldCompany").refs[0].id == "co1"

    async def test_unknown_link_keeps_id_with_warning(self, mapper):
        row = Row(id="rec1", fields={"fldCompany": LinkValue((LinkedRef(id="coX"),))})
        mapped = await mapper.left_to_canonical([row])
        assert mapped.rows[0].get("fldCompany").labels() == ("coX",)
        assert any("no label" in w for w in mapped.warnings)

    async def test_link_resolution_off(self, resolver, left):
        mapper = FieldMapper(_config(resolve_links=False), contacts_schema(), resolver)
        row = Row(id="rec1", fields={"fldCompany": LinkValue((LinkedRef(id="co1"),))})
        await mapper.left_to_canonical([row])
        assert left.count("list_rows") == 0


class TestRightToCanonical:
    def test_parses_by_left_type(self, mapper):
        row = _sheet_row({0: "Ada", 2: "$1,234.50", 3: "Done", 4: "red, blue", 5: "Acme"})
        mapped = mapper.right_to_canonical([row])
        canonical = mapped.rows[0]
        assert canonical.get("fldName") == TextValue("Ada")
        assert canonical.get("fldScore") == NumberValue(1234.5)
        assert canonical.get("fldStatus") == ChoiceValue(("Done",))
        assert canonical.get("fldTags") == ChoiceValue(("red", "blue"))
        assert canonical.get("fldCompany") == LinkValue((LinkedRef(label="Acme"),))
        assert canonical.get("fldEmail") is None

    def test_hash_matches_left_after_round_trip(self, mapper):
        left_row = Row(id="rec1", fields={
            "fldName": TextValue("Ada"),
            "fldScore": NumberValue(42.0),
            "fldTags": ChoiceValue(("blue", "red")),
            "fldCompany": LinkValue((LinkedRef(id="co1", label="Acme"),)),
        })
        sheet_row = mapper.render_right(left_row, ref="2")
        back = mapper.right_to_canonical([sheet_row]).rows[0]
        assert content_hash(back.fields) == content_hash(left_row.fields)

    def test_bad_number_fails_the_row(self, mapper):
        mapped = mapper.right_to_canonical([_sheet_row({0: "Ada", 2: "lots"}), _sheet_row({0: "Bob"}, "rec2")])
        assert [r.id for r in mapped.rows] == ["rec2"]
        assert len(mapped.failures) == 1
        failure = mapped.failures[0]
        assert failure.key == "rec1"
        assert isinstance(failure.error, TransformError)
        assert failure.error.row_id == "rec1"

    def test_unlinked_row_keyed_by_ref(self, mapper):
        row = Row(id=None, fields={"2": TextValue("n/a")}, ref="9")
        mapped = mapper.right_to_canonical([row])
        assert mapped.failures[0].key == "9"


class TestCellParsing:
    @pytest.fixture(name="typed_mapper")
    def typed_mapper_fixture(self):
        schema = Schema(
            table="tblMain",
            fields=(
                SchemaField("fldDone", "Done", FieldType.CHECKBOX),
                SchemaField("fldDue", "Due", FieldType.DATE),
                SchemaField("fldAt", "At", FieldType.DATETIME),
                SchemaField("fldPct", "Pct", FieldType.PERCENT),
            ),
        )
        mapping = {"fldDone": 0, "fldDue": 1, "fldAt": 2, "fldPct": 3}
        return FieldMapper(_config(field_mapping=mapping), schema)

    @pytest.mark.parametrize("text,expected", [("TRUE", True), ("yes", True), ("0", False), ("False", False)])
    def test_checkbox_words(self, typed_mapper, text, expected):
        row = typed_mapper.right_to_canonical([_sheet_row({0: text})]).rows[0]
        assert row.get("fldDone") == BooleanValue(expected)

    def test_checkbox_rejects_other_text(self, typed_mapper):
        mapped = typed_mapper.right_to_canonical([_sheet_row({0: "maybe"})])
        assert "TRUE/FALSE" in str(mapped.failures[0].error)

    @pytest.mark.parametrize("text", ["2025-01-15", "01/15/2025", "2025-01-15T10:00:00"])
    def test_date_formats(self, typed_mapper, text):
        row = typed_mapper.right_to_canonical([_sheet_row({1: text})]).rows[0]
        assert row.get("fldDue") == DateValue(date(2025, 1, 15))

    def test_datetime_with_z(self, typed_mapper):
        row = typed_mapper.right_to_canonical([_sheet_row({2: "2025-01-15T10:00:00Z"})]).rows[0]
        assert row.get("fldAt") == DateValue(datetime(2025, 1, 15, 10, 0, tzinfo=timezone.utc))

    def test_percent(self, typed_mapper):
        row = typed_mapper.right_to_canonical([_sheet_row({3: "12.5%"})]).rows[0]
        assert row.get("fldPct") == NumberValue(12.5)

    def test_blank_cell_is_empty(self, typed_mapper):
        row = typed_mapper.right_to_canonical([_sheet_row({1: "   "})]).rows[0]
        assert row.get("fldDue") is None


class TestCanonicalToLeft:
    async def test_choice_names_match_case_insensitively(self, mapper):
        row = Row(id="rec1", fields={"fldStatus": ChoiceValue(("done",))})
        mapped = await mapper.canonical_to_left([row])
        assert mapped.rows[0].get("fldStatus") == ChoiceValue(("Done",))

    async def test_strict_choice_rejects_row(self, mapper):
        row = Row(id="rec1", fields={"fldStatus": ChoiceValue(("Blocked",))})
        mapped = await mapper.canonical_to_left([row])
        assert mapped.rows == []
        error = mapped.failures[0].error
        assert isinstance(error, ValidationError)
        assert "Todo, Doing, Done" in str(error)

    async def test_multi_choice_drops_unknown_items(self, mapper):
        row = Row(id="rec1", fields={"fldTags": ChoiceValue(("red", "purple"))})
        mapped = await mapper.canonical_to_left([row])
        assert mapped.rows[0].get("fldTags") == ChoiceValue(("red",))
        assert any("purple" in w for w in mapped.warnings)

    async def test_labels_become_ids(self, mapper):
        row = Row(id="rec1", fields={"fldCompany": LinkValue((LinkedRef(label="acme"),))})
        mapped = await mapper.canonical_to_left([row])
        assert mapped.rows[0].get("fldCompany").refs == (LinkedRef(id="co1", label="Acme"),)

    async def test_unknown_label_dropped_with_warning(self, mapper):
        row = Row(id="rec1", fields={"fldCompany": LinkValue((LinkedRef(label="Initech"),))})
        mapped = await mapper.canonical_to_left([row])
        assert mapped.rows[0].get("fldCompany") is None
        assert any("Initech" in w for w in mapped.warnings)

    async def test_create_missing_links(self, mapper, left):
        row = Row(id="rec1", fields={"fldCompany": LinkValue((LinkedRef(label="Initech"),))})
        mapped = await mapper.canonical_to_left([row], create_missing=True)
        new_id = mapped.rows[0].get("fldCompany").refs[0].id
        assert left.rows("tblCompanies")[new_id].get("fldCoName") == TextValue("Initech")

    async def test_read_only_fields_skipped(self):
        schema = Schema(
            table="tblMain",
            fields=(
                SchemaField("fldName", "Name", FieldType.TEXT),
                SchemaField("fldTotal", "Total", FieldType.FORMULA),
            ),
        )
        mapper = FieldMapper(_config(field_mapping={"fldName": 0, "fldTotal": 1}), schema)
        row = Row(id="rec1", fields={"fldName": TextValue("Ada"), "fldTotal": NumberValue(3)})
        mapped = await mapper.canonical_to_left([row])
        assert "fldTotal" not in mapped.rows[0].fields
        assert any("Total" in w for w in mapper.warnings)


class TestFormatting:
    def test_display_text(self):
        assert display_text(NumberValue(3.0)) == "3"
        assert display_text(NumberValue(2.5)) == "2.5"
        assert display_text(BooleanValue(True)) == "TRUE"
        assert display_text(ChoiceValue(("a", "b"))) == "a, b"
        assert display_text(None) == ""

    def test_format_number(self):
        assert format_number(10) == "10"
        assert format_number(0.1) == "0.1"
