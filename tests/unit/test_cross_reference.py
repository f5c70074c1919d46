"""Tests for CrossReferenceResolver caching and lookups."""
import asyncio

import pytest

from tablesync.engine.cross_reference import CrossReferenceResolver, label_of, normalize_label
from tablesync.engine.values import ChoiceValue, TextValue
from tablesync.errors import TransientError


@pytest.fixture(name="resolver")
def resolver_fixture(left, left_limiter, retry, clock):
    left.add({"fldCoName": TextValue("Acme")}, table="tblCompanies", row_id="co1")
    left.add({"fldCoName": TextValue("Globex")}, table="tblCompanies", row_id="co2")
    return CrossReferenceResolver(left, left_limiter, retry, ttl_seconds=300, clock=clock)


def _list_calls(left, table="tblCompanies"):
    return [c for c in left.calls if c[0] == "list_rows" and c[1] == table]


class TestIdsToLabels:
    async def test_resolves_known_ids(self, resolver):
        lookup = await resolver.resolve_ids_to_labels("tblCompanies", ["co1", "co2"])
        assert lookup.resolved == {"co1": "Acme", "co2": "Globex"}
        assert lookup.missing == []

    async def test_unknown_id_is_missing(self, resolver):
        lookup = await resolver.resolve_ids_to_labels("tblCompanies", ["co1", "nope"])
        assert lookup.missing == ["nope"]

    async def test_fetches_only_uncached_ids(self, resolver, left):
        await resolver.resolve_ids_to_labels("tblCompanies", ["co1"])
        await resolver.resolve_ids_to_labels("tblCompanies", ["co1", "co2"])
        calls = _list_calls(left)
        assert [c[2] for c in calls] == [("co1",), ("co2",)]

    async def test_cache_hit_makes_no_call(self, resolver, left):
        await resolver.resolve_ids_to_labels("tblCompanies", ["co1"])
        await resolver.resolve_ids_to_labels("tblCompanies", ["co1"])
        assert len(_list_calls(left)) == 1

    async def test_ttl_expiry_refetches(self, resolver, left, clock):
        await resolver.resolve_ids_to_labels("tblCompanies", ["co1"])
        left.rows("tblCompanies")["co1"] = left.rows("tblCompanies")["co1"].with_fields(
            {"fldCoName": TextValue("Acme Corp")}
        )
        clock.advance(301)
        lookup = await resolver.resolve_ids_to_labels("tblCompanies", ["co1"])
        assert lookup.resolved == {"co1": "Acme Corp"}
        assert len(_list_calls(left)) == 2

    async def test_invalidate(self, resolver, left):
        await resolver.resolve_ids_to_labels("tblCompanies", ["co1"])
        assert resolver.cached_tables() == ["tblCompanies"]
        resolver.invalidate("tblCompanies")
        assert resolver.cached_tables() == []
        await resolver.resolve_ids_to_labels("tblCompanies", ["co1"])
        assert len(_list_calls(left)) == 2

    async def test_fetch_failure_becomes_warning(self, resolver, left):
        left.fail["list_rows"] = TransientError("503", status_code=503)
        lookup = await resolver.resolve_ids_to_labels("tblCompanies", ["co1"])
        assert lookup.missing == ["co1"]
        assert len(lookup.warnings) == 1
        assert "tblCompanies" in lookup.warnings[0]

    async def test_transient_failure_is_retried(self, resolver, left):
        left.transient["list_rows"] = 1
        lookup = await resolver.resolve_ids_to_labels("tblCompanies", ["co2"])
        assert lookup.resolved == {"co2": "Globex"}

    async def test_empty_input_makes_no_call(self, resolver, left):
        lookup = await resolver.resolve_ids_to_labels("tblCompanies", [])
        assert lookup.resolved == {}
        assert left.calls == []

    async def test_concurrent_lookups_share_one_fill(self, resolver, left):
        await asyncio.gather(
            resolver.resolve_labels_to_ids("tblCompanies", ["Acme"]),
            resolver.resolve_labels_to_ids("tblCompanies", ["Globex"]),
        )
        assert len(_list_calls(left)) == 1


class TestLabelsToIds:
    async def test_case_and_whitespace_insensitive(self, resolver):
        lookup = await resolver.resolve_labels_to_ids("tblCompanies", ["  acme ", "GLOBEX"])
        assert lookup.resolved == {"  acme ": "co1", "GLOBEX": "co2"}
        assert lookup.labels == {"  acme ": "Acme", "GLOBEX": "Globex"}

    async def test_missing_without_create(self, resolver, left):
        lookup = await resolver.resolve_labels_to_ids("tblCompanies", ["Initech"])
        assert lookup.missing == ["Initech"]
        assert left.count("create_rows") == 0

    async def test_create_missing(self, resolver, left):
        lookup = await resolver.resolve_labels_to_ids("tblCompanies", ["Acme", "Initech"], create_missing=True)
        new_id = lookup.created["Initech"]
        assert lookup.resolved["Initech"] == new_id
        assert lookup.resolved["Acme"] == "co1"
        assert lookup.missing == []
        assert left.rows("tblCompanies")[new_id].get("fldCoName") == TextValue("Initech")

    async def test_created_records_are_cached(self, resolver, left):
        await resolver.resolve_labels_to_ids("tblCompanies", ["Initech"], create_missing=True)
        lookup = await resolver.resolve_labels_to_ids("tblCompanies", ["initech"])
        assert "initech" in lookup.resolved
        assert left.count("create_rows") == 1

    async def test_creates_in_batches(self, resolver, left):
        left.max_batch_size = 2
        labels = [f"New {i}" for i in range(5)]
        lookup = await resolver.resolve_labels_to_ids("tblCompanies", labels, create_missing=True)
        assert len(lookup.created) == 5
        assert [len(batch) for batch in left.batches("create_rows")] == [2, 2, 1]

    async def test_create_failure_leaves_missing(self, resolver, left):
        left.fail["create_rows"] = TransientError("503", status_code=503)
        lookup = await resolver.resolve_labels_to_ids("tblCompanies", ["Initech"], create_missing=True)
        assert lookup.missing == ["Initech"]
        assert lookup.warnings

    async def test_label_field_override(self, left, left_limiter, retry, clock):
        left.add({"fldCode": TextValue("AC")}, table="tblCodes", row_id="c1")
        resolver = CrossReferenceResolver(
            left, left_limiter, retry, clock=clock, label_fields={"tblCodes": "fldCode"}
        )
        lookup = await resolver.resolve_labels_to_ids("tblCodes", ["ac"])
        assert lookup.resolved == {"ac": "c1"}
        assert left.count("get_schema") == 0

    async def test_changed_label_field_drops_cache(self, resolver, left):
        left.add({"fldCoName": TextValue("Acme"), "fldCode": TextValue("AC")}, table="tblCompanies", row_id="co9")
        first = await resolver.resolve_labels_to_ids("tblCompanies", ["ac"])
        assert first.missing == ["ac"]

        resolver.use_label_fields({"tblCompanies": "fldCode"})
        second = await resolver.resolve_labels_to_ids("tblCompanies", ["ac"])
        assert second.resolved == {"ac": "co9"}

        fetches = left.count("list_rows")
        resolver.use_label_fields({"tblCompanies": "fldCode"})
        await resolver.resolve_labels_to_ids("tblCompanies", ["ac"])
        assert left.count("list_rows") == fetches

    async def test_blank_labels_ignored(self, resolver, left):
        lookup = await resolver.resolve_labels_to_ids("tblCompanies", ["", "   "])
        assert lookup.resolved == {}
        assert left.calls == []


class TestHelpers:
    def test_normalize_label(self):
        assert normalize_label("  Acme   Corp ") == "acme corp"

    def test_label_of(self):
        assert label_of(None) == ""
        assert label_of(TextValue(" Acme ")) == "Acme"
        assert label_of(ChoiceValue(("b", "a"))) == "a, b"
