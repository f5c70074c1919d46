"""Tests for change detection against the checkpoint."""
from tablesync.engine.checkpoint import Checkpoint, RowState
from tablesync.engine.conflict_detector import UNLINKED_PREFIX, ConflictType, detect
from tablesync.engine.values import Row, TextValue, content_hash


def _row(row_id, name, ref=None):
    return Row(id=row_id, fields={"fldName": TextValue(name)}, ref=ref)


def _h(name):
    return content_hash({"fldName": TextValue(name)})


def _checkpoint(config_id="cfg", **states):
    """states: row_id -> (left name, right name); None means no hash."""
    rows = {}
    for row_id, (left_name, right_name) in states.items():
        rows[row_id] = RowState(
            row_id,
            left_hash=_h(left_name) if left_name is not None else None,
            right_hash=_h(right_name) if right_name is not None else None,
        )
    return Checkpoint(config_id=config_id, rows=rows)


def _buckets(result):
    return {name: count for name, count in result.summary().items() if count}


class TestFirstSync:
    def test_left_only_rows_are_added(self):
        result = detect(None, [_row("r1", "Ada"), _row("r2", "Bob")], [])
        assert result.left_added == ["r1", "r2"]
        assert _buckets(result) == {"left_added": 2}

    def test_equal_rows_are_unchanged(self):
        result = detect(None, [_row("r1", "Ada")], [_row("r1", "Ada")])
        assert result.unchanged == ["r1"]

    def test_different_rows_conflict(self):
        result = detect(None, [_row("r1", "Ada")], [_row("r1", "Adah")])
        assert len(result.both_changed) == 1
        conflict = result.both_changed[0]
        assert conflict.conflict_type is ConflictType.BOTH_MODIFIED
        assert conflict.previous is None

    def test_right_only_rows_are_added(self):
        result = detect(Checkpoint.empty("cfg"), [], [_row("r9", "Zed")])
        assert result.right_added == ["r9"]


class TestAgainstCheckpoint:
    def test_nothing_changed(self):
        cp = _checkpoint(r1=("Ada", "Ada"))
        result = detect(cp, [_row("r1", "Ada")], [_row("r1", "Ada")])
        assert result.unchanged == ["r1"]
        assert not result.has_changes

    def test_left_updated(self):
        cp = _checkpoint(r1=("Ada", "Ada"))
        result = detect(cp, [_row("r1", "Ada L.")], [_row("r1", "Ada")])
        assert result.left_updated == ["r1"]

    def test_right_updated(self):
        cp = _checkpoint(r1=("Ada", "Ada"))
        result = detect(cp, [_row("r1", "Ada")], [_row("r1", "Ada R.")])
        assert result.right_updated == ["r1"]

    def test_both_modified(self):
        cp = _checkpoint(r1=("Ada", "Ada"))
        result = detect(cp, [_row("r1", "Ada L.")], [_row("r1", "Ada R.")])
        assert [c.row_id for c in result.both_changed] == ["r1"]
        assert result.both_changed[0].previous.left_hash == _h("Ada")

    def test_converged_edits_are_unchanged(self):
        cp = _checkpoint(r1=("Ada", "Ada"))
        result = detect(cp, [_row("r1", "Ada L.")], [_row("r1", "Ada L.")])
        assert result.unchanged == ["r1"]
        assert result.both_changed == []

    def test_right_deleted(self):
        cp = _checkpoint(r1=("Ada", "Ada"))
        result = detect(cp, [_row("r1", "Ada")], [])
        assert result.right_deleted == ["r1"]

    def test_left_deleted(self):
        cp = _checkpoint(r1=("Ada", "Ada"))
        result = detect(cp, [], [_row("r1", "Ada")])
        assert result.left_deleted == ["r1"]

    def test_deleted_on_right_but_edited_on_left(self):
        cp = _checkpoint(r1=("Ada", "Ada"))
        result = detect(cp, [_row("r1", "Ada L.")], [])
        assert result.both_changed[0].conflict_type is ConflictType.DELETED_ON_RIGHT
        assert result.both_changed[0].right is None

    def test_deleted_on_left_but_edited_on_right(self):
        cp = _checkpoint(r1=("Ada", "Ada"))
        result = detect(cp, [], [_row("r1", "Ada R.")])
        assert result.both_changed[0].conflict_type is ConflictType.DELETED_ON_LEFT
        assert result.both_changed[0].left is None

    def test_both_deleted(self):
        cp = _checkpoint(r1=("Ada", "Ada"))
        result = detect(cp, [], [])
        assert result.both_deleted == ["r1"]
        assert not result.has_changes

    def test_every_id_in_exactly_one_bucket(self):
        cp = _checkpoint(a=("A", "A"), b=("B", "B"), c=("C", "C"), d=("D", "D"), e=("E", "E"))
        left = [_row("a", "A"), _row("b", "B2"), _row("c", "C"), _row("n", "New")]
        right = [_row("a", "A"), _row("b", "B"), _row("d", "D"), _row("m", "Other")]
        result = detect(cp, left, right)
        buckets = [
            result.unchanged, result.left_added, result.left_updated, result.left_deleted,
            result.right_added, result.right_updated, result.right_deleted,
            [c.row_id for c in result.both_changed], result.both_deleted,
        ]
        flat = [row_id for bucket in buckets for row_id in bucket]
        assert sorted(flat) == sorted(set(flat))
        assert set(flat) == {"a", "b", "c", "d", "e", "n", "m"}


class TestEdgeCases:
    def test_unlinked_right_rows_are_added(self):
        result = detect(None, [], [_row(None, "Loose", ref="7")])
        assert result.right_added == [f"{UNLINKED_PREFIX}7"]
        assert result.right_rows[f"{UNLINKED_PREFIX}7"].ref == "7"

    def test_duplicate_ids_warn_and_keep_first(self):
        result = detect(None, [_row("r1", "First"), _row("r1", "Second")], [])
        assert result.left_rows["r1"].get("fldName") == TextValue("First")
        assert any("Duplicate left row id r1" in w for w in result.warnings)

    def test_foreign_checkpoint_is_ignored(self):
        cp = _checkpoint(config_id="other", r1=("Ada", "Ada"))
        result = detect(cp, [_row("r1", "Ada")], [], config_id="cfg")
        assert result.left_added == ["r1"]
        assert result.both_deleted == []
        assert any("other" in w for w in result.warnings)

    def test_whitespace_only_edit_is_not_a_change(self):
        cp = _checkpoint(r1=("Ada", "Ada"))
        result = detect(cp, [_row("r1", "Ada  ")], [_row("r1", "Ada")])
        assert result.unchanged == ["r1"]
