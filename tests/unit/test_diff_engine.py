from __future__ import annotations

from cir_import.config.datasets import SEGMENT
from cir_import.models.import_batch import DiffSummary
from cir_import.models.normalized_row import NormalizedRow
from cir_import.services.diff_engine import (
    build_snapshot,
    compute_diff,
    normalize_for_compare,
    reconcile,
    records_equal,
)


def _incoming(*records: dict) -> list[NormalizedRow]:
    return [NormalizedRow(line_number=i + 2, values=dict(r)) for i, r in enumerate(records)]


def test_added_and_updated_example():
    existing = {("SKF", "Z16"): {"marque": "SKF", "cat_fab": "Z16", "strategiq": 0}}
    incoming = _incoming(
        {"marque": "SKF", "cat_fab": "Z16", "strategiq": 1},
        {"marque": "NSK", "cat_fab": "B1", "strategiq": 0},
    )
    assert compute_diff(incoming, existing, SEGMENT) == DiffSummary(added=1, updated=1, removed=0, unchanged=0)


def test_removed_keys_are_counted_and_planned():
    existing = {
        ("A", "1"): {"marque": "A", "cat_fab": "1", "segment": "S"},
        ("B", "1"): {"marque": "B", "cat_fab": "1", "segment": "S"},
    }
    result = reconcile(_incoming({"marque": "A", "cat_fab": "1", "segment": "S"}), existing, SEGMENT)
    assert result.summary == DiffSummary(added=0, updated=0, removed=1, unchanged=1)
    assert result.changes.deletes == [("B", "1")]
    assert result.changes.unchanged == 1
    assert not result.changes.updates


def test_prune_disabled_reports_but_does_not_plan_deletes():
    existing = {("B", "1"): {"marque": "B", "cat_fab": "1"}}
    result = reconcile(_incoming({"marque": "A", "cat_fab": "1"}), existing, SEGMENT, prune_removed=False)
    assert result.summary.removed == 1
    assert result.changes.deletes == []


def test_absent_and_empty_values_compare_equal():
    existing = {("A", "1"): {"marque": "A", "cat_fab": "1", "cat_fab_l": "", "codif_fair": None}}
    incoming = _incoming({"marque": "A", "cat_fab": "1", "cat_fab_l": None, "codif_fair": "  "})
    assert compute_diff(incoming, existing, SEGMENT).unchanged == 1


def test_rows_without_key_are_ignored():
    incoming = _incoming({"marque": "A", "cat_fab": None}, {"marque": "B", "cat_fab": "2"})
    summary = compute_diff(incoming, {}, SEGMENT)
    assert summary == DiffSummary(added=1, updated=0, removed=0, unchanged=0)


def test_duplicate_keys_counted_last_occurrence_planned():
    incoming = _incoming(
        {"marque": "A", "cat_fab": "1", "segment": "S1"},
        {"marque": "A", "cat_fab": "1", "segment": "S2"},
    )
    result = reconcile(incoming, {}, SEGMENT)
    assert result.summary.added == 2
    assert result.changes.inserts == {("A", "1"): {"marque": "A", "cat_fab": "1", "segment": "S2"}}
    assert result.info == ["Line 3: duplicate key A / 1 (first seen at line 2), last occurrence is kept"]


def test_duplicate_key_ending_unchanged_drops_planned_update():
    existing = {("A", "1"): {"marque": "A", "cat_fab": "1", "segment": "S1"}}
    incoming = _incoming(
        {"marque": "A", "cat_fab": "1", "segment": "S2"},
        {"marque": "A", "cat_fab": "1", "segment": "S1"},
    )
    result = reconcile(incoming, existing, SEGMENT)
    assert result.summary.updated == 1
    assert result.summary.unchanged == 1
    assert result.changes.updates == {}


def test_summary_invariant_holds(segment_records):
    snapshot = build_snapshot(segment_records, SEGMENT)
    incoming = _incoming(
        dict(segment_records[0]),
        {**segment_records[1], "segment": "ZZ"},
        {"marque": "NEW", "cat_fab": "X", "segment": "N1"},
        {"marque": None, "cat_fab": "X"},
    )
    summary = compute_diff(incoming, snapshot, SEGMENT)
    keyed = 3
    assert summary.added + summary.updated + summary.unchanged == keyed
    assert summary == DiffSummary(added=1, updated=1, removed=1, unchanged=1)


def test_result_is_independent_of_row_order(segment_records):
    snapshot = build_snapshot(segment_records, SEGMENT)
    records = [
        {**segment_records[0], "cat_fab_l": "changed"},
        {"marque": "NEW", "cat_fab": "X", "segment": "N1"},
        dict(segment_records[2]),
    ]
    forward = reconcile(_incoming(*records), snapshot, SEGMENT)
    backward = reconcile(_incoming(*reversed(records)), snapshot, SEGMENT)
    assert forward.summary == backward.summary
    assert forward.changes.deletes == backward.changes.deletes
    assert forward.changes.upserts == backward.changes.upserts


def test_build_snapshot_skips_records_without_key():
    snapshot = build_snapshot([{"marque": "A", "cat_fab": "1"}, {"marque": "A"}], SEGMENT)
    assert list(snapshot) == [("A", "1")]


def test_normalize_for_compare():
    assert normalize_for_compare(None) == normalize_for_compare("")
    assert normalize_for_compare(" x ") == "x"
    assert normalize_for_compare(3.0) == 3
    assert records_equal({"a": 1, "b": None}, {"a": 1.0, "b": ""}, ["a", "b"])
