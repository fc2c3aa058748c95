from __future__ import annotations

from collections import Counter

from cir_import.config.datasets import SEGMENT
from cir_import.models.normalized_row import NormalizedRow
from cir_import.services.auto_classifier import (
    brand_fsmega_counts,
    classify_row,
    classify_rows,
    most_frequent_code,
)


def _row(line: int, marque: str, **codes) -> NormalizedRow:
    values = {"segment": "A1", "marque": marque, "cat_fab": f"C{line}", "strategiq": 0, "classif_cir": None}
    values.update(codes)
    return NormalizedRow(line_number=line, values=values)


def test_unknown_brand_gets_default_codes():
    row, message = classify_row(_row(2, "Acme"), [], SEGMENT)
    assert row.auto_classified is True
    assert (row.values["fsmega"], row.values["fsfam"], row.values["fssfa"]) == (1, 99, 99)
    assert row.values["classif_cir"] == "1 99 99"
    assert message.startswith("Line 2: auto-classified Acme with default codes")


def test_known_brand_uses_most_frequent_fsmega(segment_records):
    row, message = classify_row(_row(4, "skf"), segment_records, SEGMENT)
    assert row.auto_classified is True
    assert (row.values["fsmega"], row.values["fsfam"], row.values["fssfa"]) == (12, 99, 99)
    assert row.values["classif_cir"] == "12 99 99"
    assert "most frequent FSMEGA" in message


def test_tie_breaks_on_smallest_code():
    existing = [
        {"marque": "FAG", "fsmega": 30},
        {"marque": "FAG", "fsmega": 8},
        {"marque": "fag", "fsmega": 30},
        {"marque": "FAG", "fsmega": 8},
        {"marque": "FAG", "fsmega": 0},
        {"marque": "FAG", "fsmega": None},
    ]
    row, _ = classify_row(_row(2, "FAG"), existing, SEGMENT)
    assert row.values["fsmega"] == 8


def test_fully_classified_row_is_untouched(segment_records):
    original = _row(2, "Acme", fsmega=5, fsfam=6, fssfa=7, classif_cir="5 6 7")
    row, message = classify_row(original, segment_records, SEGMENT)
    assert row is original
    assert message is None
    assert row.auto_classified is False


def test_partially_classified_row_is_reclassified(segment_records):
    row, _ = classify_row(_row(2, "NTN", fsmega=5), segment_records, SEGMENT)
    assert (row.values["fsmega"], row.values["fsfam"], row.values["fssfa"]) == (7, 99, 99)


def test_classify_rows_collects_messages(segment_records):
    rows = [_row(2, "SKF"), _row(3, "Acme", fsmega=1, fsfam=2, fssfa=3), _row(4, "Nobody")]
    out, messages = classify_rows(rows, segment_records, SEGMENT)
    assert [r.auto_classified for r in out] == [True, False, True]
    assert len(messages) == 2
    assert messages[0].startswith("Line 2:")
    assert messages[1].startswith("Line 4:")


def test_brand_counts_are_case_insensitive(segment_records):
    counts = brand_fsmega_counts(segment_records)
    assert counts["skf"] == Counter({12: 2})
    assert counts["ntn"] == Counter({7: 1})


def test_most_frequent_code_empty():
    assert most_frequent_code(Counter()) is None
