from __future__ import annotations

import pytest

from cir_import.config.datasets import CLASSIFICATION, SEGMENT
from cir_import.services.header_matcher import (
    LowConfidenceError,
    mapping_from_template,
    match_headers,
    require_confidence,
    similarity,
)


def test_exact_canonical_headers():
    mapping = match_headers(["SEGMENT", "MARQUE", "CAT_FAB"], SEGMENT)
    assert mapping.mapping == {"SEGMENT": "segment", "MARQUE": "marque", "CAT_FAB": "cat_fab"}
    assert mapping.unmapped_headers == []
    assert mapping.confidence == pytest.approx(3 / 9)
    assert "fsmega" in mapping.unmatched_fields


def test_aliases_are_case_and_punctuation_insensitive():
    mapping = match_headers(["Segment CIR", "brand", "Cat Fab", "Libellé", "fs_mega", "Stratégique"], SEGMENT)
    assert mapping.mapping == {
        "Segment CIR": "segment",
        "brand": "marque",
        "Cat Fab": "cat_fab",
        "Libellé": "cat_fab_l",
        "fs_mega": "fsmega",
        "Stratégique": "strategiq",
    }
    assert all(score == 1.0 for score in mapping.scores.values())


def test_matching_is_order_independent():
    headers = ["MARQUE", "BRAND", "SEGMENT", "CAT_FAB", "MARQUES", "Libelle", "FSFAM", "Unknown column"]
    forward = match_headers(headers, SEGMENT)
    backward = match_headers(list(reversed(headers)), SEGMENT)
    rotated = match_headers(headers[3:] + headers[:3], SEGMENT)
    assert forward.mapping == backward.mapping == rotated.mapping
    assert set(forward.unmapped_headers) == set(backward.unmapped_headers)
    assert forward.confidence == backward.confidence


def test_exact_match_beats_approximate_and_earlier_alias_wins():
    mapping = match_headers(["BRAND", "MARQUES", "MARQUE"], SEGMENT)
    assert mapping.field_for("MARQUE") == "marque"
    assert mapping.field_for("BRAND") is None
    assert mapping.field_for("MARQUES") is None
    assert set(mapping.unmapped_headers) == {"BRAND", "MARQUES"}


def test_approximate_match_above_threshold():
    mapping = match_headers(["SEGMENT", "MARQUES", "CAT_FAB"], SEGMENT)
    assert mapping.field_for("MARQUES") == "marque"
    assert mapping.scores["MARQUES"] == pytest.approx(12 / 13, abs=0.01)


def test_approximate_match_below_threshold_is_unmapped():
    mapping = match_headers(["SEGMENT", "MRQ", "CAT_FAB"], SEGMENT)
    assert mapping.field_for("MRQ") is None
    assert "MRQ" in mapping.unmapped_headers
    assert "marque" in mapping.unmatched_fields


def test_blank_and_duplicate_headers_are_ignored():
    mapping = match_headers(["SEGMENT", "", None, "SEGMENT", "MARQUE"], SEGMENT)
    assert mapping.mapping == {"SEGMENT": "segment", "MARQUE": "marque"}
    assert mapping.unmapped_headers == []


def test_confidence_gate_lists_unmapped_headers():
    mapping = match_headers(["foo", "bar", "baz"], SEGMENT)
    assert mapping.confidence == 0
    with pytest.raises(LowConfidenceError) as exc:
        require_confidence(mapping, SEGMENT)
    assert exc.value.mapping.unmapped_headers == ["foo", "bar", "baz"]
    for header in ("foo", "bar", "baz"):
        assert header in str(exc.value)


def test_confidence_gate_accepts_threshold_ratio():
    mapping = match_headers(["SEGMENT", "MARQUE", "CAT_FAB"], SEGMENT)
    assert require_confidence(mapping, SEGMENT) is mapping


def test_classification_headers_with_diacritics():
    headers = [
        "Code FSMEGA", "Designation FSMEGA", "Code FSFAM", "Désignation FSFAM",
        "Code FSSFA", "Désignation FSSFA", "Code 1&2&3", "Désignation 1&2&3",
    ]
    mapping = match_headers(headers, CLASSIFICATION)
    assert mapping.confidence == 1.0
    assert mapping.field_for("Designation FSMEGA") == "fsmega_designation"
    assert mapping.field_for("Code 1&2&3") == "combined_code"


def test_mapping_from_template_uses_folded_headers():
    template = {"segment": "SEG_CODE", "marque": "Fournisseur", "cat_fab": "CATEGORIE_FAB", "bogus": "X"}
    mapping = mapping_from_template(["seg code", "FOURNISSEUR ", "categorie fab", "other"], template, SEGMENT)
    assert mapping.mapping == {"seg code": "segment", "FOURNISSEUR": "marque", "categorie fab": "cat_fab"}
    assert mapping.unmapped_headers == ["other"]
    assert mapping.confidence == pytest.approx(3 / 9)


def test_mapping_from_template_reports_missing_headers():
    mapping = mapping_from_template(["SEG_CODE"], {"segment": "SEG_CODE", "marque": "FOURNISSEUR"}, SEGMENT)
    assert mapping.mapping == {"SEG_CODE": "segment"}
    assert "marque" in mapping.unmatched_fields
    with pytest.raises(LowConfidenceError):
        require_confidence(mapping, SEGMENT)


def test_as_template_round_trips_through_template_mapping():
    detected = match_headers(["SEGMENT", "MARQUE", "CAT_FAB"], SEGMENT)
    again = mapping_from_template(["SEGMENT", "MARQUE", "CAT_FAB"], detected.as_template(), SEGMENT)
    assert again.mapping == detected.mapping


def test_similarity_bounds():
    assert similarity("marque", "marque") == 1.0
    assert similarity("", "marque") == 0.0
    assert 0 < similarity("marques", "marque") < 1
