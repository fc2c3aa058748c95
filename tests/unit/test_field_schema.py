from __future__ import annotations

import pytest

from cir_import.config.datasets import CLASSIFICATION, SEGMENT, get_schema
from cir_import.models.field_schema import FieldKind, FieldSchema, FieldSpec, fold_header


def test_fold_header_strips_case_diacritics_and_punctuation():
    assert fold_header("  Désignation FSMEGA ") == "designationfsmega"
    assert fold_header("designation_fsmega") == "designationfsmega"
    assert fold_header("Code 1&2&3") == "code123"
    assert fold_header(None) == ""


def test_schema_rejects_duplicate_field_names():
    with pytest.raises(ValueError, match="duplicate field names"):
        FieldSchema(
            dataset_type="x",
            fields=(FieldSpec("a", ("A",)), FieldSpec("a", ("B",))),
            key_fields=("a",),
            comparison_fields=("a",),
        )


def test_schema_rejects_undeclared_key_field():
    with pytest.raises(ValueError, match="key fields not declared"):
        FieldSchema(dataset_type="x", fields=(FieldSpec("a", ()),), key_fields=("b",), comparison_fields=())


def test_builtin_schemas_have_unique_names():
    for schema in (SEGMENT, CLASSIFICATION):
        assert len(schema.field_names) == len(set(schema.field_names))


def test_get_schema_unknown_dataset():
    with pytest.raises(ValueError, match="unknown dataset type"):
        get_schema("prices")


def test_record_key_missing_component_is_none():
    assert SEGMENT.record_key({"marque": "SKF", "cat_fab": "Z16"}) == ("SKF", "Z16")
    assert SEGMENT.record_key({"marque": "SKF", "cat_fab": " "}) is None
    assert SEGMENT.record_key({"marque": "SKF"}) is None


def test_validate_reports_missing_required_fields():
    result = SEGMENT.validate({"segment": "A1", "marque": None, "cat_fab": None, "strategiq": 0})
    assert not result.ok
    assert result.values is None
    assert result.reasons == ("missing required fields (marque, cat_fab)",)


def test_validate_reports_constraint_violations():
    result = SEGMENT.validate(
        {"segment": "X" * 11, "marque": "SKF", "cat_fab": "Z16", "strategiq": 2, "fsmega": 1000}
    )
    assert not result.ok
    assert "segment longer than 10 characters" in result.reasons
    assert any(r.startswith("strategiq=2 not in") for r in result.reasons)
    assert "fsmega=1000 above maximum 999" in result.reasons


def test_validate_applies_derived_segment_code():
    result = SEGMENT.validate(
        {"segment": "A1", "marque": "SKF", "cat_fab": "Z16", "strategiq": 0, "fsmega": 12, "fsfam": 3, "fssfa": 4}
    )
    assert result.ok
    assert result.values["classif_cir"] == "12 3 4"


def test_validate_applies_derived_classification_codes():
    result = CLASSIFICATION.validate(
        {
            "fsmega_code": 1, "fsmega_designation": "Transmission",
            "fsfam_code": 2, "fsfam_designation": "Roulements",
            "fssfa_code": 0, "fssfa_designation": "Divers",
        }
    )
    assert result.ok
    assert result.values["combined_code"] == "1 2 0"
    assert result.values["combined_designation"] == "Transmission / Roulements / Divers"


def test_validate_keeps_supplied_combined_code():
    result = CLASSIFICATION.validate(
        {
            "fsmega_code": 1, "fsmega_designation": "A",
            "fsfam_code": 2, "fsfam_designation": "B",
            "fssfa_code": 3, "fssfa_designation": "C",
            "combined_code": "1-2-3",
        }
    )
    assert result.values["combined_code"] == "1-2-3"


def test_with_overrides_merges_aliases_and_thresholds():
    schema = SEGMENT.with_overrides(
        similarity_threshold=0.9, min_confidence=0.5, extra_aliases={"marque": ["FOURNISSEUR"]}
    )
    assert schema.similarity_threshold == 0.9
    assert schema.min_confidence == 0.5
    assert "FOURNISSEUR" in schema.get("marque").aliases
    assert schema.sheet_hints == SEGMENT.sheet_hints
    # The built-in schema is left untouched
    assert "FOURNISSEUR" not in SEGMENT.get("marque").aliases


def test_field_spec_kinds():
    assert SEGMENT.get("strategiq").kind == FieldKind.FLAG
    assert SEGMENT.get("fsmega").numeric
    assert SEGMENT.classifier_fields == ["fsmega", "fsfam", "fssfa"]
