from __future__ import annotations

from typing import Any

from ..models.field_schema import FieldKind, FieldSchema, FieldSpec

"""Built-in dataset schemas.

Two datasets can be imported:
- cir_segment: brand/category -> segment mapping with CIR classification codes
- cir_classification: the three-level CIR classification hierarchy

Per-dataset thresholds, sheet hints and extra header aliases can be overridden
from config/import.yml (see config/loader.py).
"""

__all__ = [
    "SEGMENT",
    "CLASSIFICATION",
    "DATASETS",
    "UNCLASSIFIED_CODE",
    "DEFAULT_FSMEGA",
    "get_schema",
]

# Sub-level code meaning "not classified yet"
UNCLASSIFIED_CODE = 99
DEFAULT_FSMEGA = 1


def _derive_segment(values: dict[str, Any]) -> dict[str, Any]:
    mega, fam, sfa = values.get("fsmega"), values.get("fsfam"), values.get("fssfa")
    if mega and fam and sfa:
        values["classif_cir"] = f"{mega} {fam} {sfa}"
    else:
        values["classif_cir"] = None
    return values


def _derive_classification(values: dict[str, Any]) -> dict[str, Any]:
    if not values.get("combined_code"):
        values["combined_code"] = (
            f"{values['fsmega_code']} {values['fsfam_code']} {values['fssfa_code']}"
        )
    if not values.get("combined_designation"):
        values["combined_designation"] = " / ".join(
            str(values[k]) for k in ("fsmega_designation", "fsfam_designation", "fssfa_designation")
        )
    return values


SEGMENT = FieldSchema(
    dataset_type="cir_segment",
    fields=(
        FieldSpec("segment", ("SEGMENT", "SEG", "SEGMENT CIR", "SEGCIR"), required=True, max_length=10),
        FieldSpec("marque", ("MARQUE", "BRAND", "FABRICANT"), required=True, max_length=50),
        FieldSpec(
            "cat_fab",
            ("CAT_FAB", "CATEGORY", "CATEGORIE", "FAMILLE FABRICANT"),
            required=True,
            max_length=20,
        ),
        FieldSpec("cat_fab_l", ("CAT_FAB_L", "DESCRIPTION", "LIBELLE"), max_length=200),
        FieldSpec(
            "strategiq",
            ("STRATEGIQ", "STRATEGIC", "STRATEGIQUE"),
            kind=FieldKind.FLAG,
            allowed=frozenset({0, 1}),
            default=0,
        ),
        FieldSpec("codif_fair", ("CODIF_FAIR", "CODE_FAIR", "CODE FAIR"), max_length=50),
        FieldSpec(
            "fsmega", ("FSMEGA", "FS_MEGA"),
            kind=FieldKind.INT, min_value=1, max_value=999, classifier_input=True,
        ),
        FieldSpec(
            "fsfam", ("FSFAM", "FS_FAM"),
            kind=FieldKind.INT, min_value=1, max_value=999, classifier_input=True,
        ),
        FieldSpec(
            "fssfa", ("FSSFA", "FS_SFA"),
            kind=FieldKind.INT, min_value=1, max_value=999, classifier_input=True,
        ),
    ),
    key_fields=("marque", "cat_fab"),
    comparison_fields=(
        "segment", "marque", "cat_fab", "cat_fab_l", "strategiq",
        "codif_fair", "fsmega", "fsfam", "fssfa", "classif_cir",
    ),
    similarity_threshold=0.8,
    min_confidence=0.3,
    sheet_hints=("requeteas400", "requete"),
    derive=_derive_segment,
)

CLASSIFICATION = FieldSchema(
    dataset_type="cir_classification",
    fields=(
        FieldSpec(
            "fsmega_code", ("Code FSMEGA", "FSMEGA", "Code_FSMEGA", "Fsmega_Code"),
            kind=FieldKind.INT, required=True, min_value=1, max_value=999,
        ),
        FieldSpec(
            "fsmega_designation",
            ("Désignation FSMEGA", "FSMEGA_Designation", "Libellé FSMEGA"),
            required=True, max_length=200,
        ),
        FieldSpec(
            "fsfam_code", ("Code FSFAM", "FSFAM", "Code_FSFAM", "Fsfam_Code"),
            kind=FieldKind.INT, required=True, min_value=0, max_value=999,
        ),
        FieldSpec(
            "fsfam_designation",
            ("Désignation FSFAM", "FSFAM_Designation", "Libellé FSFAM"),
            required=True, max_length=200,
        ),
        FieldSpec(
            "fssfa_code", ("Code FSSFA", "FSSFA", "Code_FSSFA", "Fssfa_Code"),
            kind=FieldKind.INT, required=True, min_value=0, max_value=999,
        ),
        FieldSpec(
            "fssfa_designation",
            ("Désignation FSSFA", "FSSFA_Designation", "Libellé FSSFA"),
            required=True, max_length=200,
        ),
        FieldSpec(
            "combined_code", ("Code 1&2&3", "Code_1_2_3", "Combined_Code", "Code combiné"),
            max_length=50,
        ),
        FieldSpec(
            "combined_designation",
            ("Désignation 1&2&3", "Designation_1_2_3", "Combined_Designation", "Désignation combinée"),
            max_length=500,
        ),
    ),
    key_fields=("combined_code",),
    comparison_fields=(
        "fsmega_code", "fsmega_designation", "fsfam_code", "fsfam_designation",
        "fssfa_code", "fssfa_designation", "combined_designation",
    ),
    similarity_threshold=0.7,
    min_confidence=0.5,
    sheet_hints=("classification", "cir", "famille"),
    derive=_derive_classification,
)

DATASETS: dict[str, FieldSchema] = {
    SEGMENT.dataset_type: SEGMENT,
    CLASSIFICATION.dataset_type: CLASSIFICATION,
}


def get_schema(dataset_type: str) -> FieldSchema:
    try:
        return DATASETS[dataset_type]
    except KeyError:
        raise ValueError(
            f"unknown dataset type '{dataset_type}' (expected one of {sorted(DATASETS)})"
        ) from None
