from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Iterable, Mapping, Sequence
from typing import Any

from ..config.datasets import DEFAULT_FSMEGA, UNCLASSIFIED_CODE
from ..models.field_schema import FieldSchema
from ..models.normalized_row import NormalizedRow

"""Auto-classifier for segment rows lacking hierarchical CIR codes.

Heuristic: the most frequent FSMEGA already used for the same brand
(case-insensitive) is assumed; FSFAM/FSSFA get the "unclassified" code.
Brands never seen before get the fixed defaults. Every inferred row is tagged
auto_classified=True and described by an info message; inferred codes are
never merged silently into a row that looks user supplied.
"""

__all__ = [
    "classify_row",
    "classify_rows",
    "brand_fsmega_counts",
    "most_frequent_code",
]

logger = logging.getLogger(__name__)

BRAND_FIELD = "marque"
LEVELS = ("fsmega", "fsfam", "fssfa")


def _positive(value: Any) -> int | None:
    try:
        number = int(value)
    except (TypeError, ValueError):
        return None
    return number if number > 0 else None


def brand_fsmega_counts(existing: Iterable[Mapping[str, Any]]) -> dict[str, Counter[int]]:
    """Lowercased brand -> Counter of positive FSMEGA codes in the snapshot."""
    counts: dict[str, Counter[int]] = {}
    for record in existing:
        brand = record.get(BRAND_FIELD)
        code = _positive(record.get("fsmega"))
        if not brand or code is None:
            continue
        counts.setdefault(str(brand).strip().lower(), Counter())[code] += 1
    return counts


def most_frequent_code(counter: Counter[int]) -> int | None:
    """Most frequent code; ties go to the smallest code."""
    if not counter:
        return None
    return min(counter.items(), key=lambda item: (-item[1], item[0]))[0]


def needs_classification(row: NormalizedRow) -> bool:
    return any(_positive(row.get(level)) is None for level in LEVELS)


def classify_row(
    row: NormalizedRow,
    existing: Iterable[Mapping[str, Any]] | Mapping[str, Counter[int]],
    schema: FieldSchema,
) -> tuple[NormalizedRow, str | None]:
    """Fill the three hierarchical codes of row when any of them is missing.

    existing is either the snapshot records or the precomputed output of
    brand_fsmega_counts (classify_rows passes the latter).
    """
    if not needs_classification(row):
        return row, None

    counts = existing if isinstance(existing, Mapping) else brand_fsmega_counts(existing)
    brand = str(row.get(BRAND_FIELD) or "").strip()
    fsmega = most_frequent_code(counts.get(brand.lower(), Counter()))

    values = dict(row.values)
    if fsmega is not None:
        values.update(fsmega=fsmega, fsfam=UNCLASSIFIED_CODE, fssfa=UNCLASSIFIED_CODE)
        message = (
            f"Line {row.line_number}: auto-classified {brand} as {fsmega} "
            f"{UNCLASSIFIED_CODE} {UNCLASSIFIED_CODE} (most frequent FSMEGA for this brand)"
        )
    else:
        values.update(fsmega=DEFAULT_FSMEGA, fsfam=UNCLASSIFIED_CODE, fssfa=UNCLASSIFIED_CODE)
        message = (
            f"Line {row.line_number}: auto-classified {brand} with default codes "
            f"{DEFAULT_FSMEGA} {UNCLASSIFIED_CODE} {UNCLASSIFIED_CODE} (brand unknown)"
        )
    if schema.derive is not None:
        values = schema.derive(values)
    return row.with_values(values, auto_classified=True), message


def classify_rows(
    rows: Sequence[NormalizedRow],
    existing: Iterable[Mapping[str, Any]],
    schema: FieldSchema,
) -> tuple[list[NormalizedRow], list[str]]:
    """Classify every row that needs it against one snapshot."""
    counts = brand_fsmega_counts(existing)
    out: list[NormalizedRow] = []
    messages: list[str] = []
    for row in rows:
        classified, message = classify_row(row, counts, schema)
        out.append(classified)
        if message:
            messages.append(message)
    if messages:
        logger.info("auto-classified %d of %d rows", len(messages), len(rows))
    return out, messages
