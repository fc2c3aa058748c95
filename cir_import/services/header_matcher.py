from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence

from rapidfuzz import fuzz

from ..models.field_schema import FieldSchema, fold_header
from ..models.header_mapping import HeaderMapping

"""Header matcher: maps raw column headers onto a dataset's canonical fields.

Matching runs in two passes over the folded header text (lower case, no
diacritics, no punctuation):
1. exact alias equality; a field is claimed by at most one header
2. approximate matching (rapidfuzz normalized Indel similarity) of the
   remaining headers against aliases of still-unclaimed fields; candidates
   below the schema's similarity threshold are discarded and the remaining
   ones are assigned best score first

Claims never depend on the position of a header in the file, only on its text
and on which fields are still unclaimed.
"""

__all__ = [
    "LowConfidenceError",
    "match_headers",
    "mapping_from_template",
    "require_confidence",
    "similarity",
]

logger = logging.getLogger(__name__)


class LowConfidenceError(Exception):
    """Raised when too few canonical fields could be matched to headers."""

    def __init__(self, mapping: HeaderMapping, min_confidence: float) -> None:
        self.mapping = mapping
        self.min_confidence = min_confidence
        super().__init__(
            f"unable to detect columns (confidence {mapping.confidence:.2f} < {min_confidence:.2f}); "
            f"unmapped headers: {', '.join(mapping.unmapped_headers) or '-'}; "
            f"unmatched fields: {', '.join(mapping.unmatched_fields) or '-'}"
        )


def similarity(a: str, b: str) -> float:
    """Normalized edit-distance similarity of two folded strings (0..1)."""
    if not a or not b:
        return 0.0
    return fuzz.ratio(a, b) / 100.0


def _clean_headers(headers: Sequence[object]) -> list[str]:
    cleaned: list[str] = []
    for h in headers:
        text = "" if h is None else str(h).strip()
        if text and text not in cleaned:
            cleaned.append(text)
    return cleaned


def match_headers(headers: Sequence[object], schema: FieldSchema) -> HeaderMapping:
    """Match observed headers to the canonical fields of schema."""
    observed = _clean_headers(headers)
    folded = {h: fold_header(h) for h in observed}
    aliases = {
        spec.name: [fold_header(spec.name)] + [fold_header(a) for a in spec.aliases]
        for spec in schema.fields
    }

    mapping: dict[str, str] = {}
    scores: dict[str, float] = {}
    claimed: set[str] = set()

    # Pass 1: exact matches. Earlier aliases rank first, then header text.
    exact: list[tuple[int, str, str]] = []
    for header in observed:
        for spec in schema.fields:
            names = aliases[spec.name]
            if folded[header] in names:
                exact.append((names.index(folded[header]), header, spec.name))
    for _, header, field_name in sorted(exact):
        if header in mapping or field_name in claimed:
            continue
        mapping[header] = field_name
        scores[header] = 1.0
        claimed.add(field_name)

    # Pass 2: approximate matches on what is left
    candidates: list[tuple[float, str, str]] = []
    for header in observed:
        if header in mapping or not folded[header]:
            continue
        for spec in schema.fields:
            if spec.name in claimed:
                continue
            best = max(similarity(folded[header], alias) for alias in aliases[spec.name])
            if best >= schema.similarity_threshold:
                candidates.append((best, header, spec.name))
    for score, header, field_name in sorted(candidates, key=lambda c: (-c[0], c[1], c[2])):
        if header in mapping or field_name in claimed:
            continue
        mapping[header] = field_name
        scores[header] = score
        claimed.add(field_name)
        logger.debug("header '%s' -> %s (approximate, score=%.2f)", header, field_name, score)

    unmapped = [h for h in observed if h not in mapping]
    unmatched = [name for name in schema.field_names if name not in claimed]
    confidence = len(claimed) / len(schema.fields) if schema.fields else 0.0
    logger.debug(
        "dataset=%s matched=%d/%d unmapped=%s",
        schema.dataset_type,
        len(claimed),
        len(schema.fields),
        unmapped,
    )
    return HeaderMapping(
        mapping=mapping,
        unmapped_headers=unmapped,
        unmatched_fields=unmatched,
        confidence=confidence,
        scores=scores,
    )


def mapping_from_template(
    headers: Sequence[object], template: Mapping[str, str], schema: FieldSchema
) -> HeaderMapping:
    """Build a HeaderMapping from a saved {field: header} template.

    Template headers are compared folded, so a template saved against
    "Marque" still applies to a file whose header reads "MARQUE ".
    """
    observed = _clean_headers(headers)
    by_fold: dict[str, str] = {}
    for h in observed:
        by_fold.setdefault(fold_header(h), h)

    mapping: dict[str, str] = {}
    for field_name, template_header in template.items():
        if schema.get(field_name) is None:
            logger.warning("template field '%s' is not part of %s, ignored", field_name, schema.dataset_type)
            continue
        header = by_fold.get(fold_header(template_header))
        if header is not None and header not in mapping:
            mapping[header] = field_name

    claimed = set(mapping.values())
    return HeaderMapping(
        mapping=mapping,
        unmapped_headers=[h for h in observed if h not in mapping],
        unmatched_fields=[name for name in schema.field_names if name not in claimed],
        confidence=len(claimed) / len(schema.fields) if schema.fields else 0.0,
        scores={h: 1.0 for h in mapping},
    )


def require_confidence(mapping: HeaderMapping, schema: FieldSchema) -> HeaderMapping:
    """Reject the file when the mapping is below the schema's acceptance threshold."""
    if mapping.confidence < schema.min_confidence:
        raise LowConfidenceError(mapping, schema.min_confidence)
    return mapping
