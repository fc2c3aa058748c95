from __future__ import annotations

import logging
import math
from collections.abc import Sequence
from typing import Any

from ..models.field_schema import FieldKind, FieldSchema, FieldSpec
from ..models.header_mapping import HeaderMapping
from ..models.normalized_row import NormalizedRow
from ..models.parse_result import ParseResult, SkippedLine

"""Row normalizer: physical rows -> NormalizedRow + ParseResult.

Per-row problems never raise. A row that fails validation is counted as
skipped and described in ParseResult.info, then processing continues with
the next row. Only the caller's error budget stops the loop early.
"""

__all__ = [
    "normalize_rows",
    "build_candidate",
    "coerce_int",
    "coerce_flag",
    "is_blank_row",
]

logger = logging.getLogger(__name__)

_TRUE_WORDS = {"oui", "o", "yes", "y", "true", "vrai", "x"}
_FALSE_WORDS = {"non", "n", "no", "false", "faux"}


def is_blank_row(row: Sequence[Any] | None) -> bool:
    if not row:
        return True
    for cell in row:
        if cell is None:
            continue
        if isinstance(cell, float) and math.isnan(cell):
            continue
        if isinstance(cell, str) and cell.strip() == "":
            continue
        return False
    return True


def coerce_int(value: Any) -> int | None:
    """Coerce a cell to int (floored). Unparseable values become None."""
    if value is None:
        return None
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return None if math.isnan(value) or math.isinf(value) else math.floor(value)
    text = str(value).strip().replace(",", ".")
    if not text:
        return None
    try:
        number = float(text)
    except ValueError:
        return None
    if math.isnan(number) or math.isinf(number):
        return None
    return math.floor(number)


def coerce_flag(value: Any) -> int | None:
    """0/1 flag; also accepts oui/non, yes/no, true/false."""
    if isinstance(value, str):
        word = value.strip().lower()
        if word in _TRUE_WORDS:
            return 1
        if word in _FALSE_WORDS:
            return 0
    return coerce_int(value)


def _clean_text(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, float):
        if math.isnan(value):
            return None
        # 16.0 read from a numeric cell means the code "16"
        if value.is_integer():
            value = int(value)
    text = str(value).strip()
    return text or None


def _coerce(spec: FieldSpec, value: Any) -> Any:
    if spec.kind == FieldKind.INT:
        number = coerce_int(value)
        # 0 means "not classified" for classifier inputs
        if spec.classifier_input and number is not None and number <= 0:
            return None
        return number
    if spec.kind == FieldKind.FLAG:
        return coerce_flag(value)
    return _clean_text(value)


def build_candidate(
    row: Sequence[Any], headers: Sequence[str], mapping: HeaderMapping, schema: FieldSchema
) -> dict[str, Any]:
    """Candidate record from the mapped cells of one physical row."""
    candidate: dict[str, Any] = {}
    seen: set[str] = set()
    for idx, header in enumerate(headers):
        header = "" if header is None else str(header).strip()
        field_name = mapping.field_for(header)
        # Duplicate header text: the first column wins
        if field_name is None or header in seen:
            continue
        seen.add(header)
        spec = schema.get(field_name)
        if spec is None:
            continue
        raw = row[idx] if idx < len(row) else None
        if isinstance(raw, str):
            raw = raw.strip() or None
        value = _coerce(spec, raw)
        if value is None and spec.default is not None and not spec.classifier_input:
            value = spec.default
        candidate[field_name] = value

    # Fields with defaults that had no column at all
    for spec in schema.fields:
        if spec.name not in candidate and spec.default is not None and not spec.classifier_input:
            candidate[spec.name] = spec.default
    return candidate


def normalize_rows(
    rows: Sequence[Sequence[Any]],
    headers: Sequence[str],
    mapping: HeaderMapping,
    schema: FieldSchema,
    max_errors: int | None = None,
) -> ParseResult:
    """Normalize data rows (header excluded) into a ParseResult.

    Parameters
    ----------
    rows: physical data rows, first one is sheet line 2
    headers: original header row, aligned with row cells
    mapping: header -> field mapping from the header matcher or a template
    schema: dataset schema providing coercion, defaults and constraints
    max_errors: stop once this many rows have been rejected (None = no limit)
    """
    result = ParseResult(total_lines=len(rows))
    error_count = 0

    for i, row in enumerate(rows):
        line_number = i + 2

        if is_blank_row(row):
            result.skipped_lines += 1
            continue

        candidate = build_candidate(row, headers, mapping, schema)
        validation = schema.validate(candidate)
        if validation.ok:
            result.rows.append(NormalizedRow(line_number=line_number, values=validation.values or {}))
            result.valid_lines += 1
        else:
            result.skipped_lines += 1
            result.rejected.append(SkippedLine(line_number, validation.reasons))
            result.info.append(f"Line {line_number}: {'; '.join(validation.reasons)}")
            error_count += 1
            if max_errors is not None and error_count >= max_errors:
                result.info.append(
                    f"Maximum number of errors ({max_errors}) reached at line {line_number}; processing stopped."
                )
                result.truncated = True
                break

    logger.info(
        "dataset=%s total=%d valid=%d skipped=%d truncated=%s",
        schema.dataset_type,
        result.total_lines,
        result.valid_lines,
        result.skipped_lines,
        result.truncated,
    )
    return result
