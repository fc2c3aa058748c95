from __future__ import annotations

import io
import math
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from pathlib import PurePath
from typing import Any

import pandas as pd

"""Workbook decoding.

- Uploads are checked (extension, byte size) before anything is decoded.
- The first row of the selected sheet is the header row, the following rows
  are data rows. Cells are returned raw (str / int / float / None); cleaning
  happens in the row normalizer.
- Pandas' default NA-string conversion is disabled so that values such as
  "NA" or "NULL" (real brand / category codes) survive decoding.
"""

__all__ = [
    "ACCEPTED_EXTENSIONS",
    "MAX_FILE_SIZE_BYTES",
    "MalformedInputError",
    "RawTable",
    "validate_upload",
    "read_workbook",
    "select_sheet",
    "to_raw_table",
    "load_raw_table",
]

ACCEPTED_EXTENSIONS = (".xlsx", ".xls")
MAX_FILE_SIZE_BYTES = 50 * 1024 * 1024


class MalformedInputError(Exception):
    """Raised when an upload cannot be decoded into a usable table."""


@dataclass(frozen=True)
class RawTable:
    sheet_name: str
    headers: list[str]
    rows: list[list[Any]]  # Data rows only, header excluded


def validate_upload(
    filename: str,
    size: int,
    *,
    accepted_extensions: Sequence[str] = ACCEPTED_EXTENSIONS,
    max_size: int = MAX_FILE_SIZE_BYTES,
) -> None:
    """Fail fast on wrong file type or oversized upload."""
    suffix = PurePath(filename).suffix.lower()
    accepted = [e.lower() for e in accepted_extensions]
    if suffix not in accepted:
        raise MalformedInputError(
            f"unsupported file type '{suffix or filename}' (accepted: {', '.join(accepted)})"
        )
    if size > max_size:
        raise MalformedInputError(
            f"file too large: {size} bytes (maximum {max_size} bytes)"
        )
    if size == 0:
        raise MalformedInputError("file is empty")


def read_workbook(data: bytes, filename: str = "upload.xlsx") -> dict[str, pd.DataFrame]:
    """Decode workbook bytes into raw DataFrames keyed by sheet name.

    .xls files are decoded with xlrd and .xlsx files with openpyxl.
    """
    engine = "xlrd" if PurePath(filename).suffix.lower() == ".xls" else "openpyxl"
    try:
        xls = pd.ExcelFile(io.BytesIO(data), engine=engine)
        return {
            str(name): xls.parse(
                name,
                header=None,
                dtype=object,
                keep_default_na=False,
                na_values=[""],
            )
            for name in xls.sheet_names
        }
    except Exception as e:
        raise MalformedInputError(f"unreadable workbook '{filename}': {e}") from e


def select_sheet(
    sheet_names: Iterable[str], requested: str | None = None, hints: Sequence[str] = ()
) -> str:
    """Pick the sheet to import.

    An explicitly requested sheet must exist. Otherwise the first sheet whose
    lowercase name contains one of the dataset hints is used, falling back to
    the first sheet.
    """
    names = list(sheet_names)
    if not names:
        raise MalformedInputError("workbook contains no sheet")
    if requested is not None:
        if requested not in names:
            raise MalformedInputError(
                f"sheet '{requested}' not found (available: {', '.join(names)})"
            )
        return requested
    for hint in hints:
        for name in names:
            if hint.lower() in name.lower():
                return name
    return names[0]


def _cell(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, float) and math.isnan(value):
        return None
    try:
        if pd.isna(value):
            return None
    except (TypeError, ValueError):
        pass
    return value


def to_raw_table(df: pd.DataFrame, sheet_name: str) -> RawTable:
    """Split a header-less DataFrame into header row and data rows."""
    if df.shape[0] < 2:
        raise MalformedInputError(
            f"sheet '{sheet_name}' does not contain enough data (a header row and at least one data row)"
        )
    headers = ["" if _cell(c) is None else str(c).strip() for c in df.iloc[0].tolist()]
    rows = [[_cell(v) for v in raw] for raw in df.iloc[1:].itertuples(index=False, name=None)]
    return RawTable(sheet_name=sheet_name, headers=headers, rows=rows)


def load_raw_table(
    data: bytes,
    filename: str,
    *,
    sheet_name: str | None = None,
    hints: Sequence[str] = (),
) -> RawTable:
    """Decode an upload and return the selected sheet as a RawTable."""
    sheets = read_workbook(data, filename)
    chosen = select_sheet(sheets.keys(), sheet_name, hints)
    return to_raw_table(sheets[chosen], chosen)
