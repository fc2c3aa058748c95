"""Domain models for the CIR spreadsheet import engine.

This package contains the domain model classes shared by the header matcher,
row normalizer, diff engine, batch lifecycle manager and stores.
"""

from .error_record import ErrorRecord
from .field_schema import FieldKind, FieldSchema, FieldSpec, RowValidation, fold_header
from .header_mapping import HeaderMapping
from .import_batch import BatchStatus, ChangeType, DiffSummary, HistoryEntry, ImportBatch
from .normalized_row import NormalizedRow
from .parse_result import ParseResult, SkippedLine

__all__ = [
    # Schema models
    "FieldKind",
    "FieldSchema",
    "FieldSpec",
    "RowValidation",
    "fold_header",
    "HeaderMapping",
    # Processing models
    "NormalizedRow",
    "ParseResult",
    "SkippedLine",
    # Batch models
    "BatchStatus",
    "ChangeType",
    "DiffSummary",
    "HistoryEntry",
    "ImportBatch",
    "ErrorRecord",
]
