from __future__ import annotations

import re
import unicodedata
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

"""Field schema domain models.

A FieldSchema describes one importable dataset: its canonical fields, the
header spellings accepted for each of them, the per-field constraints checked
by the row normalizer, and the natural key used by the diff engine.
"""

__all__ = [
    "FieldKind",
    "FieldSpec",
    "FieldSchema",
    "RowValidation",
    "fold_header",
]

_NON_ALNUM = re.compile(r"[^a-z0-9]+")


def fold_header(value: Any) -> str:
    """Fold a header for comparison: lower case, no diacritics, no punctuation.

    >>> fold_header("  Désignation FSMEGA ")
    'designationfsmega'
    >>> fold_header("Code 1&2&3")
    'code123'
    """
    if value is None:
        return ""
    text = unicodedata.normalize("NFKD", str(value).strip().lower())
    text = "".join(ch for ch in text if not unicodedata.combining(ch))
    return _NON_ALNUM.sub("", text)


class FieldKind:
    TEXT = "text"
    INT = "int"
    FLAG = "flag"  # 0/1 integer, accepts yes/no words


@dataclass(frozen=True)
class FieldSpec:
    """One canonical field and its constraints."""
    name: str
    aliases: tuple[str, ...]
    kind: str = FieldKind.TEXT
    required: bool = False
    max_length: int | None = None
    min_value: int | None = None
    max_value: int | None = None
    allowed: frozenset[Any] | None = None
    default: Any = None
    # Left absent when empty so the auto-classifier can detect it
    classifier_input: bool = False

    @property
    def numeric(self) -> bool:
        return self.kind in (FieldKind.INT, FieldKind.FLAG)

    def with_aliases(self, extra: tuple[str, ...]) -> FieldSpec:
        merged = self.aliases + tuple(a for a in extra if a not in self.aliases)
        return FieldSpec(
            name=self.name,
            aliases=merged,
            kind=self.kind,
            required=self.required,
            max_length=self.max_length,
            min_value=self.min_value,
            max_value=self.max_value,
            allowed=self.allowed,
            default=self.default,
            classifier_input=self.classifier_input,
        )

    def check(self, value: Any) -> str | None:
        """Return a violation reason for a present value, None if it is valid."""
        if value is None:
            return None
        if self.max_length is not None and isinstance(value, str) and len(value) > self.max_length:
            return f"{self.name} longer than {self.max_length} characters"
        if self.numeric and isinstance(value, int):
            if self.min_value is not None and value < self.min_value:
                return f"{self.name}={value} below minimum {self.min_value}"
            if self.max_value is not None and value > self.max_value:
                return f"{self.name}={value} above maximum {self.max_value}"
        if self.allowed is not None and value not in self.allowed:
            return f"{self.name}={value!r} not in {sorted(self.allowed, key=str)}"
        return None


@dataclass(frozen=True)
class RowValidation:
    """Typed validation result: either an accepted record or a list of reasons."""
    values: dict[str, Any] | None = None
    reasons: tuple[str, ...] = ()

    @property
    def ok(self) -> bool:
        return self.values is not None and not self.reasons

    @staticmethod
    def accepted(values: dict[str, Any]) -> RowValidation:
        return RowValidation(values=values)

    @staticmethod
    def rejected(reasons: list[str]) -> RowValidation:
        return RowValidation(values=None, reasons=tuple(reasons))


@dataclass(frozen=True)
class FieldSchema:
    """Schema for one dataset type.

    Attributes:
        dataset_type: identifier stored on import batches ("cir_segment", ...)
        fields: canonical fields in display order, names unique
        key_fields: fields forming the natural key of a record
        comparison_fields: fields compared by the diff engine
        similarity_threshold: minimum approximate header score (0..1)
        min_confidence: minimum matched-field ratio before a file is rejected
        sheet_hints: lowercase substrings used to pick the sheet to import
        derive: fills derived fields on an accepted record (may be None)
    """
    dataset_type: str
    fields: tuple[FieldSpec, ...]
    key_fields: tuple[str, ...]
    comparison_fields: tuple[str, ...]
    similarity_threshold: float = 0.8
    min_confidence: float = 0.3
    sheet_hints: tuple[str, ...] = ()
    derive: Callable[[dict[str, Any]], dict[str, Any]] | None = field(default=None, compare=False)

    def __post_init__(self) -> None:
        names = [f.name for f in self.fields]
        if len(names) != len(set(names)):
            raise ValueError(f"duplicate field names in schema {self.dataset_type}: {names}")
        unknown = [k for k in self.key_fields if k not in names]
        if unknown:
            raise ValueError(f"key fields not declared in schema {self.dataset_type}: {unknown}")

    @property
    def field_names(self) -> list[str]:
        return [f.name for f in self.fields]

    @property
    def required_fields(self) -> list[str]:
        return [f.name for f in self.fields if f.required]

    @property
    def classifier_fields(self) -> list[str]:
        return [f.name for f in self.fields if f.classifier_input]

    def get(self, name: str) -> FieldSpec | None:
        for spec in self.fields:
            if spec.name == name:
                return spec
        return None

    def record_key(self, record: Mapping[str, Any]) -> tuple[Any, ...] | None:
        """Natural key of a record, None when any key component is missing."""
        parts = []
        for name in self.key_fields:
            value = record.get(name)
            if value is None or (isinstance(value, str) and value.strip() == ""):
                return None
            parts.append(value)
        return tuple(parts)

    def validate(self, candidate: dict[str, Any]) -> RowValidation:
        """Check required fields and constraints, then apply derived fields."""
        reasons: list[str] = []
        missing = [
            name for name in self.required_fields
            if candidate.get(name) is None or candidate.get(name) == ""
        ]
        if missing:
            reasons.append(f"missing required fields ({', '.join(missing)})")
        for spec in self.fields:
            reason = spec.check(candidate.get(spec.name))
            if reason:
                reasons.append(reason)
        if reasons:
            return RowValidation.rejected(reasons)
        values = dict(candidate)
        if self.derive is not None:
            values = self.derive(values)
        return RowValidation.accepted(values)

    def with_overrides(
        self,
        *,
        similarity_threshold: float | None = None,
        min_confidence: float | None = None,
        sheet_hints: tuple[str, ...] | None = None,
        extra_aliases: Mapping[str, list[str]] | None = None,
    ) -> FieldSchema:
        fields = self.fields
        if extra_aliases:
            fields = tuple(
                f.with_aliases(tuple(extra_aliases.get(f.name, ()))) for f in self.fields
            )
        return FieldSchema(
            dataset_type=self.dataset_type,
            fields=fields,
            key_fields=self.key_fields,
            comparison_fields=self.comparison_fields,
            similarity_threshold=(
                self.similarity_threshold if similarity_threshold is None else similarity_threshold
            ),
            min_confidence=self.min_confidence if min_confidence is None else min_confidence,
            sheet_hints=self.sheet_hints if sheet_hints is None else sheet_hints,
            derive=self.derive,
        )
