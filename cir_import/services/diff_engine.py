from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from ..models.field_schema import FieldSchema
from ..models.import_batch import DiffSummary
from ..models.normalized_row import NormalizedRow

"""Diff engine: set-based reconciliation of incoming rows against a snapshot.

Row order in the file does not influence the result, only keys and field
values do. Absent values and empty strings compare equal.
"""

__all__ = [
    "ChangeSet",
    "Reconciliation",
    "build_snapshot",
    "compute_diff",
    "normalize_for_compare",
    "reconcile",
    "records_equal",
]

_ABSENT = object()


def normalize_for_compare(value: Any) -> Any:
    if value is None:
        return _ABSENT
    if isinstance(value, str):
        stripped = value.strip()
        return stripped if stripped else _ABSENT
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return value


def records_equal(a: Mapping[str, Any], b: Mapping[str, Any], fields: Iterable[str]) -> bool:
    return all(normalize_for_compare(a.get(f)) == normalize_for_compare(b.get(f)) for f in fields)


def build_snapshot(
    records: Iterable[Mapping[str, Any]], schema: FieldSchema
) -> dict[tuple[Any, ...], dict[str, Any]]:
    """Key the existing records by natural key (records without a key are ignored)."""
    snapshot: dict[tuple[Any, ...], dict[str, Any]] = {}
    for record in records:
        key = schema.record_key(record)
        if key is not None:
            snapshot[key] = dict(record)
    return snapshot


@dataclass
class ChangeSet:
    """Writes implied by a reconciliation.

    inserts/updates hold the new record values keyed by natural key (one entry
    per key, the last occurrence in the file wins); deletes holds the keys of
    existing records absent from the file.
    """
    inserts: dict[tuple[Any, ...], dict[str, Any]] = field(default_factory=dict)
    updates: dict[tuple[Any, ...], dict[str, Any]] = field(default_factory=dict)
    deletes: list[tuple[Any, ...]] = field(default_factory=list)
    unchanged: int = 0

    @property
    def upserts(self) -> dict[tuple[Any, ...], dict[str, Any]]:
        merged = dict(self.inserts)
        merged.update(self.updates)
        return merged

    def is_empty(self) -> bool:
        return not (self.inserts or self.updates or self.deletes)


@dataclass
class Reconciliation:
    summary: DiffSummary
    changes: ChangeSet
    info: list[str] = field(default_factory=list)


def _record_values(row: NormalizedRow | Mapping[str, Any]) -> dict[str, Any]:
    return dict(row.values) if isinstance(row, NormalizedRow) else dict(row)


def reconcile(
    incoming: Sequence[NormalizedRow | Mapping[str, Any]],
    existing: Mapping[tuple[Any, ...], Mapping[str, Any]],
    schema: FieldSchema,
    *,
    prune_removed: bool = True,
) -> Reconciliation:
    """Partition incoming rows into added / updated / unchanged and count removed keys.

    existing must be keyed with schema.record_key (see build_snapshot).
    With prune_removed=False the removed count is still reported but no
    delete is planned.
    """
    added = updated = unchanged = 0
    seen: set[tuple[Any, ...]] = set()
    first_line: dict[tuple[Any, ...], int | None] = {}
    changes = ChangeSet()
    info: list[str] = []

    for row in incoming:
        values = _record_values(row)
        key = schema.record_key(values)
        if key is None:
            continue
        line = row.line_number if isinstance(row, NormalizedRow) else None
        if key in seen:
            info.append(
                f"Line {line if line is not None else '?'}: duplicate key {' / '.join(map(str, key))} "
                f"(first seen at line {first_line[key] if first_line[key] is not None else '?'}), last occurrence is kept"
            )
        else:
            first_line[key] = line
        seen.add(key)

        current = existing.get(key)
        if current is None:
            added += 1
            changes.inserts[key] = values
            continue
        if records_equal(values, current, schema.comparison_fields):
            unchanged += 1
            changes.updates.pop(key, None)
        else:
            updated += 1
            changes.updates[key] = values

    changes.unchanged = unchanged
    removed_keys = [k for k in existing if k not in seen]
    if prune_removed:
        changes.deletes = sorted(removed_keys, key=lambda k: tuple(str(p) for p in k))

    summary = DiffSummary(added=added, updated=updated, removed=len(removed_keys), unchanged=unchanged)
    return Reconciliation(summary=summary, changes=changes, info=info)


def compute_diff(
    incoming: Sequence[NormalizedRow | Mapping[str, Any]],
    existing: Mapping[tuple[Any, ...], Mapping[str, Any]],
    schema: FieldSchema,
) -> DiffSummary:
    """DiffSummary only (see reconcile)."""
    return reconcile(incoming, existing, schema).summary
