from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

"""ImportBatch domain model, BatchStatus enum, DiffSummary and history entries.

The ImportBatch is the unit of auditability and the unit of undo. It is
persisted before any row is written, finalized once after the commit step,
and may later be reverted through its history entries.
"""

__all__ = [
    "BatchStatus",
    "ChangeType",
    "DiffSummary",
    "HistoryEntry",
    "ImportBatch",
    "utc_now",
]


def utc_now() -> datetime:
    return datetime.now(UTC)


class BatchStatus(Enum):
    """Status enum for the import batch lifecycle.

    State transitions: pending → processing → (completed | failed),
    completed → rolled_back

    - PENDING: batch announced but not yet processing
    - PROCESSING: created, commit not finished
    - COMPLETED: all changes committed
    - FAILED: commit rejected, nothing applied (terminal)
    - ROLLED_BACK: changes reverted from the history log (terminal)
    """
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"

    def can_transition_to(self, target: BatchStatus) -> bool:
        return target in _TRANSITIONS[self]

    @property
    def terminal(self) -> bool:
        return not _TRANSITIONS[self]


_TRANSITIONS: dict[BatchStatus, frozenset[BatchStatus]] = {
    BatchStatus.PENDING: frozenset({BatchStatus.PROCESSING, BatchStatus.COMPLETED, BatchStatus.FAILED}),
    BatchStatus.PROCESSING: frozenset({BatchStatus.COMPLETED, BatchStatus.FAILED}),
    BatchStatus.COMPLETED: frozenset({BatchStatus.ROLLED_BACK}),
    BatchStatus.FAILED: frozenset(),
    BatchStatus.ROLLED_BACK: frozenset(),
}


class ChangeType(Enum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True)
class DiffSummary:
    """Three-way reconciliation counts.

    added + updated + unchanged equals the number of incoming rows with a
    determinate key; removed counts existing keys absent from the file.
    """
    added: int = 0
    updated: int = 0
    removed: int = 0
    unchanged: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)

    @staticmethod
    def from_dict(data: dict[str, Any] | None) -> DiffSummary | None:
        if data is None:
            return None
        return DiffSummary(
            added=int(data.get("added", 0)),
            updated=int(data.get("updated", 0)),
            removed=int(data.get("removed", 0)),
            unchanged=int(data.get("unchanged", 0)),
        )


@dataclass(frozen=True)
class HistoryEntry:
    """One audited row change, written in the same transaction as the change."""
    batch_id: str
    dataset_type: str
    record_key: tuple[Any, ...]
    change_type: ChangeType
    old_data: dict[str, Any] | None
    new_data: dict[str, Any] | None
    reason: str
    changed_at: datetime = field(default_factory=utc_now)
    sequence: int = 0  # Order of the change inside its batch


@dataclass
class ImportBatch:
    """Persisted record of one import attempt."""
    id: str
    filename: str
    dataset_type: str
    status: BatchStatus = BatchStatus.PENDING
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime | None = None
    total_lines: int = 0
    processed_lines: int = 0
    error_lines: int = 0
    created_count: int = 0
    updated_count: int = 0
    deleted_count: int = 0
    skipped_count: int = 0
    diff_summary: DiffSummary | None = None
    mapping: dict[str, str] | None = None  # field -> header actually used
    info: list[str] = field(default_factory=list)
    error: str | None = None
