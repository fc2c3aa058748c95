from __future__ import annotations

import abc
from collections.abc import Iterable, Iterator, Mapping, Sequence
from contextlib import AbstractContextManager
from typing import Any

from ..models.import_batch import HistoryEntry, ImportBatch

"""Record store interface.

The import engine never talks to a database driver directly. It goes through
a RecordStore, which owns the datasets (canonical records keyed by natural
key), the import batches and the per-row history log.

All writes that belong to one commit or one rollback are issued on a
StoreTransaction obtained from RecordStore.transaction(); leaving the
context manager normally commits, leaving it with an exception discards every
write made through it.
"""

__all__ = [
    "RecordKey",
    "RecordStore",
    "StoreError",
    "StoreTimeoutError",
    "StoreTransaction",
]

RecordKey = tuple[Any, ...]


class StoreError(Exception):
    """Raised when the backing store rejects or fails an operation."""


class StoreTimeoutError(StoreError):
    """Raised when a store operation exceeds its time budget."""


class StoreTransaction(abc.ABC):
    """Writes issued inside one atomic unit."""

    @abc.abstractmethod
    def fetch_by_keys(self, dataset_type: str, keys: Iterable[RecordKey]) -> dict[RecordKey, dict[str, Any]]:
        """Current records for keys (missing keys are absent from the result)."""

    @abc.abstractmethod
    def upsert_many(self, dataset_type: str, records: Mapping[RecordKey, Mapping[str, Any]]) -> int:
        """Insert or replace records by natural key, return the number written."""

    @abc.abstractmethod
    def delete_many(self, dataset_type: str, keys: Sequence[RecordKey]) -> int:
        """Delete records by natural key, return the number deleted."""

    @abc.abstractmethod
    def append_history(self, entries: Sequence[HistoryEntry]) -> None: ...

    @abc.abstractmethod
    def update_batch(self, batch: ImportBatch) -> None: ...


class RecordStore(abc.ABC):
    """Persistence used by the batch lifecycle manager and the orchestrator."""

    page_size: int = 1000

    @abc.abstractmethod
    def fetch_page(self, dataset_type: str, offset: int, limit: int) -> list[dict[str, Any]]:
        """One page of records ordered by natural key."""

    def fetch_all(self, dataset_type: str) -> list[dict[str, Any]]:
        """Whole dataset, read page by page."""
        return list(self.iter_records(dataset_type))

    def iter_records(self, dataset_type: str) -> Iterator[dict[str, Any]]:
        offset = 0
        while True:
            page = self.fetch_page(dataset_type, offset, self.page_size)
            yield from page
            if len(page) < self.page_size:
                return
            offset += len(page)

    @abc.abstractmethod
    def fetch_by_keys(self, dataset_type: str, keys: Iterable[RecordKey]) -> dict[RecordKey, dict[str, Any]]: ...

    @abc.abstractmethod
    def create_batch(self, batch: ImportBatch) -> None: ...

    @abc.abstractmethod
    def update_batch(self, batch: ImportBatch) -> None: ...

    @abc.abstractmethod
    def get_batch(self, batch_id: str) -> ImportBatch | None: ...

    @abc.abstractmethod
    def list_batches(self, dataset_type: str | None = None, limit: int = 20) -> list[ImportBatch]:
        """Most recent batches first."""

    @abc.abstractmethod
    def list_history(self, batch_id: str) -> list[HistoryEntry]:
        """History entries of a batch in the order they were written."""

    @abc.abstractmethod
    def transaction(self) -> AbstractContextManager[StoreTransaction]: ...
