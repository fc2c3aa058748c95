from __future__ import annotations

import copy
import threading
from collections.abc import Iterable, Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import replace
from typing import Any

from ..config.datasets import get_schema
from ..models.import_batch import HistoryEntry, ImportBatch
from .store import RecordKey, RecordStore, StoreError, StoreTransaction

"""In-memory RecordStore.

Used by the test-suite and by the CLI --mock mode. A transaction works on a
deep copy of the current state that replaces the live state only when the
context manager exits without an exception. Writers are serialized by a
separate lock held for the whole transaction; readers only wait for the
copy and the swap, so they see the last committed state while a slow
transaction is still running.
"""

__all__ = [
    "MemoryStore",
]


class _State:
    def __init__(self) -> None:
        self.records: dict[str, dict[RecordKey, dict[str, Any]]] = {}
        self.batches: dict[str, ImportBatch] = {}
        self.history: list[HistoryEntry] = []
        self.next_id = 1


class _MemoryTransaction(StoreTransaction):
    def __init__(self, state: _State) -> None:
        self._state = state

    def fetch_by_keys(self, dataset_type: str, keys: Iterable[RecordKey]) -> dict[RecordKey, dict[str, Any]]:
        table = self._state.records.get(dataset_type, {})
        return {k: dict(table[k]) for k in keys if k in table}

    def upsert_many(self, dataset_type: str, records: Mapping[RecordKey, Mapping[str, Any]]) -> int:
        table = self._state.records.setdefault(dataset_type, {})
        for key, values in records.items():
            record = {k: v for k, v in values.items() if k != "id"}
            current = table.get(key)
            if current is not None and "id" in current:
                record["id"] = current["id"]
            elif "id" in values and values["id"] is not None:
                record["id"] = values["id"]
            else:
                record["id"] = self._state.next_id
                self._state.next_id += 1
            table[key] = record
        return len(records)

    def delete_many(self, dataset_type: str, keys: Sequence[RecordKey]) -> int:
        table = self._state.records.get(dataset_type, {})
        deleted = 0
        for key in keys:
            if table.pop(key, None) is not None:
                deleted += 1
        return deleted

    def append_history(self, entries: Sequence[HistoryEntry]) -> None:
        self._state.history.extend(entries)

    def update_batch(self, batch: ImportBatch) -> None:
        if batch.id not in self._state.batches:
            raise StoreError(f"batch {batch.id} does not exist")
        self._state.batches[batch.id] = copy.deepcopy(batch)


class MemoryStore(RecordStore):
    """Dict-backed store; seed() loads existing records for a dataset."""

    def __init__(self, page_size: int = 1000) -> None:
        self.page_size = page_size
        self._state = _State()
        self._lock = threading.RLock()
        self._write_lock = threading.RLock()

    def seed(self, dataset_type: str, records: Iterable[Mapping[str, Any]]) -> None:
        schema = get_schema(dataset_type)
        with self.transaction() as tx:
            rows: dict[RecordKey, Mapping[str, Any]] = {}
            for record in records:
                key = schema.record_key(record)
                if key is None:
                    raise StoreError(f"record without natural key: {dict(record)}")
                rows[key] = record
            tx.upsert_many(dataset_type, rows)

    def fetch_page(self, dataset_type: str, offset: int, limit: int) -> list[dict[str, Any]]:
        with self._lock:
            table = self._state.records.get(dataset_type, {})
            keys = sorted(table, key=lambda k: tuple(str(p) for p in k))
            return [dict(table[k]) for k in keys[offset:offset + limit]]

    def fetch_by_keys(self, dataset_type: str, keys: Iterable[RecordKey]) -> dict[RecordKey, dict[str, Any]]:
        with self._lock:
            return _MemoryTransaction(self._state).fetch_by_keys(dataset_type, keys)

    def create_batch(self, batch: ImportBatch) -> None:
        with self._write_lock, self._lock:
            if batch.id in self._state.batches:
                raise StoreError(f"batch {batch.id} already exists")
            self._state.batches[batch.id] = copy.deepcopy(batch)

    def update_batch(self, batch: ImportBatch) -> None:
        with self._write_lock, self._lock:
            _MemoryTransaction(self._state).update_batch(batch)

    def get_batch(self, batch_id: str) -> ImportBatch | None:
        with self._lock:
            batch = self._state.batches.get(batch_id)
            return copy.deepcopy(batch) if batch is not None else None

    def list_batches(self, dataset_type: str | None = None, limit: int = 20) -> list[ImportBatch]:
        with self._lock:
            batches = [
                b for b in self._state.batches.values()
                if dataset_type is None or b.dataset_type == dataset_type
            ]
            batches.sort(key=lambda b: b.created_at, reverse=True)
            return [copy.deepcopy(b) for b in batches[:limit]]

    def list_history(self, batch_id: str) -> list[HistoryEntry]:
        with self._lock:
            entries = [e for e in self._state.history if e.batch_id == batch_id]
            return [replace(e) for e in sorted(entries, key=lambda e: e.sequence)]

    @contextmanager
    def transaction(self) -> Iterator[StoreTransaction]:
        with self._write_lock:
            with self._lock:
                working = copy.deepcopy(self._state)
            yield _MemoryTransaction(working)
            with self._lock:
                self._state = working
