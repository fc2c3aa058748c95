from __future__ import annotations

import logging
import uuid
from dataclasses import replace
from typing import Any

from ..db.store import RecordKey, RecordStore
from ..models.import_batch import BatchStatus, ChangeType, DiffSummary, HistoryEntry, ImportBatch, utc_now
from .diff_engine import Reconciliation

"""Batch lifecycle manager: create, commit and roll back import batches.

A batch is persisted as "processing" before any record is touched. The
commit applies every insert, update and delete of a reconciliation together
with one history entry per change and the final batch status inside a single
store transaction. A rollback replays the history of a completed batch in
reverse, also in a single transaction.
"""

__all__ = [
    "BatchManager",
    "BatchStateError",
    "CommitError",
    "CommitOutcomeUnknownError",
    "ROLLBACK_REASON",
    "RollbackError",
]

logger = logging.getLogger(__name__)

IMPORT_REASON = "import"
REMOVED_REASON = "absent from import file"
ROLLBACK_REASON = "rollback"


class BatchError(Exception):
    """Base class for batch lifecycle failures; carries the batch id."""

    def __init__(self, batch_id: str, message: str) -> None:
        self.batch_id = batch_id
        super().__init__(f"batch {batch_id}: {message}")


class BatchStateError(BatchError):
    """Operation not allowed in the batch's current status."""


class CommitError(BatchError):
    """Commit rejected; nothing was applied and the batch is marked failed."""


class CommitOutcomeUnknownError(BatchError):
    """Commit did not report back in time and the batch is still processing."""


class RollbackError(BatchError):
    """Rollback failed; the batch stays completed and no record changed."""


def _key_order(key: RecordKey) -> tuple[str, ...]:
    return tuple(str(p) for p in key)


class BatchManager:
    """Batch operations over one RecordStore."""

    def __init__(self, store: RecordStore) -> None:
        self.store = store

    def create(
        self,
        filename: str,
        dataset_type: str,
        *,
        total_lines: int = 0,
        error_lines: int = 0,
        skipped_count: int = 0,
        diff_summary: DiffSummary | None = None,
        mapping: dict[str, str] | None = None,
    ) -> ImportBatch:
        """Persist a new batch in processing status and return it.

        Line counts and the analysis diff are stored up front so a batch left
        in processing can still be inspected.
        """
        batch = ImportBatch(
            id=uuid.uuid4().hex,
            filename=filename,
            dataset_type=dataset_type,
            status=BatchStatus.PROCESSING,
            total_lines=total_lines,
            error_lines=error_lines,
            skipped_count=skipped_count,
            diff_summary=diff_summary,
            mapping=mapping,
        )
        self.store.create_batch(batch)
        logger.debug("batch %s created for %s (%s)", batch.id, filename, dataset_type)
        return batch

    def get(self, batch_id: str) -> ImportBatch | None:
        return self.store.get_batch(batch_id)

    def recent(self, dataset_type: str | None = None, limit: int = 20) -> list[ImportBatch]:
        return self.store.list_batches(dataset_type, limit)

    def history(self, batch_id: str) -> list[HistoryEntry]:
        return self.store.list_history(batch_id)

    def commit(
        self,
        batch: ImportBatch,
        reconciliation: Reconciliation,
        *,
        processed_lines: int = 0,
        error_lines: int = 0,
        skipped_count: int = 0,
        info: list[str] | None = None,
    ) -> ImportBatch:
        """Apply a reconciliation atomically and mark the batch completed.

        The snapshot the reconciliation was computed from may be stale, so the
        current values of every affected key are re-read inside the
        transaction; history old_data and the created/updated/deleted counts
        reflect what was actually replaced.

        Raises CommitError (batch marked failed) on any failure.
        """
        if not batch.status.can_transition_to(BatchStatus.COMPLETED):
            raise BatchStateError(batch.id, f"cannot commit a batch in status {batch.status.value}")

        ds = batch.dataset_type
        changes = reconciliation.changes
        upserts = changes.upserts
        try:
            with self.store.transaction() as tx:
                current = tx.fetch_by_keys(ds, list(upserts) + list(changes.deletes))
                entries: list[HistoryEntry] = []
                created = updated = 0
                for key in sorted(upserts, key=_key_order):
                    old = current.get(key)
                    if old is None:
                        created += 1
                        change_type = ChangeType.INSERT
                    else:
                        updated += 1
                        change_type = ChangeType.UPDATE
                    entries.append(self._entry(batch, key, change_type, old, dict(upserts[key]), IMPORT_REASON, len(entries)))
                delete_keys = [k for k in changes.deletes if k in current]
                for key in delete_keys:
                    entries.append(self._entry(batch, key, ChangeType.DELETE, current[key], None, REMOVED_REASON, len(entries)))

                tx.upsert_many(ds, upserts)
                deleted = tx.delete_many(ds, delete_keys)
                tx.append_history(entries)

                done = replace(
                    batch,
                    status=BatchStatus.COMPLETED,
                    updated_at=utc_now(),
                    processed_lines=processed_lines,
                    error_lines=error_lines,
                    created_count=created,
                    updated_count=updated,
                    deleted_count=deleted,
                    skipped_count=skipped_count,
                    diff_summary=reconciliation.summary,
                    info=list(info or []),
                    error=None,
                )
                tx.update_batch(done)
        except Exception as e:
            self._mark_failed(batch, str(e))
            raise CommitError(batch.id, str(e)) from e

        logger.info(
            "batch %s completed: created=%d updated=%d deleted=%d",
            done.id, done.created_count, done.updated_count, done.deleted_count,
        )
        return done

    def rollback(self, batch_id: str) -> ImportBatch:
        """Revert a completed batch from its history entries.

        Raises BatchStateError when the batch is unknown or not completed and
        RollbackError when the history is missing or the store fails.
        """
        batch = self.store.get_batch(batch_id)
        if batch is None:
            raise BatchStateError(batch_id, "not found")
        if batch.status != BatchStatus.COMPLETED:
            raise BatchStateError(batch_id, f"cannot roll back a batch in status {batch.status.value}")

        history = [e for e in self.store.list_history(batch_id) if e.reason != ROLLBACK_REASON]
        expected = batch.created_count + batch.updated_count + batch.deleted_count
        if len(history) < expected:
            raise RollbackError(batch_id, f"history incomplete ({len(history)} of {expected} changes recorded)")

        ds = batch.dataset_type
        sequence = max((e.sequence for e in history), default=-1) + 1
        entries: list[HistoryEntry] = []
        to_delete: list[RecordKey] = []
        to_restore: dict[RecordKey, dict[str, Any]] = {}
        for entry in reversed(history):
            if entry.change_type == ChangeType.INSERT:
                to_delete.append(entry.record_key)
                reverse = (ChangeType.DELETE, entry.new_data, None)
            elif entry.change_type == ChangeType.UPDATE:
                to_restore[entry.record_key] = dict(entry.old_data or {})
                reverse = (ChangeType.UPDATE, entry.new_data, entry.old_data)
            else:
                to_restore[entry.record_key] = dict(entry.old_data or {})
                reverse = (ChangeType.INSERT, None, entry.old_data)
            change_type, old, new = reverse
            entries.append(self._entry(batch, entry.record_key, change_type, old, new, ROLLBACK_REASON, sequence))
            sequence += 1

        try:
            with self.store.transaction() as tx:
                tx.delete_many(ds, to_delete)
                tx.upsert_many(ds, to_restore)
                tx.append_history(entries)
                reverted = replace(batch, status=BatchStatus.ROLLED_BACK, updated_at=utc_now())
                tx.update_batch(reverted)
        except Exception as e:
            raise RollbackError(batch_id, str(e)) from e

        logger.info("batch %s rolled back (%d changes reverted)", batch_id, len(entries))
        return reverted

    def _entry(
        self,
        batch: ImportBatch,
        key: RecordKey,
        change_type: ChangeType,
        old: dict[str, Any] | None,
        new: dict[str, Any] | None,
        reason: str,
        sequence: int,
    ) -> HistoryEntry:
        return HistoryEntry(
            batch_id=batch.id,
            dataset_type=batch.dataset_type,
            record_key=key,
            change_type=change_type,
            old_data=old,
            new_data=new,
            reason=reason,
            sequence=sequence,
        )

    def _mark_failed(self, batch: ImportBatch, error: str) -> None:
        failed = replace(batch, status=BatchStatus.FAILED, updated_at=utc_now(), error=error)
        try:
            self.store.update_batch(failed)
        except Exception:
            logger.exception("batch %s: could not record failed status", batch.id)
