from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable, Iterable, Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import psycopg2
from psycopg2 import errors as pg_errors
from psycopg2.extras import Json, execute_values

from ..config.datasets import get_schema
from ..models.field_schema import FieldSchema
from ..models.import_batch import BatchStatus, ChangeType, DiffSummary, HistoryEntry, ImportBatch
from ..services.progress import ProgressTracker
from .store import RecordKey, RecordStore, StoreError, StoreTimeoutError, StoreTransaction

"""PostgreSQL RecordStore (psycopg2).

- Dataset tables are named after the dataset type and carry a UNIQUE
  constraint on the natural key (see schema.sql).
- Record writes are batched with psycopg2.extras.execute_values as
  INSERT ... ON CONFLICT (key) DO UPDATE.
- Every public operation uses its own connection so that a commit running
  in a worker thread never shares a session with a status read issued by the
  orchestrator after a timeout.
- Transactions are explicit (autocommit off, COMMIT / ROLLBACK on exit) and
  bounded by SET LOCAL statement_timeout.
"""

__all__ = [
    "BatchMetrics",
    "PostgresStore",
    "UpsertResult",
    "batch_upsert",
    "dataset_columns",
]

logger = logging.getLogger(__name__)

SCHEMA_PATH = Path(__file__).parent / "schema.sql"

_BATCH_COLUMNS = (
    "id", "filename", "dataset_type", "status", "created_at", "updated_at",
    "total_lines", "processed_lines", "error_lines", "created_count",
    "updated_count", "deleted_count", "skipped_count", "diff_summary",
    "mapping", "info", "error",
)
_HISTORY_COLUMNS = (
    "batch_id", "dataset_type", "record_key", "change_type", "old_data",
    "new_data", "reason", "changed_at", "sequence",
)


@dataclass(frozen=True)
class BatchMetrics:
    """Timing of one execute_values call."""
    batch_size: int
    elapsed_seconds: float
    start_time: float
    end_time: float


@dataclass(frozen=True)
class UpsertResult:
    written_rows: int
    returned_values: list[tuple[Any, ...]] | None = None


def dataset_columns(schema: FieldSchema) -> list[str]:
    """Stored columns: canonical fields followed by derived comparison fields."""
    names = schema.field_names
    return names + [c for c in schema.comparison_fields if c not in names]


def _quote(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


def batch_upsert(
    cursor: Any,
    table: str,
    columns: Sequence[str],
    conflict_columns: Sequence[str],
    rows: Iterable[Sequence[Any]],
    *,
    returning: bool = False,
    page_size: int = 1000,
    metrics_callback: Callable[[BatchMetrics], None] | None = None,
) -> UpsertResult:
    """Batched INSERT ... ON CONFLICT DO UPDATE using execute_values.

    Parameters
    ----------
    cursor: psycopg2 cursor inside an open transaction
    table: target table (taken from a known dataset type, never user input)
    columns: inserted columns
    conflict_columns: natural key columns backed by a UNIQUE constraint
    rows: value tuples aligned with columns
    returning: append RETURNING id and fetch the generated ids
    page_size: execute_values page size
    metrics_callback: receives a BatchMetrics after the call (not invoked for
        an empty row set)
    """
    rows_list = list(rows)
    if not rows_list:
        return UpsertResult(written_rows=0, returned_values=[] if returning else None)

    cols_sql = ",".join(_quote(c) for c in columns)
    conflict_sql = ",".join(_quote(c) for c in conflict_columns)
    updates = [c for c in columns if c not in conflict_columns]
    if updates:
        set_sql = ",".join(f"{_quote(c)}=EXCLUDED.{_quote(c)}" for c in updates)
        action = f"DO UPDATE SET {set_sql}, updated_at=now()"
    else:
        action = "DO NOTHING"
    sql = f"INSERT INTO {_quote(table)} ({cols_sql}) VALUES %s ON CONFLICT ({conflict_sql}) {action}"
    if returning:
        sql += " RETURNING id"

    start_time = time.time()
    try:
        returned = execute_values(cursor, sql, rows_list, page_size=page_size, fetch=returning)
    except pg_errors.QueryCanceled as e:
        raise StoreTimeoutError(f"upsert into {table} timed out: {e}") from e
    except psycopg2.Error as e:
        raise StoreError(f"upsert into {table} failed: {e}") from e
    finally:
        end_time = time.time()
        if metrics_callback is not None:
            metrics_callback(
                BatchMetrics(
                    batch_size=len(rows_list),
                    elapsed_seconds=end_time - start_time,
                    start_time=start_time,
                    end_time=end_time,
                )
            )

    return UpsertResult(written_rows=len(rows_list), returned_values=returned if returning else None)


def _json_or_none(value: Any) -> Any:
    return Json(value) if value is not None else None


def _batch_params(batch: ImportBatch) -> tuple[Any, ...]:
    return (
        batch.id,
        batch.filename,
        batch.dataset_type,
        batch.status.value,
        batch.created_at,
        batch.updated_at,
        batch.total_lines,
        batch.processed_lines,
        batch.error_lines,
        batch.created_count,
        batch.updated_count,
        batch.deleted_count,
        batch.skipped_count,
        _json_or_none(batch.diff_summary.to_dict() if batch.diff_summary else None),
        _json_or_none(batch.mapping),
        Json(list(batch.info)),
        batch.error,
    )


def _load_json(value: Any) -> Any:
    # psycopg2 decodes jsonb already; text columns (tests, older servers) do not
    if isinstance(value, str):
        return json.loads(value)
    return value


def _batch_from_row(row: Sequence[Any]) -> ImportBatch:
    data = dict(zip(_BATCH_COLUMNS, row))
    return ImportBatch(
        id=data["id"],
        filename=data["filename"],
        dataset_type=data["dataset_type"],
        status=BatchStatus(data["status"]),
        created_at=data["created_at"],
        updated_at=data["updated_at"],
        total_lines=data["total_lines"],
        processed_lines=data["processed_lines"],
        error_lines=data["error_lines"],
        created_count=data["created_count"],
        updated_count=data["updated_count"],
        deleted_count=data["deleted_count"],
        skipped_count=data["skipped_count"],
        diff_summary=DiffSummary.from_dict(_load_json(data["diff_summary"])),
        mapping=_load_json(data["mapping"]),
        info=list(_load_json(data["info"]) or []),
        error=data["error"],
    )


def _history_from_row(row: Sequence[Any]) -> HistoryEntry:
    data = dict(zip(_HISTORY_COLUMNS, row))
    return HistoryEntry(
        batch_id=data["batch_id"],
        dataset_type=data["dataset_type"],
        record_key=tuple(_load_json(data["record_key"])),
        change_type=ChangeType(data["change_type"]),
        old_data=_load_json(data["old_data"]),
        new_data=_load_json(data["new_data"]),
        reason=data["reason"],
        changed_at=data["changed_at"],
        sequence=data["sequence"],
    )


def _key_filter(schema: FieldSchema) -> str:
    cols = ",".join(_quote(c) for c in schema.key_fields)
    return f"({cols}) IN (VALUES %s)"


def _fetch_by_keys(cursor: Any, dataset_type: str, keys: Iterable[RecordKey]) -> dict[RecordKey, dict[str, Any]]:
    schema = get_schema(dataset_type)
    key_list = list(dict.fromkeys(keys))
    if not key_list:
        return {}
    columns = ["id"] + dataset_columns(schema)
    sql = (
        f"SELECT {','.join(_quote(c) for c in columns)} FROM {_quote(dataset_type)} "
        f"WHERE {_key_filter(schema)}"
    )
    rows = execute_values(cursor, sql, [tuple(k) for k in key_list], fetch=True)
    out: dict[RecordKey, dict[str, Any]] = {}
    for row in rows:
        record = dict(zip(columns, row))
        key = schema.record_key(record)
        if key is not None:
            out[key] = record
    return out


class _PostgresTransaction(StoreTransaction):
    def __init__(self, cursor: Any, page_size: int) -> None:
        self._cur = cursor
        self._page_size = page_size

    def fetch_by_keys(self, dataset_type: str, keys: Iterable[RecordKey]) -> dict[RecordKey, dict[str, Any]]:
        return _fetch_by_keys(self._cur, dataset_type, keys)

    def upsert_many(self, dataset_type: str, records: Mapping[RecordKey, Mapping[str, Any]]) -> int:
        schema = get_schema(dataset_type)
        columns = dataset_columns(schema)
        rows = [tuple(values.get(c) for c in columns) for values in records.values()]
        written = 0
        with ProgressTracker(len(rows), description=f"Writing {dataset_type}") as progress:
            for start in range(0, len(rows), self._page_size):
                chunk = rows[start:start + self._page_size]
                written += batch_upsert(
                    self._cur, dataset_type, columns, schema.key_fields, chunk, page_size=self._page_size
                ).written_rows
                progress.advance(len(chunk))
        return written

    def delete_many(self, dataset_type: str, keys: Sequence[RecordKey]) -> int:
        if not keys:
            return 0
        schema = get_schema(dataset_type)
        sql = f"DELETE FROM {_quote(dataset_type)} WHERE {_key_filter(schema)}"
        # Single statement so that rowcount covers every key
        execute_values(self._cur, sql, [tuple(k) for k in keys], page_size=len(keys))
        return self._cur.rowcount

    def append_history(self, entries: Sequence[HistoryEntry]) -> None:
        if not entries:
            return
        sql = f"INSERT INTO import_history ({','.join(_HISTORY_COLUMNS)}) VALUES %s"
        rows = [
            (
                e.batch_id,
                e.dataset_type,
                Json(list(e.record_key)),
                e.change_type.value,
                _json_or_none(e.old_data),
                _json_or_none(e.new_data),
                e.reason,
                e.changed_at,
                e.sequence,
            )
            for e in entries
        ]
        execute_values(self._cur, sql, rows, page_size=self._page_size)

    def update_batch(self, batch: ImportBatch) -> None:
        _update_batch(self._cur, batch)


def _update_batch(cursor: Any, batch: ImportBatch) -> None:
    assignments = ",".join(f"{c}=%s" for c in _BATCH_COLUMNS[1:])
    params = _batch_params(batch)
    cursor.execute(f"UPDATE import_batches SET {assignments} WHERE id=%s", params[1:] + (batch.id,))
    if cursor.rowcount == 0:
        raise StoreError(f"batch {batch.id} does not exist")


class PostgresStore(RecordStore):
    """RecordStore backed by PostgreSQL.

    Args:
        dsn: libpq connection string
        statement_timeout_ms: per-transaction statement timeout (0 disables it)
        page_size: snapshot page size and execute_values page size
        connect: connection factory, psycopg2.connect by default
    """

    def __init__(
        self,
        dsn: str,
        *,
        statement_timeout_ms: int = 0,
        page_size: int = 1000,
        connect: Callable[[str], Any] = psycopg2.connect,
    ) -> None:
        self.dsn = dsn
        self.statement_timeout_ms = statement_timeout_ms
        self.page_size = page_size
        self._connect = connect

    @contextmanager
    def _session(self) -> Iterator[Any]:
        """Connection + cursor; COMMIT on success, ROLLBACK on any error."""
        try:
            conn = self._connect(self.dsn)
        except psycopg2.Error as e:
            raise StoreError(f"database connection failed: {e}") from e
        conn.autocommit = False
        try:
            cur = conn.cursor()
            try:
                if self.statement_timeout_ms:
                    cur.execute("SET LOCAL statement_timeout = %s", (int(self.statement_timeout_ms),))
                yield cur
                conn.commit()
            except BaseException:
                conn.rollback()
                raise
            finally:
                cur.close()
        except pg_errors.QueryCanceled as e:
            raise StoreTimeoutError(f"statement timeout exceeded: {e}") from e
        except psycopg2.Error as e:
            raise StoreError(str(e)) from e
        finally:
            conn.close()

    def init_schema(self) -> None:
        """Create the dataset, batch and history tables if they do not exist."""
        ddl = SCHEMA_PATH.read_text(encoding="utf-8")
        with self._session() as cur:
            cur.execute(ddl)
        logger.info("database schema initialized")

    def fetch_page(self, dataset_type: str, offset: int, limit: int) -> list[dict[str, Any]]:
        schema = get_schema(dataset_type)
        columns = ["id"] + dataset_columns(schema)
        order = ",".join(_quote(c) for c in schema.key_fields)
        with self._session() as cur:
            cur.execute(
                f"SELECT {','.join(_quote(c) for c in columns)} FROM {_quote(dataset_type)} "
                f"ORDER BY {order} LIMIT %s OFFSET %s",
                (limit, offset),
            )
            return [dict(zip(columns, row)) for row in cur.fetchall()]

    def iter_records(self, dataset_type: str) -> Iterator[dict[str, Any]]:
        with ProgressTracker(None, description=f"Reading {dataset_type}") as progress:
            for record in super().iter_records(dataset_type):
                progress.advance(1)
                yield record

    def fetch_by_keys(self, dataset_type: str, keys: Iterable[RecordKey]) -> dict[RecordKey, dict[str, Any]]:
        with self._session() as cur:
            return _fetch_by_keys(cur, dataset_type, keys)

    def create_batch(self, batch: ImportBatch) -> None:
        placeholders = ",".join(["%s"] * len(_BATCH_COLUMNS))
        with self._session() as cur:
            cur.execute(
                f"INSERT INTO import_batches ({','.join(_BATCH_COLUMNS)}) VALUES ({placeholders})",
                _batch_params(batch),
            )

    def update_batch(self, batch: ImportBatch) -> None:
        with self._session() as cur:
            _update_batch(cur, batch)

    def get_batch(self, batch_id: str) -> ImportBatch | None:
        with self._session() as cur:
            cur.execute(f"SELECT {','.join(_BATCH_COLUMNS)} FROM import_batches WHERE id=%s", (batch_id,))
            row = cur.fetchone()
        return _batch_from_row(row) if row is not None else None

    def list_batches(self, dataset_type: str | None = None, limit: int = 20) -> list[ImportBatch]:
        sql = f"SELECT {','.join(_BATCH_COLUMNS)} FROM import_batches"
        params: tuple[Any, ...] = ()
        if dataset_type is not None:
            sql += " WHERE dataset_type=%s"
            params = (dataset_type,)
        sql += " ORDER BY created_at DESC LIMIT %s"
        with self._session() as cur:
            cur.execute(sql, params + (limit,))
            return [_batch_from_row(r) for r in cur.fetchall()]

    def list_history(self, batch_id: str) -> list[HistoryEntry]:
        with self._session() as cur:
            cur.execute(
                f"SELECT {','.join(_HISTORY_COLUMNS)} FROM import_history "
                "WHERE batch_id=%s ORDER BY sequence, id",
                (batch_id,),
            )
            return [_history_from_row(r) for r in cur.fetchall()]

    @contextmanager
    def transaction(self) -> Iterator[StoreTransaction]:
        with self._session() as cur:
            yield _PostgresTransaction(cur, self.page_size)
