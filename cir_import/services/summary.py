from __future__ import annotations

from ..models.import_batch import DiffSummary, ImportBatch

"""SUMMARY line rendering.

One line per import, analysis or rollback, with a fixed key order so that
operators can grep and parse it.
"""

__all__ = [
    "render_summary_line",
    "render_batch_line",
]


def render_summary_line(
    dataset_type: str,
    diff: DiffSummary,
    *,
    batch_id: str | None = None,
    status: str = "analyzed",
    skipped: int = 0,
) -> str:
    """Render a SUMMARY line.

    Format:
    SUMMARY dataset={d} batch={id|-} status={s} added={a} updated={u}
    removed={r} unchanged={n} skipped={k}

    Examples:
        >>> render_summary_line("cir_segment", DiffSummary(2, 1, 0, 5), batch_id="abc", status="completed")
        'SUMMARY dataset=cir_segment batch=abc status=completed added=2 updated=1 removed=0 unchanged=5 skipped=0'
    """
    return (
        f"SUMMARY dataset={dataset_type} "
        f"batch={batch_id or '-'} "
        f"status={status} "
        f"added={diff.added} "
        f"updated={diff.updated} "
        f"removed={diff.removed} "
        f"unchanged={diff.unchanged} "
        f"skipped={skipped}"
    )


def render_batch_line(batch: ImportBatch) -> str:
    """One-line description of a stored batch (status / history listings)."""
    created = batch.created_at.strftime("%Y-%m-%d %H:%M:%S")
    return (
        f"{batch.id} {created} {batch.dataset_type} {batch.status.value} "
        f"file={batch.filename} created={batch.created_count} updated={batch.updated_count} "
        f"deleted={batch.deleted_count} skipped={batch.skipped_count}"
    )
