from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, TypeVar

from ..config.loader import ImportSettings
from ..db.store import RecordStore, StoreTimeoutError
from ..excel.reader import load_raw_table, validate_upload
from ..logging.error_log import IMPORT_FAILED, ErrorLogBuffer
from ..logging.init import log_summary
from ..models.header_mapping import HeaderMapping
from ..models.import_batch import BatchStatus, DiffSummary, ImportBatch
from ..models.parse_result import ParseResult
from .auto_classifier import classify_rows
from .batch_lifecycle import BatchManager, CommitError, CommitOutcomeUnknownError
from .diff_engine import Reconciliation, build_snapshot, reconcile
from .header_matcher import mapping_from_template, match_headers, require_confidence
from .row_normalizer import normalize_rows
from .summary import render_summary_line

"""Import orchestration: upload -> analyze -> apply.

ImportSession sequences the pipeline for one uploaded file:

1. upload: file type and size checks, nothing decoded yet
2. analyze: decode the workbook, pick the sheet, map headers (fuzzy or from a
   saved template), normalize rows, auto-classify segment rows, read the
   stored snapshot and reconcile; the store is only read
3. apply: requires explicit confirmation, creates the batch and commits the
   reconciliation through the batch lifecycle manager

The snapshot read and the commit run with a time budget. A commit that does
not report back in time is resolved by re-reading the batch status, never by
retrying.
"""

__all__ = [
    "AnalysisReport",
    "ImportFlowError",
    "ImportOutcome",
    "ImportSession",
    "SessionPhase",
    "run_with_timeout",
]

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ImportFlowError(Exception):
    """Operation not allowed at this point of the import flow."""


class SessionPhase(Enum):
    IDLE = "idle"
    UPLOADED = "uploaded"
    ANALYZED = "analyzed"
    APPLIED = "applied"
    FAILED = "failed"


@dataclass
class AnalysisReport:
    """Everything an operator reviews before confirming an import."""
    filename: str
    sheet_name: str
    dataset_type: str
    parse_result: ParseResult
    header_mapping: HeaderMapping
    diff_summary: DiffSummary
    info: list[str] = field(default_factory=list)
    auto_classified: int = 0

    @property
    def usable_rows(self) -> int:
        return len(self.parse_result.rows)


@dataclass(frozen=True)
class ImportOutcome:
    batch_id: str
    diff_summary: DiffSummary
    info: list[str]
    batch: ImportBatch


def run_with_timeout(fn: Callable[..., T], timeout: float | None, *args: Any, what: str = "operation", **kwargs: Any) -> T:
    """Run fn in a worker thread and wait at most timeout seconds.

    Raises StoreTimeoutError when the budget is exceeded. The worker is not
    interrupted; callers must find out what it did by other means.
    """
    if timeout is None:
        return fn(*args, **kwargs)
    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="cir-import")
    future = executor.submit(fn, *args, **kwargs)
    try:
        return future.result(timeout=timeout)
    except FuturesTimeoutError as e:
        raise StoreTimeoutError(f"{what} did not finish within {timeout:g}s") from e
    finally:
        executor.shutdown(wait=False)


class ImportSession:
    """One file import for one dataset type.

    Args:
        store: record store read for the snapshot and written on apply
        dataset_type: "cir_segment" or "cir_classification"
        settings: loaded configuration (defaults when omitted)
        error_log: buffer receiving rejected lines and failures
    """

    def __init__(
        self,
        store: RecordStore,
        dataset_type: str,
        settings: ImportSettings | None = None,
        *,
        error_log: ErrorLogBuffer | None = None,
    ) -> None:
        self.settings = settings or ImportSettings()
        self.schema = self.settings.schema_for(dataset_type)
        self.dataset_type = dataset_type
        self.store = store
        self.batches = BatchManager(store)
        self.error_log = error_log if error_log is not None else ErrorLogBuffer()
        self.phase = SessionPhase.IDLE
        self._filename: str | None = None
        self._data: bytes | None = None
        self._report: AnalysisReport | None = None
        self._reconciliation: Reconciliation | None = None

    @property
    def report(self) -> AnalysisReport | None:
        return self._report

    def upload(self, filename: str, data: bytes) -> None:
        """Accept a new file; any previous analysis or failure is discarded."""
        validate_upload(
            filename,
            len(data),
            accepted_extensions=self.settings.accepted_extensions,
            max_size=self.settings.max_file_size_bytes,
        )
        self._reset()
        self._filename = filename
        self._data = data
        self.phase = SessionPhase.UPLOADED
        logger.info("uploaded %s (%d bytes) for %s", filename, len(data), self.dataset_type)

    def analyze(
        self,
        sheet_name: str | None = None,
        template: Mapping[str, str] | None = None,
        max_errors: int | None = None,
    ) -> AnalysisReport:
        """Parse the uploaded file and reconcile it against the stored dataset.

        Raises MalformedInputError, LowConfidenceError or StoreTimeoutError;
        the session stays uploaded so analyze can be retried (for instance
        with a template).
        """
        if self.phase not in (SessionPhase.UPLOADED, SessionPhase.ANALYZED):
            raise ImportFlowError(f"cannot analyze in phase {self.phase.value}; upload a file first")
        if self._filename is None or self._data is None:
            raise ImportFlowError("no uploaded file to analyze")
        # a failed re-analysis must not leave the previous one applicable
        self._report = None
        self._reconciliation = None
        self.phase = SessionPhase.UPLOADED

        table = load_raw_table(self._data, self._filename, sheet_name=sheet_name, hints=self.schema.sheet_hints)
        if template:
            mapping = mapping_from_template(table.headers, template, self.schema)
        else:
            mapping = match_headers(table.headers, self.schema)
        require_confidence(mapping, self.schema)
        logger.info(
            "sheet=%s columns matched %d/%d (confidence %.2f)",
            table.sheet_name, len(mapping.mapping), len(self.schema.fields), mapping.confidence,
        )

        budget = max_errors if max_errors is not None else self.settings.max_errors
        parse = normalize_rows(table.rows, table.headers, mapping, self.schema, budget)

        existing = run_with_timeout(
            self.store.fetch_all,
            self.settings.timeouts.snapshot_seconds,
            self.dataset_type,
            what="snapshot read",
        )
        info = list(parse.info)
        auto_classified = 0
        if self.schema.classifier_fields:
            parse.rows, messages = classify_rows(parse.rows, existing, self.schema)
            auto_classified = len(messages)
            info.extend(messages)

        reconciliation = reconcile(
            parse.rows,
            build_snapshot(existing, self.schema),
            self.schema,
            prune_removed=self.settings.prune_removed,
        )
        info.extend(reconciliation.info)

        self.error_log.add_rejected_lines(self._filename, table.sheet_name, parse.rejected)
        self._reconciliation = reconciliation
        self._report = AnalysisReport(
            filename=self._filename,
            sheet_name=table.sheet_name,
            dataset_type=self.dataset_type,
            parse_result=parse,
            header_mapping=mapping,
            diff_summary=reconciliation.summary,
            info=info,
            auto_classified=auto_classified,
        )
        self.phase = SessionPhase.ANALYZED
        log_summary(
            render_summary_line(
                self.dataset_type, reconciliation.summary, status="analyzed", skipped=parse.skipped_lines
            )[len("SUMMARY "):]
        )
        return self._report

    def apply(self, confirm: bool = False) -> ImportOutcome:
        """Commit the analyzed file as a new batch.

        Raises ImportFlowError for flow violations, CommitError or
        CommitOutcomeUnknownError when the commit fails or cannot be confirmed.
        """
        if self.phase == SessionPhase.FAILED:
            raise ImportFlowError("a previous apply failed; upload the file again")
        if self.phase != SessionPhase.ANALYZED:
            raise ImportFlowError(f"cannot apply in phase {self.phase.value}; analyze the file first")
        if not confirm:
            raise ImportFlowError("apply requires explicit confirmation")
        report, reconciliation = self._report, self._reconciliation
        if report is None or reconciliation is None:
            raise ImportFlowError("no analysis to apply; analyze the file first")
        if report.usable_rows == 0:
            raise ImportFlowError("no usable rows to import")

        parse = report.parse_result
        try:
            batch = self.batches.create(
                report.filename,
                self.dataset_type,
                total_lines=parse.total_lines,
                error_lines=len(parse.rejected),
                skipped_count=parse.skipped_lines,
                diff_summary=reconciliation.summary,
                mapping=report.header_mapping.as_template(),
            )
        except Exception as e:
            self._fail(report, str(e))
            raise
        try:
            done = run_with_timeout(
                self.batches.commit,
                self.settings.timeouts.commit_seconds,
                batch,
                reconciliation,
                processed_lines=parse.valid_lines,
                error_lines=len(parse.rejected),
                skipped_count=parse.skipped_lines,
                info=report.info,
                what="commit",
            )
        except StoreTimeoutError:
            done = self._resolve_timed_out_commit(batch, report)
        except CommitError as e:
            self._fail(report, str(e))
            raise

        self.phase = SessionPhase.APPLIED
        summary = done.diff_summary or reconciliation.summary
        log_summary(
            render_summary_line(
                self.dataset_type, summary, batch_id=done.id, status=done.status.value,
                skipped=done.skipped_count,
            )[len("SUMMARY "):]
        )
        return ImportOutcome(batch_id=done.id, diff_summary=summary, info=list(report.info), batch=done)

    def cancel(self) -> None:
        """Discard the uploaded file and its analysis."""
        if self.phase == SessionPhase.APPLIED:
            raise ImportFlowError("the import was already applied; roll the batch back instead")
        self._reset()
        logger.info("import cancelled")

    def _resolve_timed_out_commit(self, batch: ImportBatch, report: AnalysisReport) -> ImportBatch:
        current = self.store.get_batch(batch.id)
        if current is not None and current.status == BatchStatus.COMPLETED:
            logger.warning("batch %s: commit timed out but completed", batch.id)
            return current
        if current is not None and current.status == BatchStatus.FAILED:
            self._fail(report, current.error or "commit failed")
            raise CommitError(batch.id, current.error or "commit failed")
        self._fail(report, "commit timed out, outcome unknown")
        raise CommitOutcomeUnknownError(
            batch.id, "commit timed out and the batch is still processing; check its status before retrying"
        )

    def _fail(self, report: AnalysisReport, message: str) -> None:
        self.phase = SessionPhase.FAILED
        self.error_log.add_failure(report.filename, report.sheet_name, IMPORT_FAILED, message)
        logger.error("import of %s failed: %s", report.filename, message)

    def _reset(self) -> None:
        self._filename = None
        self._data = None
        self._report = None
        self._reconciliation = None
        self.phase = SessionPhase.IDLE
