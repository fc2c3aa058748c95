from __future__ import annotations

import argparse
import sys
from pathlib import Path

from dotenv import load_dotenv

from ..config.datasets import DATASETS
from ..config.loader import ConfigError, ImportSettings, load_config, resolve_dsn
from ..db.memory_store import MemoryStore
from ..db.postgres_store import PostgresStore
from ..db.store import RecordStore, StoreError
from ..excel.reader import MalformedInputError, validate_upload
from ..logging.error_log import ErrorLogBuffer
from ..logging.init import enable_debug, log_summary, setup_logging
from ..services.batch_lifecycle import (
    BatchManager,
    BatchStateError,
    CommitError,
    CommitOutcomeUnknownError,
    RollbackError,
)
from ..services.header_matcher import LowConfidenceError
from ..services.orchestrator import AnalysisReport, ImportFlowError, ImportSession
from ..services.summary import render_batch_line, render_summary_line

"""CLI entrypoint: python -m cir_import.cli <command>.

Commands:
- analyze FILE --dataset D   parse and reconcile, print the report, no writes
- apply FILE --dataset D --yes   analyze then commit as a new batch
- rollback BATCH_ID          revert a completed batch
- status [BATCH_ID]          show one batch or the most recent ones
- init-db                    create the PostgreSQL tables

Exit codes: 0 success, 1 fatal (config, input, confidence, store, flow),
2 commit or rollback failure.
"""

EXIT_SUCCESS = 0
EXIT_FATAL = 1
EXIT_COMMIT_FAILURE = 2

DEFAULT_CONFIG = Path("config/import.yml")


def _load_env_file(path: Path, override: bool = True) -> None:
    """Load .env so that connection variables take precedence over the config file."""
    if path.exists():
        load_dotenv(dotenv_path=path, override=override)


def _positive_int(text: str) -> int:
    value = int(text)
    if value < 1:
        raise argparse.ArgumentTypeError(f"must be at least 1, got {value}")
    return value


def _parse_args(argv: list[str]) -> argparse.Namespace:
    p = argparse.ArgumentParser(prog="cir-import", description="CIR spreadsheet import and reconciliation")
    p.add_argument("--debug", action="store_true", help="Enable debug logging")
    p.add_argument("--config", type=Path, default=None, help="Config file (default: config/import.yml)")
    p.add_argument("--mock", action="store_true", help="Use an in-memory store instead of PostgreSQL")
    sub = p.add_subparsers(dest="command", required=True)

    for name, help_text in (("analyze", "Parse and reconcile a file without writing"),
                            ("apply", "Import a file as a new batch")):
        sp = sub.add_parser(name, help=help_text)
        sp.add_argument("file", type=Path)
        sp.add_argument("--dataset", required=True, choices=sorted(DATASETS))
        sp.add_argument("--sheet", default=None, help="Sheet name (default: detected from dataset hints)")
        sp.add_argument("--template", default=None, help="Saved column mapping template name")
        sp.add_argument("--max-errors", type=_positive_int, default=None, help="Stop after N rejected rows")
        if name == "apply":
            sp.add_argument("--yes", action="store_true", help="Confirm the import")

    rb = sub.add_parser("rollback", help="Revert a completed batch")
    rb.add_argument("batch_id")

    st = sub.add_parser("status", help="Show a batch or the most recent batches")
    st.add_argument("batch_id", nargs="?", default=None)
    st.add_argument("--dataset", choices=sorted(DATASETS), default=None)
    st.add_argument("--limit", type=int, default=20)

    sub.add_parser("init-db", help="Create the PostgreSQL tables")
    return p.parse_args(argv)


def _load_settings(path: Path | None) -> ImportSettings:
    if path is not None:
        return load_config(path)
    if DEFAULT_CONFIG.exists():
        return load_config(DEFAULT_CONFIG)
    return ImportSettings()


def _make_store(args: argparse.Namespace, settings: ImportSettings) -> RecordStore:
    if args.mock:
        return MemoryStore(page_size=settings.page_size)
    return PostgresStore(
        resolve_dsn(settings.database),
        statement_timeout_ms=int(settings.timeouts.commit_seconds * 1000),
        page_size=settings.page_size,
    )


def _print_report(report: AnalysisReport) -> None:
    parse = report.parse_result
    print(f"file={report.filename} sheet={report.sheet_name} dataset={report.dataset_type}")
    print(f"confidence={report.header_mapping.confidence:.2f}")
    for header, field_name in report.header_mapping.mapping.items():
        score = report.header_mapping.scores.get(header, 1.0)
        print(f"  {header!r} -> {field_name} ({score:.2f})")
    if report.header_mapping.unmapped_headers:
        print(f"unmapped headers: {', '.join(report.header_mapping.unmapped_headers)}")
    print(
        f"lines total={parse.total_lines} valid={parse.valid_lines} skipped={parse.skipped_lines} "
        f"auto_classified={report.auto_classified}{' (truncated)' if parse.truncated else ''}"
    )
    d = report.diff_summary
    print(f"diff added={d.added} updated={d.updated} removed={d.removed} unchanged={d.unchanged}")
    for message in report.info:
        print(f"  {message}")


def _run_import(args: argparse.Namespace, settings: ImportSettings, store: RecordStore, logger) -> int:
    error_log = ErrorLogBuffer(Path(settings.logs_dir))
    session = ImportSession(store, args.dataset, settings, error_log=error_log)
    try:
        template = settings.template(args.template, args.dataset) if args.template else None
        validate_upload(
            args.file.name,
            args.file.stat().st_size,
            accepted_extensions=settings.accepted_extensions,
            max_size=settings.max_file_size_bytes,
        )
        session.upload(args.file.name, args.file.read_bytes())
        report = session.analyze(sheet_name=args.sheet, template=template, max_errors=args.max_errors)
        _print_report(report)
        if args.command == "analyze":
            return EXIT_SUCCESS
        if not args.yes:
            logger.error("apply requires --yes to confirm the import")
            return EXIT_FATAL
        outcome = session.apply(confirm=True)
        logger.info("batch %s %s", outcome.batch_id, outcome.batch.status.value)
        return EXIT_SUCCESS
    except (CommitError, CommitOutcomeUnknownError) as e:
        logger.error(f"commit: {e}")
        return EXIT_COMMIT_FAILURE
    except OSError as e:
        logger.error(f"file: {e}")
        return EXIT_FATAL
    except (ConfigError, MalformedInputError, LowConfidenceError, ImportFlowError, StoreError) as e:
        logger.error(f"{type(e).__name__}: {e}")
        return EXIT_FATAL
    finally:
        log_path = error_log.flush()
        if log_path is not None:
            logger.info(f"error log written to {log_path}")


def _run_rollback(args: argparse.Namespace, store: RecordStore, logger) -> int:
    manager = BatchManager(store)
    try:
        batch = manager.rollback(args.batch_id)
    except BatchStateError as e:
        logger.error(f"rollback: {e}")
        return EXIT_FATAL
    except RollbackError as e:
        logger.error(f"rollback: {e}")
        return EXIT_COMMIT_FAILURE
    except StoreError as e:
        logger.error(f"store: {e}")
        return EXIT_FATAL
    summary = batch.diff_summary
    if summary is not None:
        log_summary(
            render_summary_line(batch.dataset_type, summary, batch_id=batch.id, status=batch.status.value,
                                skipped=batch.skipped_count)[len("SUMMARY "):]
        )
    return EXIT_SUCCESS


def _run_status(args: argparse.Namespace, store: RecordStore, logger) -> int:
    manager = BatchManager(store)
    try:
        if args.batch_id is None:
            for batch in manager.recent(args.dataset, args.limit):
                print(render_batch_line(batch))
            return EXIT_SUCCESS
        batch = manager.get(args.batch_id)
        if batch is None:
            logger.error(f"batch {args.batch_id} not found")
            return EXIT_FATAL
        print(render_batch_line(batch))
        if batch.error:
            print(f"  error: {batch.error}")
        for message in batch.info:
            print(f"  {message}")
        for entry in manager.history(batch.id):
            print(f"  #{entry.sequence} {entry.change_type.value} {' / '.join(map(str, entry.record_key))} ({entry.reason})")
    except StoreError as e:
        logger.error(f"store: {e}")
        return EXIT_FATAL
    return EXIT_SUCCESS


def main(argv: list[str] | None = None) -> int:
    logger = setup_logging()

    # None only: an empty list must not pull in the test runner's arguments
    if argv is None:
        argv = sys.argv[1:]
    args = _parse_args(argv)
    if args.debug:
        enable_debug()

    _load_env_file(Path(".env"), override=True)
    try:
        settings = _load_settings(args.config)
    except ConfigError as e:
        logger.error(f"config: {e}")
        return EXIT_FATAL

    store = _make_store(args, settings)
    logger.debug(f"store={type(store).__name__}")

    if args.command in ("analyze", "apply"):
        return _run_import(args, settings, store, logger)
    if args.command == "rollback":
        return _run_rollback(args, store, logger)
    if args.command == "status":
        return _run_status(args, store, logger)
    if args.command == "init-db":
        if not isinstance(store, PostgresStore):
            logger.error("init-db needs a PostgreSQL store (drop --mock)")
            return EXIT_FATAL
        try:
            store.init_schema()
        except StoreError as e:
            logger.error(f"store: {e}")
            return EXIT_FATAL
        return EXIT_SUCCESS
    return EXIT_FATAL


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
