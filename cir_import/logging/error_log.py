from __future__ import annotations

from collections.abc import Iterable
from datetime import UTC, datetime
from pathlib import Path

from ..models.error_record import ErrorRecord
from ..models.parse_result import SkippedLine

"""Error log buffering (JSON Lines).

- Fixed schema per line: timestamp, file, sheet, row, error_type, message
- One file per run: logs/errors-YYYYMMDD-HHMMSS.log (UTC), created on first
  flush that has records
- Rejected rows and batch-level failures (row=-1) are buffered during an
  import and written at the end of the run
"""

__all__ = [
    "ErrorRecord",
    "ErrorLogBuffer",
    "ROW_REJECTED",
    "IMPORT_FAILED",
]

LOGS_DIR = Path("./logs")
TIMESTAMP_FMT = "%Y%m%d-%H%M%S"

ROW_REJECTED = "ROW_REJECTED"
IMPORT_FAILED = "IMPORT_FAILED"


class ErrorLogBuffer:
    """In-memory buffer of ErrorRecords; flush() appends them as JSON Lines.

    Not thread safe; one import runs sequentially.
    """

    def __init__(self, logs_dir: Path | None = None) -> None:
        self._records: list[ErrorRecord] = []
        self._logs_dir = logs_dir or LOGS_DIR
        self._file_path: Path | None = None

    @property
    def file_path(self) -> Path:
        if self._file_path is None:
            self._logs_dir.mkdir(parents=True, exist_ok=True)
            stamp = datetime.now(UTC).strftime(TIMESTAMP_FMT)
            self._file_path = self._logs_dir / f"errors-{stamp}.log"
        return self._file_path

    def append(self, record: ErrorRecord) -> None:
        self._records.append(record)

    def add_rejected_lines(self, file: str, sheet: str, lines: Iterable[SkippedLine]) -> None:
        for line in lines:
            self.append(ErrorRecord.create(file, sheet, line.line_number, ROW_REJECTED, "; ".join(line.reasons)))

    def add_failure(self, file: str, sheet: str, error_type: str, message: str) -> None:
        self.append(ErrorRecord.create(file, sheet, -1, error_type, message))

    def __len__(self) -> int:
        return len(self._records)

    def flush(self) -> Path | None:
        """Write buffered records; returns the log path, None when nothing was buffered."""
        if not self._records:
            return None
        fp = self.file_path
        with fp.open("a", encoding="utf-8") as f:
            for r in self._records:
                f.write(r.to_json_line() + "\n")
        self._records.clear()
        return fp
