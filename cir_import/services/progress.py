from __future__ import annotations

import sys
from typing import Any

from tqdm import tqdm
from tqdm.std import tqdm as TqdmType

"""Progress display with tqdm (TTY only).

Used by the PostgreSQL store for paged snapshot reads and chunked commit
writes. In non-TTY environments (CI, piped output) no bar is created so that
log output stays free of control sequences.
"""

__all__ = [
    "ProgressTracker",
    "is_tty_enabled",
]


def is_tty_enabled() -> bool:
    """True when stdout is a terminal and progress should be displayed."""
    return sys.stdout.isatty()


class ProgressTracker:
    """Row-count progress bar for one store operation.

    Args:
        total: expected number of rows (None when unknown, e.g. paged reads)
        description: bar label
        unit: unit shown after the counter
    """

    def __init__(self, total: int | None, *, description: str = "Writing rows", unit: str = "row") -> None:
        self.total = total
        self.description = description
        self.done = 0

        self.enabled = is_tty_enabled()
        self.pbar: TqdmType[Any] | None
        if self.enabled:
            self.pbar = tqdm(
                total=total,
                desc=description,
                unit=unit,
                leave=False,
                ncols=80,
                ascii=True,
            )
        else:
            self.pbar = None

    def advance(self, count: int) -> None:
        self.done += count
        if self.enabled and self.pbar is not None:
            self.pbar.update(count)

    def set_postfix(self, **kwargs: Any) -> None:
        if self.enabled and self.pbar is not None:
            self.pbar.set_postfix(**kwargs)

    def close(self) -> None:
        if self.enabled and self.pbar is not None:
            self.pbar.close()
            self.pbar = None

    def __enter__(self) -> ProgressTracker:
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()
