from __future__ import annotations

from dataclasses import dataclass, field

from .normalized_row import NormalizedRow

"""ParseResult model: output of the row normalizer."""

__all__ = [
    "ParseResult",
    "SkippedLine",
]


@dataclass(frozen=True)
class SkippedLine:
    """A non-blank line rejected by validation (used for the error log)."""
    line_number: int
    reasons: tuple[str, ...]


@dataclass
class ParseResult:
    """Counts, accepted rows and informational messages for one sheet.

    valid_lines + skipped_lines <= total_lines always holds; blank lines are
    counted as skipped once and carry no message.
    """
    total_lines: int = 0
    valid_lines: int = 0
    skipped_lines: int = 0
    rows: list[NormalizedRow] = field(default_factory=list)
    info: list[str] = field(default_factory=list)
    rejected: list[SkippedLine] = field(default_factory=list)
    truncated: bool = False  # Error budget reached before the end of the sheet
