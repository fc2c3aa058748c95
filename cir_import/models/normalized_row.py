from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any

"""NormalizedRow model.

NormalizedRow represents one physical spreadsheet row after header mapping,
cleaning and validation. The line_number refers to the original sheet line
(header = line 1, first data row = line 2).
"""

__all__ = [
    "NormalizedRow",
]


@dataclass(frozen=True)
class NormalizedRow:
    """Logical representation of a single accepted row."""
    line_number: int  # Sheet line (first data row = 2)
    values: dict[str, Any]  # Canonical field name -> typed value
    auto_classified: bool = False  # Hierarchical codes were inferred, not supplied

    def get(self, name: str, default: Any = None) -> Any:
        return self.values.get(name, default)

    def with_values(self, values: dict[str, Any], *, auto_classified: bool | None = None) -> NormalizedRow:
        return replace(
            self,
            values=values,
            auto_classified=self.auto_classified if auto_classified is None else auto_classified,
        )
