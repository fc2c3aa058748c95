from __future__ import annotations

from dataclasses import dataclass, field

"""HeaderMapping model: result of matching observed headers to canonical fields."""

__all__ = [
    "HeaderMapping",
]


@dataclass(frozen=True)
class HeaderMapping:
    """Observed header -> canonical field, created once per import.

    Attributes:
        mapping: observed header string -> canonical field name
        unmapped_headers: headers that could not be matched (file order)
        unmatched_fields: canonical fields no header claimed (schema order)
        confidence: matched field count / total canonical fields
        scores: observed header -> match score (1.0 for exact matches)
    """
    mapping: dict[str, str]
    unmapped_headers: list[str]
    unmatched_fields: list[str]
    confidence: float
    scores: dict[str, float] = field(default_factory=dict)

    def field_for(self, header: str) -> str | None:
        return self.mapping.get(header)

    def as_template(self) -> dict[str, str]:
        """Field -> header form, the shape stored on batches and templates."""
        return {fld: header for header, fld in self.mapping.items()}
