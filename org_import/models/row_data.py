from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from .validation_error import ValidationError

"""Row models for the Departments / Positions sheets.

A row is the typed result of reading one data line of a sheet. `source_row`
always refers to the original sheet row number (header = 1, first data row = 2),
never to a position in an in-memory list.
"""

__all__ = [
    "DepartmentRow",
    "PositionRow",
    "ExtractionResult",
]


@dataclass(frozen=True)
class DepartmentRow:
    """One line of the Departments sheet."""
    dept_code: str  # business key
    name: str
    parent_dept_code: str | None
    metadata: dict[str, Any] | None
    source_row: int


@dataclass(frozen=True)
class PositionRow:
    """One line of the Positions sheet.

    Optional cells that were left empty stay ``None``; defaults
    (is_manager=False, is_active=True, incumbents_count=0) are applied only
    when the record is handed to persistence.
    """
    pos_code: str  # business key
    title: str
    dept_code: str
    reports_to_pos_code: str | None
    is_manager: bool | None
    incumbents_count: int | None
    source_row: int
    is_active: bool | None = None


@dataclass(frozen=True)
class ExtractionResult:
    """Output of the tabular extractor.

    `issues` holds cell-level coercion findings (invalid JSON metadata,
    unparseable booleans / integers). They are recorded instead of raised.
    """
    departments: list[DepartmentRow] = field(default_factory=list)
    positions: list[PositionRow] = field(default_factory=list)
    issues: list[ValidationError] = field(default_factory=list)

    @property
    def total_rows(self) -> int:
        return len(self.departments) + len(self.positions)
