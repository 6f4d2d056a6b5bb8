from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

"""ValidationError model and its enums.

Row-level findings produced by the extractor, the structural validator and the
wave planner. Findings are values: they are collected into lists and returned,
never raised, so that a caller sees every problem of a batch in one pass.
"""

__all__ = [
    "ErrorType",
    "Severity",
    "SheetType",
    "ValidationError",
]


class ErrorType(Enum):
    """Classification of a validation finding (UPPER_SNAKE values)."""
    MISSING_REQUIRED_FIELD = "MISSING_REQUIRED_FIELD"
    MISSING_OPTIONAL_FIELD = "MISSING_OPTIONAL_FIELD"
    DUPLICATE_CODE_IN_FILE = "DUPLICATE_CODE_IN_FILE"
    INVALID_REFERENCE = "INVALID_REFERENCE"
    CIRCULAR_REFERENCE = "CIRCULAR_REFERENCE"
    INVALID_DATA_TYPE = "INVALID_DATA_TYPE"
    INVALID_JSON = "INVALID_JSON"
    BUSINESS_RULE = "BUSINESS_RULE"  # 階層形状 (root 複数 / root なし)
    UNRESOLVED_DEPENDENCY = "UNRESOLVED_DEPENDENCY"


class Severity(Enum):
    """ERROR blocks the import, WARNING does not."""
    ERROR = "ERROR"
    WARNING = "WARNING"


class SheetType(Enum):
    DEPARTMENTS = "Departments"
    POSITIONS = "Positions"


@dataclass(frozen=True)
class ValidationError:
    """A single data-quality finding with its source location.

    Attributes:
        type: Finding classification
        severity: ERROR or WARNING
        sheet: Sheet the offending row belongs to
        row: 1-based sheet row (header = 1, first data row = 2)
        column: Normalized column name when known
        message: Human readable description
        suggestion: Actionable hint for fixing the data
        affected_codes: Business keys involved (e.g. every code of a cycle)
    """
    type: ErrorType
    severity: Severity
    sheet: SheetType
    row: int
    column: str | None
    message: str
    suggestion: str
    affected_codes: tuple[str, ...] = field(default_factory=tuple)

    @property
    def is_blocking(self) -> bool:
        return self.severity is Severity.ERROR

    def to_dict(self) -> dict[str, object]:
        return {
            "type": self.type.value,
            "severity": self.severity.value,
            "sheet": self.sheet.value,
            "row": self.row,
            "column": self.column,
            "message": self.message,
            "suggestion": self.suggestion,
            "affected_codes": list(self.affected_codes),
        }
