from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from datetime import UTC, datetime

from .validation_error import ValidationError

"""ErrorRecord model for the JSON Lines error log.

An ErrorRecord is the persisted form of a finding. It supports row=-1 as a
sentinel for file-level problems (malformed workbook, missing sheet, persistence
failure) where no specific row applies.
"""

__all__ = [
    "ErrorRecord",
    "FILE_LEVEL_SHEET",
]

FILE_LEVEL_SHEET = "<FILE_LEVEL>"


@dataclass(frozen=True)
class ErrorRecord:
    """Structured error record for JSON Lines logging.

    Attributes:
        timestamp: ISO8601 UTC timestamp with 'Z' suffix
        file: Workbook filename being imported
        sheet: Sheet name, or FILE_LEVEL_SHEET
        row: Row number (1-based). Use -1 for file-level errors where row is unknown
        column: Column name, empty when unknown
        error_type: Error classification in UPPER_SNAKE_CASE format
        severity: ERROR or WARNING
        message: Description of the problem
    """
    timestamp: str  # ISO8601 UTC
    file: str
    sheet: str
    row: int  # 行番号。不明な場合 -1 許容
    column: str
    error_type: str  # UPPER_SNAKE
    severity: str
    message: str

    @staticmethod
    def create(
        file: str,
        sheet: str,
        row: int,
        error_type: str,
        message: str,
        *,
        column: str = "",
        severity: str = "ERROR",
    ) -> ErrorRecord:
        """Create a new ErrorRecord with current UTC timestamp."""
        ts = datetime.now(UTC).isoformat().replace("+00:00", "Z")
        return ErrorRecord(
            timestamp=ts,
            file=file,
            sheet=sheet,
            row=row,
            column=column,
            error_type=error_type,
            severity=severity,
            message=message,
        )

    @staticmethod
    def from_validation_error(file: str, error: ValidationError) -> ErrorRecord:
        return ErrorRecord.create(
            file=file,
            sheet=error.sheet.value,
            row=error.row,
            error_type=error.type.value,
            message=error.message,
            column=error.column or "",
            severity=error.severity.value,
        )

    def to_json_line(self) -> str:
        """Serialize ErrorRecord to JSON Lines format (no extra keys)."""
        return json.dumps(asdict(self), ensure_ascii=False)
