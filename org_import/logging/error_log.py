from __future__ import annotations

from collections import Counter
from collections.abc import Iterable
from datetime import UTC, datetime
from pathlib import Path

from org_import.models.error_record import ErrorRecord
from org_import.models.validation_error import ValidationError

"""JSON Lines error log for import findings.

One `errors-YYYYMMDD-HHMMSS.log` (UTC) per run under the configured logs
directory. Findings are buffered while the workbook is processed and appended
on flush; a run without findings leaves no file behind.
"""

__all__ = [
    "ErrorRecord",
    "ErrorLogBuffer",
]

LOGS_DIR = Path("./logs")
TIMESTAMP_FMT = "%Y%m%d-%H%M%S"


class ErrorLogBuffer:
    """Buffered writer of ErrorRecord lines.

    Single run, single thread. The file name is fixed on the first flush so
    that repeated flushes of one run land in the same file.
    """

    def __init__(self, logs_dir: Path | None = None) -> None:
        self._logs_dir = logs_dir if logs_dir is not None else LOGS_DIR
        self._pending: list[ErrorRecord] = []
        self._path: Path | None = None
        self._written: Counter[str] = Counter()

    @property
    def file_path(self) -> Path:
        if self._path is None:
            self._logs_dir.mkdir(parents=True, exist_ok=True)
            self._path = self._logs_dir / f"errors-{datetime.now(UTC).strftime(TIMESTAMP_FMT)}.log"
        return self._path

    def append(self, record: ErrorRecord) -> None:
        self._pending.append(record)

    def extend_from_findings(self, file: str, findings: Iterable[ValidationError]) -> None:
        self._pending.extend(ErrorRecord.from_validation_error(file, f) for f in findings)

    def __len__(self) -> int:
        return len(self._pending)

    @property
    def written_by_type(self) -> dict[str, int]:
        """error_type -> number of records flushed so far."""
        return dict(self._written)

    def flush(self) -> Path | None:
        """Append pending records; returns the log path or None if nothing was pending."""
        if not self._pending:
            return None
        path = self.file_path
        with path.open("a", encoding="utf-8") as f:
            f.writelines(r.to_json_line() + "\n" for r in self._pending)
        self._written.update(r.error_type for r in self._pending)
        self._pending.clear()
        return path
