from __future__ import annotations

from collections.abc import Iterable

from ..models.processing_result import ImportResult
from ..models.validation_error import ValidationError

"""Summary line rendering.

Format:
SUMMARY file={name} status={status} departments={created}/{updated}
positions={created}/{updated} errors={n} warnings={n} elapsed_sec={elapsed}
throughput_rps={throughput}

(one line; wrapped here for readability)
"""

__all__ = [
    "format_number",
    "render_finding",
    "render_summary_line",
    "render_validation_report",
]


def format_number(value: float) -> str:
    """Render a metric without scientific notation or a trailing '.0'."""
    if value == 0:
        return "0"
    if value == int(value):
        return str(int(value))
    if value < 0.01:
        # Format very small numbers to avoid scientific notation
        return f"{value:.6f}".rstrip("0").rstrip(".")
    return f"{value:.3f}".rstrip("0").rstrip(".")


def render_summary_line(result: ImportResult) -> str:
    """Render the SUMMARY line of an import run.

    Examples:
        >>> from datetime import datetime, timezone
        >>> from org_import.models.processing_result import ImportStatus
        >>> start = datetime(2025, 1, 1, 10, 0, 0, tzinfo=timezone.utc)
        >>> end = datetime(2025, 1, 1, 10, 0, 2, tzinfo=timezone.utc)
        >>> result = ImportResult(
        ...     status=ImportStatus.SUCCESS, file_name="org.xlsx", start_time=start,
        ...     end_time=end, elapsed_seconds=2.0, departments_created=3,
        ...     positions_created=5,
        ... )
        >>> render_summary_line(result)
        'SUMMARY file=org.xlsx status=success departments=3/0 positions=5/0 errors=0 warnings=0 elapsed_sec=2 throughput_rps=4'
    """
    return (
        f"SUMMARY file={result.file_name} "
        f"status={result.status.value} "
        f"departments={result.departments_created}/{result.departments_updated} "
        f"positions={result.positions_created}/{result.positions_updated} "
        f"errors={len(result.errors)} "
        f"warnings={len(result.warnings)} "
        f"elapsed_sec={format_number(result.elapsed_seconds)} "
        f"throughput_rps={format_number(result.throughput_rows_per_sec)}"
    )


def render_finding(finding: ValidationError) -> str:
    column = f" [{finding.column}]" if finding.column else ""
    return (
        f"{finding.severity.value} {finding.sheet.value} row {finding.row}{column}: "
        f"{finding.message} -> {finding.suggestion}"
    )


def render_validation_report(findings: Iterable[ValidationError]) -> list[str]:
    """One line per finding, grouped by sheet then row."""
    ordered = sorted(findings, key=lambda f: (f.sheet.value, f.row))
    return [render_finding(f) for f in ordered]
