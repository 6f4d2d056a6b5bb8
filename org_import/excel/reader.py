from __future__ import annotations

import io
import json
import re
import zipfile
from dataclasses import dataclass
from typing import Any

import pandas as pd
from openpyxl.utils.exceptions import InvalidFileException

from org_import.models.config_models import ImportConfig, default_config
from org_import.models.row_data import DepartmentRow, ExtractionResult, PositionRow
from org_import.models.validation_error import ErrorType, Severity, SheetType, ValidationError

"""Workbook extractor.

Reads an .xlsx payload (bytes) and turns the Departments / Positions sheets into
typed rows.

- 1行目をヘッダ行として扱い、2行目以降をデータ行 (source_row はシート上の行番号)
- Header names are normalized before matching (lower-case, whitespace -> "_",
  anything outside [a-z0-9_] dropped)
- Structural problems (unreadable payload, missing sheets/columns, empty or
  oversized sheets) raise ExtractionError subclasses
- Cell-level problems (bad JSON, non-boolean flags, non-integer counts) are
  recorded in ExtractionResult.issues and never raised
"""

__all__ = [
    "DEPARTMENT_SHEET",
    "POSITION_SHEET",
    "EmptySheetError",
    "ExtractionError",
    "FileTooLargeError",
    "MalformedFileError",
    "MissingColumnsError",
    "MissingSheetError",
    "SheetSpec",
    "SheetTooLargeError",
    "extract",
    "normalize_header",
    "read_raw_sheets",
]

MIN_PAYLOAD_BYTES = 100

_WHITESPACE_RE = re.compile(r"\s+")
_NON_IDENT_RE = re.compile(r"[^a-z0-9_]")
_INT_RE = re.compile(r"[+-]?\d+")

_TRUE_STRINGS = frozenset({"true", "1"})
_FALSE_STRINGS = frozenset({"false", "0"})


class ExtractionError(Exception):
    """Base class for structural workbook problems (abort before row-level work)."""


class MalformedFileError(ExtractionError):
    """Raised when the payload cannot be parsed as a workbook at all."""


class FileTooLargeError(ExtractionError):
    """Raised when the payload exceeds limits.max_file_bytes."""


class MissingSheetError(ExtractionError):
    """Raised when neither expected sheet is present."""

    def __init__(self, missing: list[str]) -> None:
        self.missing = missing
        super().__init__(f"missing sheets: {', '.join(missing)}")


class MissingColumnsError(ExtractionError):
    """Raised when a present sheet lacks required columns."""

    def __init__(self, sheet: str, missing: list[str]) -> None:
        self.sheet = sheet
        self.missing = missing
        super().__init__(f"sheet '{sheet}' missing columns: {missing}")


class EmptySheetError(ExtractionError):
    """Raised when a present sheet has a header but no data rows."""

    def __init__(self, sheet: str) -> None:
        self.sheet = sheet
        super().__init__(f"sheet '{sheet}' has no data")


class SheetTooLargeError(ExtractionError):
    def __init__(self, sheet: str, rows: int, limit: int) -> None:
        self.sheet = sheet
        self.rows = rows
        self.limit = limit
        super().__init__(f"sheet '{sheet}' has {rows} data rows (limit {limit})")


@dataclass(frozen=True)
class SheetSpec:
    """Column contract of one logical sheet.

    The template generator writes exactly `columns` as its header row, so the
    extractor and the template cannot drift apart.
    """
    sheet: SheetType
    required: tuple[str, ...]
    optional: tuple[str, ...]

    @property
    def columns(self) -> tuple[str, ...]:
        return self.required + self.optional


DEPARTMENT_SHEET = SheetSpec(
    sheet=SheetType.DEPARTMENTS,
    required=("dept_code", "name"),
    optional=("parent_dept_code", "metadata"),
)

POSITION_SHEET = SheetSpec(
    sheet=SheetType.POSITIONS,
    required=("pos_code", "title", "dept_code"),
    optional=("reports_to_pos_code", "is_manager", "is_active", "incumbents_count"),
)


def normalize_header(value: Any) -> str:
    """Normalize a header cell: "  Parent Dept Code " -> "parent_dept_code"."""
    if _is_blank(value):
        return ""
    text = _WHITESPACE_RE.sub("_", str(value).strip().lower())
    return _NON_IDENT_RE.sub("", text)


def _is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, float) and pd.isna(value):
        return True
    if isinstance(value, str) and value.strip() == "":
        return True
    return False


def read_raw_sheets(payload: bytes, config: ImportConfig | None = None) -> dict[str, pd.DataFrame]:
    """Parse the payload into raw DataFrames keyed by sheet name.

    Parameters
    ----------
    payload: workbook bytes
    config: limits for the size checks (default_config() when omitted)

    Cells are read without header and without pandas' default NA conversion,
    so strings such as "NA" or "null" survive as data.
    """
    cfg = config or default_config()
    if len(payload) > cfg.limits.max_file_bytes:
        raise FileTooLargeError(
            f"file is {len(payload)} bytes (limit {cfg.limits.max_file_bytes})"
        )
    if len(payload) < MIN_PAYLOAD_BYTES:
        raise MalformedFileError(f"payload too small to be a workbook ({len(payload)} bytes)")
    try:
        xls = pd.ExcelFile(io.BytesIO(payload), engine="openpyxl")
        return {
            str(name): xls.parse(name, header=None, keep_default_na=False, dtype=object)
            for name in xls.sheet_names
        }
    # 壊れた XML (ElementTree.ParseError / lxml XMLSyntaxError) は SyntaxError 系
    except (ValueError, KeyError, OSError, SyntaxError, zipfile.BadZipFile, InvalidFileException) as e:
        raise MalformedFileError(f"cannot read workbook: {e}") from e


def _locate(raw: dict[str, pd.DataFrame], aliases: tuple[str, ...]) -> pd.DataFrame | None:
    wanted = {a.strip().lower() for a in aliases}
    for name, df in raw.items():
        if name.strip().lower() in wanted:
            return df
    return None


class _RowCoercer:
    """Converts raw cells of one sheet, collecting cell-level issues."""

    def __init__(self, sheet: SheetType, sentinels: frozenset[str]) -> None:
        self.sheet = sheet
        self.sentinels = sentinels
        self.issues: list[ValidationError] = []

    def _issue(self, kind: ErrorType, row: int, column: str, message: str, suggestion: str) -> None:
        self.issues.append(
            ValidationError(
                type=kind,
                severity=Severity.ERROR,
                sheet=self.sheet,
                row=row,
                column=column,
                message=message,
                suggestion=suggestion,
            )
        )

    def text(self, value: Any) -> str | None:
        if _is_blank(value):
            return None
        if isinstance(value, bool):
            return str(value).lower()
        if isinstance(value, float) and value.is_integer():
            # 数値コード 101.0 -> "101"
            return str(int(value))
        return str(value).strip()

    def required_text(self, value: Any) -> str:
        return self.text(value) or ""

    def reference(self, value: Any) -> str | None:
        text = self.text(value)
        if text is None or text in self.sentinels:
            return None
        return text

    def boolean(self, value: Any, row: int, column: str) -> bool | None:
        if _is_blank(value):
            return None
        if isinstance(value, bool):
            return value
        if isinstance(value, (int, float)) and value in (0, 1):
            return bool(value)
        if isinstance(value, str):
            lowered = value.strip().lower()
            if lowered in _TRUE_STRINGS:
                return True
            if lowered in _FALSE_STRINGS:
                return False
        self._issue(
            ErrorType.INVALID_DATA_TYPE,
            row,
            column,
            f"'{value}' is not a boolean value",
            "Use TRUE/FALSE or 1/0",
        )
        return None

    def integer(self, value: Any, row: int, column: str) -> int | None:
        if _is_blank(value):
            return None
        if isinstance(value, bool):
            pass
        elif isinstance(value, int):
            return value
        elif isinstance(value, float) and value.is_integer():
            return int(value)
        elif isinstance(value, str) and _INT_RE.fullmatch(value.strip()):
            return int(value.strip())
        self._issue(
            ErrorType.INVALID_DATA_TYPE,
            row,
            column,
            f"'{value}' is not a whole number",
            "Enter a whole number such as 0, 1 or 12",
        )
        return None

    def json_object(self, value: Any, row: int, column: str) -> dict[str, Any] | None:
        if _is_blank(value):
            return None
        if isinstance(value, str):
            try:
                parsed = json.loads(value.strip())
            except json.JSONDecodeError as e:
                self._issue(
                    ErrorType.INVALID_JSON,
                    row,
                    column,
                    f"metadata is not valid JSON: {e.msg}",
                    'Provide a JSON object such as {"cost_center": "CC-100"} or leave the cell empty',
                )
                return None
            if isinstance(parsed, dict):
                return parsed
        self._issue(
            ErrorType.INVALID_JSON,
            row,
            column,
            "metadata must be a JSON object",
            'Provide a JSON object such as {"cost_center": "CC-100"} or leave the cell empty',
        )
        return None


def _records(df: pd.DataFrame, spec: SheetSpec, max_rows: int) -> list[tuple[int, dict[str, Any]]]:
    """Apply the header row and return (source_row, cells) for every non-blank data row."""
    sheet_name = spec.sheet.value
    if df.shape[0] == 0:
        raise MissingColumnsError(sheet_name, list(spec.required))

    columns = [normalize_header(c) for c in df.iloc[0].tolist()]
    missing = [c for c in spec.required if c not in columns]
    if missing:
        raise MissingColumnsError(sheet_name, missing)

    # 重複ヘッダは先勝ち
    positions: dict[str, int] = {}
    for i, name in enumerate(columns):
        if name in spec.columns and name not in positions:
            positions[name] = i

    out: list[tuple[int, dict[str, Any]]] = []
    for idx, raw in df.iloc[1:].iterrows():
        values = raw.tolist()
        if all(_is_blank(v) for v in values):
            continue
        cells = {name: values[i] for name, i in positions.items()}
        out.append((int(idx) + 1, cells))

    if not out:
        raise EmptySheetError(sheet_name)
    if len(out) > max_rows:
        raise SheetTooLargeError(sheet_name, len(out), max_rows)
    return out


def _extract_departments(
    df: pd.DataFrame, cfg: ImportConfig
) -> tuple[list[DepartmentRow], list[ValidationError]]:
    coerce = _RowCoercer(SheetType.DEPARTMENTS, cfg.parent_sentinels)
    rows: list[DepartmentRow] = []
    for source_row, cells in _records(df, DEPARTMENT_SHEET, cfg.limits.max_rows_per_sheet):
        rows.append(
            DepartmentRow(
                dept_code=coerce.required_text(cells.get("dept_code")),
                name=coerce.required_text(cells.get("name")),
                parent_dept_code=coerce.reference(cells.get("parent_dept_code")),
                metadata=coerce.json_object(cells.get("metadata"), source_row, "metadata"),
                source_row=source_row,
            )
        )
    return rows, coerce.issues


def _extract_positions(
    df: pd.DataFrame, cfg: ImportConfig
) -> tuple[list[PositionRow], list[ValidationError]]:
    coerce = _RowCoercer(SheetType.POSITIONS, cfg.parent_sentinels)
    rows: list[PositionRow] = []
    for source_row, cells in _records(df, POSITION_SHEET, cfg.limits.max_rows_per_sheet):
        rows.append(
            PositionRow(
                pos_code=coerce.required_text(cells.get("pos_code")),
                title=coerce.required_text(cells.get("title")),
                dept_code=coerce.required_text(cells.get("dept_code")),
                reports_to_pos_code=coerce.reference(cells.get("reports_to_pos_code")),
                is_manager=coerce.boolean(cells.get("is_manager"), source_row, "is_manager"),
                incumbents_count=coerce.integer(
                    cells.get("incumbents_count"), source_row, "incumbents_count"
                ),
                source_row=source_row,
                is_active=coerce.boolean(cells.get("is_active"), source_row, "is_active"),
            )
        )
    return rows, coerce.issues


def extract(payload: bytes, config: ImportConfig | None = None) -> ExtractionResult:
    """Extract typed department and position rows from a workbook payload.

    Args:
        payload: Raw .xlsx bytes
        config: Import configuration (sheet aliases, sentinels, limits)

    Returns:
        ExtractionResult with rows of both sheets and cell-level issues

    Raises:
        MalformedFileError: Payload is not a readable workbook
        FileTooLargeError: Payload exceeds the configured size limit
        MissingSheetError: Neither Departments nor Positions sheet exists
        MissingColumnsError: A present sheet lacks required columns
        EmptySheetError: A present sheet has a header but no data
        SheetTooLargeError: A sheet exceeds the configured row limit
    """
    cfg = config or default_config()
    raw = read_raw_sheets(payload, cfg)

    dept_df = _locate(raw, cfg.sheets.departments)
    pos_df = _locate(raw, cfg.sheets.positions)
    if dept_df is None and pos_df is None:
        raise MissingSheetError([SheetType.DEPARTMENTS.value, SheetType.POSITIONS.value])

    departments: list[DepartmentRow] = []
    positions: list[PositionRow] = []
    issues: list[ValidationError] = []
    if dept_df is not None:
        departments, dept_issues = _extract_departments(dept_df, cfg)
        issues.extend(dept_issues)
    if pos_df is not None:
        positions, pos_issues = _extract_positions(pos_df, cfg)
        issues.extend(pos_issues)
    return ExtractionResult(departments=departments, positions=positions, issues=issues)
