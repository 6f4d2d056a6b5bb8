from __future__ import annotations

import io

import pandas as pd
from openpyxl.utils import get_column_letter

from .reader import DEPARTMENT_SHEET, POSITION_SHEET, SheetSpec

"""Import template generator.

Writes the canonical workbook: Departments and Positions sheets whose header
rows are exactly the extractor's column contract, plus an Instructions sheet.
"""

__all__ = [
    "INSTRUCTIONS_SHEET",
    "generate_template",
]

INSTRUCTIONS_SHEET = "Instructions"

_EXAMPLE_DEPARTMENTS = [
    {"dept_code": "HQ", "name": "Headquarters", "parent_dept_code": "", "metadata": ""},
    {
        "dept_code": "ENG",
        "name": "Engineering",
        "parent_dept_code": "HQ",
        "metadata": '{"cost_center": "CC-100"}',
    },
    {"dept_code": "SALES", "name": "Sales", "parent_dept_code": "HQ", "metadata": ""},
]

_EXAMPLE_POSITIONS = [
    {
        "pos_code": "CEO",
        "title": "Chief Executive Officer",
        "dept_code": "HQ",
        "reports_to_pos_code": "",
        "is_manager": "TRUE",
        "is_active": "TRUE",
        "incumbents_count": 1,
    },
    {
        "pos_code": "CTO",
        "title": "Chief Technology Officer",
        "dept_code": "ENG",
        "reports_to_pos_code": "CEO",
        "is_manager": "TRUE",
        "is_active": "TRUE",
        "incumbents_count": 1,
    },
    {
        "pos_code": "ENG-DEV",
        "title": "Software Engineer",
        "dept_code": "ENG",
        "reports_to_pos_code": "CTO",
        "is_manager": "FALSE",
        "is_active": "TRUE",
        "incumbents_count": 5,
    },
]


def _instructions() -> list[str]:
    lines = [
        "Fill the Departments and Positions sheets; keep the header row (row 1) unchanged.",
        "Each sheet may hold up to 10,000 data rows; the file may not exceed 10 MB.",
        "",
        "Departments",
    ]
    lines += _describe(DEPARTMENT_SHEET)
    lines += [
        "  parent_dept_code: leave empty or '-' for a top-level department.",
        '  metadata: a JSON object, e.g. {"cost_center": "CC-100"}.',
        "",
        "Positions",
    ]
    lines += _describe(POSITION_SHEET)
    lines += [
        "  dept_code: a department of this file or one that already exists.",
        "  reports_to_pos_code: leave empty for positions reporting to nobody.",
        "  is_manager / is_active: TRUE/FALSE or 1/0 (defaults: FALSE / TRUE).",
        "  incumbents_count: whole number (default 0).",
        "",
        "Rows whose code already exists are updated; new codes are created.",
        "Parents are created before their children automatically; circular references are rejected.",
    ]
    return lines


def _describe(spec: SheetSpec) -> list[str]:
    return [
        f"  required: {', '.join(spec.required)}",
        f"  optional: {', '.join(spec.optional)}",
    ]


def _write_sheet(writer: pd.ExcelWriter, spec: SheetSpec, rows: list[dict[str, object]]) -> None:
    df = pd.DataFrame(rows, columns=list(spec.columns))
    df.to_excel(writer, sheet_name=spec.sheet.value, index=False)
    ws = writer.sheets[spec.sheet.value]
    ws.freeze_panes = "A2"
    for idx, column_name in enumerate(spec.columns, start=1):
        ws.column_dimensions[get_column_letter(idx)].width = max(14, min(36, len(column_name) + 5))


def generate_template(include_examples: bool = True) -> bytes:
    """Build the import template workbook.

    Args:
        include_examples: Add a few example rows to both data sheets

    Returns:
        .xlsx bytes that extract() accepts unchanged
    """
    buffer = io.BytesIO()
    with pd.ExcelWriter(buffer, engine="openpyxl") as writer:
        _write_sheet(writer, DEPARTMENT_SHEET, _EXAMPLE_DEPARTMENTS if include_examples else [])
        _write_sheet(writer, POSITION_SHEET, _EXAMPLE_POSITIONS if include_examples else [])
        pd.DataFrame({"Instruction": _instructions()}).to_excel(
            writer, sheet_name=INSTRUCTIONS_SHEET, index=False
        )
        writer.sheets[INSTRUCTIONS_SHEET].column_dimensions["A"].width = 120
    return buffer.getvalue()
