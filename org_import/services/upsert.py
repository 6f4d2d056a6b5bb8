from __future__ import annotations

from collections.abc import Collection, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from org_import.models.row_data import ExtractionResult
from org_import.services.duplicates import DuplicateDetectionResult
from org_import.services.validator import ValidationReport

"""Upsert detection and import preview.

A row whose business key already exists for the organization is an UPDATE,
every other row is a CREATE. The preview bundles these operations with the
validation report and duplicate findings so a caller can decide before
anything is persisted (--dry-run).
"""

__all__ = [
    "ImportPreview",
    "OperationType",
    "PlannedOperation",
    "build_preview",
    "detect_operations",
]


class OperationType(Enum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"


@dataclass(frozen=True)
class PlannedOperation:
    operation: OperationType
    code: str
    row: Any


def detect_operations(
    rows: Sequence[Any], key_field: str, existing_codes: Collection[str]
) -> list[PlannedOperation]:
    existing = set(existing_codes)
    out: list[PlannedOperation] = []
    for row in rows:
        code = getattr(row, key_field)
        op = OperationType.UPDATE if code in existing else OperationType.CREATE
        out.append(PlannedOperation(operation=op, code=code, row=row))
    return out


@dataclass(frozen=True)
class ImportPreview:
    departments: list[PlannedOperation] = field(default_factory=list)
    positions: list[PlannedOperation] = field(default_factory=list)
    report: ValidationReport | None = None
    duplicates: DuplicateDetectionResult | None = None

    @staticmethod
    def _count(ops: list[PlannedOperation], kind: OperationType) -> int:
        return sum(1 for op in ops if op.operation is kind)

    @property
    def departments_to_create(self) -> int:
        return self._count(self.departments, OperationType.CREATE)

    @property
    def departments_to_update(self) -> int:
        return self._count(self.departments, OperationType.UPDATE)

    @property
    def positions_to_create(self) -> int:
        return self._count(self.positions, OperationType.CREATE)

    @property
    def positions_to_update(self) -> int:
        return self._count(self.positions, OperationType.UPDATE)

    @property
    def can_import(self) -> bool:
        return self.report is None or self.report.is_valid

    def summary(self) -> dict[str, int]:
        return {
            "departments_create": self.departments_to_create,
            "departments_update": self.departments_to_update,
            "positions_create": self.positions_to_create,
            "positions_update": self.positions_to_update,
        }


def build_preview(
    extraction: ExtractionResult,
    existing_department_codes: Collection[str] = (),
    existing_position_codes: Collection[str] = (),
    report: ValidationReport | None = None,
    duplicates: DuplicateDetectionResult | None = None,
) -> ImportPreview:
    return ImportPreview(
        departments=detect_operations(extraction.departments, "dept_code", existing_department_codes),
        positions=detect_operations(extraction.positions, "pos_code", existing_position_codes),
        report=report,
        duplicates=duplicates,
    )
