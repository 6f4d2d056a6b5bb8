from __future__ import annotations

from collections import defaultdict
from collections.abc import Collection, Iterable, Mapping, Sequence
from dataclasses import dataclass, field, replace
from typing import Any

from org_import.models.config_models import DEFAULT_PARENT_SENTINELS
from org_import.models.row_data import ExtractionResult
from org_import.models.validation_error import ErrorType, Severity, SheetType, ValidationError

"""Structural validator.

Runs four passes over the rows of one sheet and concatenates their findings:

1. required fields (missing optional data -> WARNING)
2. intra-file duplicate business keys (one finding per occurrence)
3. reference integrity against batch keys + externally known keys
4. cycle detection over the parent links, plus the hierarchy-shape check for
   departments (several roots -> WARNING, no root -> ERROR)

Every pass is a pure function over its input. Findings are returned, never
raised, so one run reports every problem of the batch.
"""

__all__ = [
    "DEPARTMENT_RULES",
    "POSITION_RULES",
    "ReferenceRule",
    "ValidationReport",
    "ValidationRules",
    "check_hierarchy_shape",
    "check_duplicate_keys",
    "check_references",
    "check_required_fields",
    "detect_cycles",
    "find_cycles",
    "validate",
    "validate_departments",
    "validate_extraction",
    "validate_positions",
]

ARROW = " → "


@dataclass(frozen=True)
class ReferenceRule:
    """A column that must resolve to a business key of `target`."""
    field: str
    target: SheetType


@dataclass(frozen=True)
class ValidationRules:
    """Validation contract of one entity.

    `parent_field` is the self-referencing column whose links are checked for
    cycles. It should also be listed in `references`.
    """
    sheet: SheetType
    key_field: str
    required_fields: tuple[str, ...]
    parent_field: str | None = None
    references: tuple[ReferenceRule, ...] = ()
    optional_warnings: tuple[str, ...] = ()
    check_shape: bool = False
    sentinels: frozenset[str] = frozenset(DEFAULT_PARENT_SENTINELS)


DEPARTMENT_RULES = ValidationRules(
    sheet=SheetType.DEPARTMENTS,
    key_field="dept_code",
    required_fields=("dept_code", "name"),
    parent_field="parent_dept_code",
    references=(ReferenceRule("parent_dept_code", SheetType.DEPARTMENTS),),
    check_shape=True,
)

POSITION_RULES = ValidationRules(
    sheet=SheetType.POSITIONS,
    key_field="pos_code",
    required_fields=("pos_code", "title", "dept_code"),
    parent_field="reports_to_pos_code",
    references=(
        ReferenceRule("dept_code", SheetType.DEPARTMENTS),
        ReferenceRule("reports_to_pos_code", SheetType.POSITIONS),
    ),
    optional_warnings=("incumbents_count",),
)


@dataclass(frozen=True)
class ValidationReport:
    """All findings of one workbook, extractor issues included."""
    findings: list[ValidationError] = field(default_factory=list)

    @property
    def errors(self) -> list[ValidationError]:
        return [f for f in self.findings if f.severity is Severity.ERROR]

    @property
    def warnings(self) -> list[ValidationError]:
        return [f for f in self.findings if f.severity is Severity.WARNING]

    @property
    def is_valid(self) -> bool:
        return not self.errors

    def for_sheet(self, sheet: SheetType) -> list[ValidationError]:
        return [f for f in self.findings if f.sheet is sheet]

    def error_rows(self, sheet: SheetType) -> set[int]:
        return {f.row for f in self.errors if f.sheet is sheet}


def _get(row: Any, name: str) -> Any:
    if isinstance(row, Mapping):
        return row.get(name)
    return getattr(row, name, None)


def _source_row(row: Any, index: int) -> int:
    value = _get(row, "source_row")
    # source_row を持たない行はヘッダ直下から数える
    return int(value) if value is not None else index + 2


def _text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _is_missing(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value.strip() == "")


def _parent_of(row: Any, rules: ValidationRules) -> str | None:
    if rules.parent_field is None:
        return None
    parent = _text(_get(row, rules.parent_field))
    if parent in rules.sentinels:
        return None
    return parent


def _finding(
    rules: ValidationRules,
    kind: ErrorType,
    severity: Severity,
    row: int,
    column: str | None,
    message: str,
    suggestion: str,
    affected: Iterable[str] = (),
) -> ValidationError:
    return ValidationError(
        type=kind,
        severity=severity,
        sheet=rules.sheet,
        row=row,
        column=column,
        message=message,
        suggestion=suggestion,
        affected_codes=tuple(affected),
    )


def check_required_fields(rows: Sequence[Any], rules: ValidationRules) -> list[ValidationError]:
    out: list[ValidationError] = []
    for i, row in enumerate(rows):
        src = _source_row(row, i)
        key = _text(_get(row, rules.key_field))
        for name in rules.required_fields:
            if _is_missing(_get(row, name)):
                out.append(
                    _finding(
                        rules,
                        ErrorType.MISSING_REQUIRED_FIELD,
                        Severity.ERROR,
                        src,
                        name,
                        f"required field '{name}' is empty",
                        f"Enter a value for '{name}' in row {src}",
                        [key] if key else [],
                    )
                )
        for name in rules.optional_warnings:
            if _is_missing(_get(row, name)):
                out.append(
                    _finding(
                        rules,
                        ErrorType.MISSING_OPTIONAL_FIELD,
                        Severity.WARNING,
                        src,
                        name,
                        f"optional field '{name}' is empty, a default will be used",
                        f"Fill '{name}' if the default is not intended",
                        [key] if key else [],
                    )
                )
    return out


def check_duplicate_keys(rows: Sequence[Any], rules: ValidationRules) -> list[ValidationError]:
    groups: dict[str, list[int]] = defaultdict(list)
    for i, row in enumerate(rows):
        key = _text(_get(row, rules.key_field))
        if key:
            groups[key].append(_source_row(row, i))

    out: list[ValidationError] = []
    for key, source_rows in groups.items():
        if len(source_rows) < 2:
            continue
        listed = ", ".join(str(r) for r in source_rows)
        for src in source_rows:
            out.append(
                _finding(
                    rules,
                    ErrorType.DUPLICATE_CODE_IN_FILE,
                    Severity.ERROR,
                    src,
                    rules.key_field,
                    f"{rules.key_field} '{key}' appears {len(source_rows)} times (rows {listed})",
                    "Keep one row per code or resolve the duplicates before importing",
                    [key],
                )
            )
    return out


def check_references(
    rows: Sequence[Any],
    rules: ValidationRules,
    known_codes: Mapping[SheetType, Collection[str]] | None = None,
) -> list[ValidationError]:
    """Check every non-sentinel reference against batch keys and known keys.

    Parameters
    ----------
    rows: rows of the sheet described by `rules`
    rules: entity rules
    known_codes: keys known to exist outside this sheet's batch, per target
        sheet (existing persisted codes, or the departments of the same file
        when validating positions)
    """
    known = known_codes or {}
    batch_keys = {_text(_get(r, rules.key_field)) for r in rows} - {""}
    out: list[ValidationError] = []
    for rule in rules.references:
        valid = set(known.get(rule.target, ()))
        if rule.target is rules.sheet:
            valid |= batch_keys
        for i, row in enumerate(rows):
            value = _text(_get(row, rule.field))
            # 空欄 (必須列なら required pass で報告済み)
            if not value or value in valid:
                continue
            if rule.field == rules.parent_field and value in rules.sentinels:
                continue
            src = _source_row(row, i)
            key = _text(_get(row, rules.key_field))
            out.append(
                _finding(
                    rules,
                    ErrorType.INVALID_REFERENCE,
                    Severity.ERROR,
                    src,
                    rule.field,
                    f"{rule.field} '{value}' does not match any {rule.target.value} code",
                    f"Use an existing {rule.target.value} code, add it to the file, "
                    "or leave the cell empty",
                    [c for c in (key, value) if c],
                )
            )
    return out


def find_cycles(adjacency: Mapping[str, str]) -> list[list[str]]:
    """Return every distinct cycle of a child -> parent map, in traversal order.

    Iterative DFS: `visited` is global, `recursion_stack` holds the current
    walk. Reaching a node that is still on the walk closes a cycle, which is
    the sub-path from that node to the current one. Cycles are deduplicated by
    their sorted node set.
    """
    visited: set[str] = set()
    reported: set[tuple[str, ...]] = set()
    cycles: list[list[str]] = []

    for start in adjacency:
        if start in visited:
            continue
        path: list[str] = []
        recursion_stack: dict[str, int] = {}
        node: str | None = start
        while node is not None and node not in visited:
            visited.add(node)
            recursion_stack[node] = len(path)
            path.append(node)
            nxt = adjacency.get(node)
            if nxt is not None and nxt in recursion_stack:
                cycle = path[recursion_stack[nxt]:]
                identity = tuple(sorted(cycle))
                if identity not in reported:
                    reported.add(identity)
                    cycles.append(cycle)
                break
            node = nxt
    return cycles


def detect_cycles(rows: Sequence[Any], rules: ValidationRules) -> list[ValidationError]:
    if rules.parent_field is None:
        return []

    # adjacency map (code -> parent) と行番号は一度だけ構築
    adjacency: dict[str, str] = {}
    rows_by_code: dict[str, int] = {}
    for i, row in enumerate(rows):
        key = _text(_get(row, rules.key_field))
        if not key or key in rows_by_code:
            continue
        rows_by_code[key] = _source_row(row, i)
        parent = _parent_of(row, rules)
        if parent:
            adjacency[key] = parent

    out: list[ValidationError] = []
    for cycle in find_cycles(adjacency):
        loop = ARROW.join([*cycle, cycle[0]])
        for code in cycle:
            out.append(
                _finding(
                    rules,
                    ErrorType.CIRCULAR_REFERENCE,
                    Severity.ERROR,
                    rows_by_code[code],
                    rules.parent_field,
                    f"circular reference: {loop}",
                    f"Change {rules.parent_field} of one of {', '.join(cycle)} to break the loop",
                    cycle,
                )
            )
    return out


def check_hierarchy_shape(rows: Sequence[Any], rules: ValidationRules) -> list[ValidationError]:
    """Several roots -> one WARNING; no root at all -> one ERROR."""
    roots: list[tuple[str, int]] = []
    seen: set[str] = set()
    first_row: int | None = None
    for i, row in enumerate(rows):
        key = _text(_get(row, rules.key_field))
        if not key or key in seen:
            continue
        seen.add(key)
        src = _source_row(row, i)
        if first_row is None:
            first_row = src
        if _parent_of(row, rules) is None:
            roots.append((key, src))

    if first_row is None:
        return []
    if not roots:
        return [
            _finding(
                rules,
                ErrorType.BUSINESS_RULE,
                Severity.ERROR,
                first_row,
                rules.parent_field,
                "no root found: every row has a parent",
                f"Leave {rules.parent_field} empty for the top-level row",
                sorted(seen),
            )
        ]
    if len(roots) > 1:
        codes = [code for code, _ in roots]
        return [
            _finding(
                rules,
                ErrorType.BUSINESS_RULE,
                Severity.WARNING,
                roots[0][1],
                rules.parent_field,
                f"{len(roots)} top-level rows found: {', '.join(codes)}",
                "Check that several separate trees are intended",
                codes,
            )
        ]
    return []


def validate(
    rows: Sequence[Any],
    rules: ValidationRules,
    known_codes: Mapping[SheetType, Collection[str]] | None = None,
) -> list[ValidationError]:
    """Run all passes in order and return their concatenated findings."""
    findings = check_required_fields(rows, rules)
    findings += check_duplicate_keys(rows, rules)
    findings += check_references(rows, rules, known_codes)
    findings += detect_cycles(rows, rules)
    if rules.check_shape:
        findings += check_hierarchy_shape(rows, rules)
    return findings


def validate_departments(
    rows: Sequence[Any],
    existing_codes: Collection[str] = (),
    sentinels: Collection[str] | None = None,
) -> list[ValidationError]:
    rules = DEPARTMENT_RULES
    if sentinels is not None:
        rules = replace(rules, sentinels=frozenset(sentinels))
    return validate(rows, rules, {SheetType.DEPARTMENTS: existing_codes})


def validate_positions(
    rows: Sequence[Any],
    known_dept_codes: Collection[str],
    existing_codes: Collection[str] = (),
    sentinels: Collection[str] | None = None,
) -> list[ValidationError]:
    rules = POSITION_RULES
    if sentinels is not None:
        rules = replace(rules, sentinels=frozenset(sentinels))
    return validate(
        rows,
        rules,
        {SheetType.DEPARTMENTS: known_dept_codes, SheetType.POSITIONS: existing_codes},
    )


def validate_extraction(
    extraction: ExtractionResult,
    existing_department_codes: Collection[str] = (),
    existing_position_codes: Collection[str] = (),
    sentinels: Collection[str] | None = None,
) -> ValidationReport:
    """Validate both sheets of a workbook.

    Positions may reference departments of the same file as well as existing
    ones. Extractor issues come first in the report.
    """
    findings = list(extraction.issues)
    findings += validate_departments(extraction.departments, existing_department_codes, sentinels)
    batch_depts = {r.dept_code for r in extraction.departments if r.dept_code}
    findings += validate_positions(
        extraction.positions,
        batch_depts | set(existing_department_codes),
        existing_position_codes,
        sentinels,
    )
    return ValidationReport(findings=findings)
