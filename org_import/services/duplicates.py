from __future__ import annotations

import dataclasses
from collections import defaultdict
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from org_import.models.validation_error import SheetType
from org_import.services.validator import DEPARTMENT_RULES, POSITION_RULES

"""Duplicate resolver.

detect -> recommend -> resolve are separate steps:

- `detect_duplicates` groups rows by business key and scores every occurrence
- `recommend_strategy` is a pure heuristic over the scored occurrences
- `resolve` applies a strategy (recommended or chosen by the caller)
- `apply_resolutions` rewrites a row list with the outcome

Rows may be DepartmentRow / PositionRow dataclasses or plain mappings.
"""

__all__ = [
    "DuplicateDetectionResult",
    "DuplicateEntry",
    "DuplicateResolution",
    "DuplicateStrategy",
    "Occurrence",
    "apply_resolutions",
    "auto_resolve_all",
    "completeness",
    "detect_all",
    "detect_duplicates",
    "recommend_strategy",
    "resolve",
]

PROVENANCE_FIELDS = frozenset({"source_row"})


class DuplicateStrategy(Enum):
    KEEP_FIRST = "keep-first"
    KEEP_LAST = "keep-last"
    MERGE = "merge"
    KEEP_ALL = "keep-all"


AUTO_RESOLVABLE = frozenset({DuplicateStrategy.KEEP_FIRST, DuplicateStrategy.KEEP_LAST})


@dataclass(frozen=True)
class Occurrence:
    """One row of a duplicate group with its score.

    Attributes:
        row: The original row object
        source_row: Sheet row number of the occurrence
        completeness: Fraction (0.0-1.0) of non-empty fields
        is_complete: True when every required field is filled
        differences: Fields whose value differs from at least one other occurrence
    """
    row: Any
    source_row: int
    completeness: float
    is_complete: bool
    differences: tuple[str, ...] = ()


@dataclass(frozen=True)
class DuplicateEntry:
    key: str
    key_field: str
    occurrences: tuple[Occurrence, ...]  # completeness 降順, 同点は出現順
    recommended_strategy: DuplicateStrategy
    reason: str
    required_fields: tuple[str, ...] = ()
    sheet: SheetType | None = None


@dataclass(frozen=True)
class DuplicateResolution:
    key: str
    key_field: str
    strategy: DuplicateStrategy
    kept_rows: tuple[Any, ...]
    removed_rows: tuple[Any, ...]
    merged_row: Any | None = None
    sheet: SheetType | None = None

    @property
    def kept_source_rows(self) -> list[int]:
        return [_source_row(r) for r in self.kept_rows]

    @property
    def removed_source_rows(self) -> list[int]:
        return [_source_row(r) for r in self.removed_rows]


@dataclass(frozen=True)
class DuplicateDetectionResult:
    departments: list[DuplicateEntry] = field(default_factory=list)
    positions: list[DuplicateEntry] = field(default_factory=list)

    @property
    def entries(self) -> list[DuplicateEntry]:
        return [*self.departments, *self.positions]

    @property
    def has_duplicates(self) -> bool:
        return bool(self.departments or self.positions)

    @property
    def total_duplicates(self) -> int:
        return len(self.departments) + len(self.positions)

    @property
    def total_affected_rows(self) -> int:
        return sum(len(e.occurrences) for e in self.entries)

    @property
    def auto_resolvable(self) -> int:
        return sum(1 for e in self.entries if e.recommended_strategy in AUTO_RESOLVABLE)


def _fields(row: Any) -> dict[str, Any]:
    if isinstance(row, Mapping):
        items = dict(row)
    elif dataclasses.is_dataclass(row):
        items = {f.name: getattr(row, f.name) for f in dataclasses.fields(row)}
    else:
        raise TypeError(f"unsupported row type: {type(row).__name__}")
    return {k: v for k, v in items.items() if k not in PROVENANCE_FIELDS}


def _source_row(row: Any) -> int:
    value = row.get("source_row") if isinstance(row, Mapping) else getattr(row, "source_row", None)
    return int(value) if value is not None else -1


def _is_empty(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value.strip() == "")


def completeness(row: Any) -> float:
    """Fraction of non-empty fields, provenance fields excluded."""
    values = _fields(row)
    if not values:
        return 0.0
    filled = sum(1 for v in values.values() if not _is_empty(v))
    return filled / len(values)


def _differences(rows: Sequence[dict[str, Any]]) -> list[tuple[str, ...]]:
    out: list[tuple[str, ...]] = []
    for i, current in enumerate(rows):
        diffs: list[str] = []
        for j, other in enumerate(rows):
            if i == j:
                continue
            for name in current.keys() | other.keys():
                if current.get(name) != other.get(name) and name not in diffs:
                    diffs.append(name)
        out.append(tuple(sorted(diffs)))
    return out


def recommend_strategy(
    occurrences: Sequence[Occurrence],
    required_fields: Iterable[str],
    key_field: str | None = None,
) -> tuple[DuplicateStrategy, str]:
    """Pick a strategy for a duplicate group.

    Heuristic, the caller may always override:
    identical -> keep-first; only optional fields differ -> merge;
    exactly one occurrence has every required field -> keep-first;
    anything else -> keep-first, flagged for review.
    """
    differing: set[str] = set()
    for occ in occurrences:
        differing.update(occ.differences)
    if not differing:
        return DuplicateStrategy.KEEP_FIRST, "All entries are identical"

    protected = set(required_fields)
    if key_field:
        protected.add(key_field)
    if not differing & protected:
        return DuplicateStrategy.MERGE, "Entries differ only in optional fields"

    complete = [o for o in occurrences if o.is_complete]
    if len(complete) == 1:
        return DuplicateStrategy.KEEP_FIRST, "One entry is more complete than others"

    changed = ", ".join(sorted(differing & protected))
    return (
        DuplicateStrategy.KEEP_FIRST,
        f"Entries disagree on required fields ({changed}); review before importing",
    )


def detect_duplicates(
    rows: Sequence[Any],
    key_field: str,
    required_fields: Iterable[str],
    sheet: SheetType | None = None,
) -> list[DuplicateEntry]:
    """Group rows by business key and describe every key seen more than once.

    Keys are compared after trimming (case-sensitive). Rows with an empty key
    are left to the required-field check.
    """
    required = tuple(required_fields)
    groups: dict[str, list[Any]] = defaultdict(list)
    for row in rows:
        raw_key = _fields(row).get(key_field)
        key = "" if raw_key is None else str(raw_key).strip()
        if key:
            groups[key].append(row)

    entries: list[DuplicateEntry] = []
    for key, members in groups.items():
        if len(members) < 2:
            continue
        values = [_fields(r) for r in members]
        diffs = _differences(values)
        scored = [
            Occurrence(
                row=r,
                source_row=_source_row(r),
                completeness=completeness(r),
                is_complete=all(not _is_empty(v.get(name)) for name in required),
                differences=d,
            )
            for r, v, d in zip(members, values, diffs, strict=True)
        ]
        # sorted() is stable: ties keep source order
        ordered = tuple(sorted(scored, key=lambda o: o.completeness, reverse=True))
        strategy, reason = recommend_strategy(ordered, required, key_field)
        entries.append(
            DuplicateEntry(
                key=key,
                key_field=key_field,
                occurrences=ordered,
                recommended_strategy=strategy,
                reason=reason,
                required_fields=required,
                sheet=sheet,
            )
        )
    return entries


def detect_all(departments: Sequence[Any], positions: Sequence[Any]) -> DuplicateDetectionResult:
    return DuplicateDetectionResult(
        departments=detect_duplicates(
            departments,
            DEPARTMENT_RULES.key_field,
            DEPARTMENT_RULES.required_fields,
            SheetType.DEPARTMENTS,
        ),
        positions=detect_duplicates(
            positions,
            POSITION_RULES.key_field,
            POSITION_RULES.required_fields,
            SheetType.POSITIONS,
        ),
    )


def _merge(occurrences: Sequence[Occurrence]) -> Any:
    """Field-by-field merge: the first non-empty value in completeness order wins."""
    base = occurrences[0].row
    merged = _fields(base)
    for occ in occurrences[1:]:
        for name, value in _fields(occ.row).items():
            if _is_empty(merged.get(name)) and not _is_empty(value):
                merged[name] = value
    if isinstance(base, Mapping):
        out = dict(base)
        out.update(merged)
        return out
    return dataclasses.replace(base, **merged)


def resolve(entry: DuplicateEntry, strategy: DuplicateStrategy | str | None = None) -> DuplicateResolution:
    """Apply `strategy` (default: the recommended one) to a duplicate group."""
    chosen = DuplicateStrategy(strategy) if strategy is not None else entry.recommended_strategy
    occs = entry.occurrences
    merged_row = None

    if chosen is DuplicateStrategy.KEEP_FIRST:
        kept = (occs[0].row,)
        removed = tuple(o.row for o in occs[1:])
    elif chosen is DuplicateStrategy.KEEP_LAST:
        latest = max(occs, key=lambda o: o.source_row)
        kept = (latest.row,)
        removed = tuple(o.row for o in occs if o is not latest)
    elif chosen is DuplicateStrategy.MERGE:
        merged_row = _merge(occs)
        kept = (merged_row,)
        removed = tuple(o.row for o in occs[1:])
    else:
        kept = tuple(o.row for o in sorted(occs, key=lambda o: o.source_row))
        removed = ()

    return DuplicateResolution(
        key=entry.key,
        key_field=entry.key_field,
        strategy=chosen,
        kept_rows=kept,
        removed_rows=removed,
        merged_row=merged_row,
        sheet=entry.sheet,
    )


def auto_resolve_all(result: DuplicateDetectionResult) -> list[DuplicateResolution]:
    """Resolve every group with its recommended strategy, departments first."""
    return [resolve(entry) for entry in result.entries]


def apply_resolutions(
    rows: Sequence[Any], resolutions: Iterable[DuplicateResolution], key_field: str
) -> list[Any]:
    """Return `rows` with each resolved group replaced by its kept rows.

    Kept rows take the place of the group's first occurrence. Resolutions for
    another key field are ignored, so the combined output of
    `auto_resolve_all` can be passed for either sheet.
    """
    by_key = {r.key: r for r in resolutions if r.key_field == key_field}
    emitted: set[str] = set()
    out: list[Any] = []
    for row in rows:
        raw_key = _fields(row).get(key_field)
        key = "" if raw_key is None else str(raw_key).strip()
        resolution = by_key.get(key)
        if resolution is None:
            out.append(row)
            continue
        if key in emitted:
            continue
        emitted.add(key)
        out.extend(resolution.kept_rows)
    return out
