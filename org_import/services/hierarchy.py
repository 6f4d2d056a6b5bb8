from __future__ import annotations

import dataclasses
from collections import defaultdict
from collections.abc import Collection, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from org_import.models.config_models import DEFAULT_PARENT_SENTINELS
from org_import.models.hierarchy import (
    HierarchyNode,
    HierarchyStats,
    MoveValidationResult,
    PendingMove,
    TreeNode,
)
from org_import.models.validation_error import ErrorType, Severity, SheetType, ValidationError

"""Hierarchy processor.

- build_tree / enrich: full re-derivation of level, child counts and
  root / leaf flags after every structural change
- validate_move / validate_pending_moves / apply_moves: staged re-parenting
- plan_waves: dependency-ordered creation waves for import (parents before
  children), bounded by a pass limit
"""

__all__ = [
    "DEFAULT_MAX_DEPTH",
    "DEFAULT_MAX_PASSES",
    "HierarchyCycleError",
    "InvalidMoveError",
    "PendingMovesValidation",
    "SortedPosition",
    "WavePlan",
    "apply_moves",
    "build_tree",
    "calculate_hierarchy_stats",
    "enrich",
    "filter_by_active_status",
    "find_path_to_root",
    "plan_waves",
    "search_nodes",
    "sort_positions_by_hierarchy",
    "validate_move",
    "validate_pending_moves",
]

DEFAULT_MAX_DEPTH = 10
DEFAULT_MAX_PASSES = 10
DEEP_HIERARCHY_MARGIN = 2
LARGE_SUBTREE_THRESHOLD = 20


class HierarchyCycleError(ValueError):
    """Raised by enrich() when parent links form a loop."""

    def __init__(self, node_ids: Sequence[str]) -> None:
        self.node_ids = list(node_ids)
        super().__init__(f"hierarchy contains a cycle: {' → '.join(self.node_ids)}")


class InvalidMoveError(ValueError):
    """Raised by apply_moves() when the staged batch does not validate."""

    def __init__(self, validation: PendingMovesValidation) -> None:
        self.validation = validation
        details = "; ".join(
            f"{move.node_id}: {', '.join(result.errors)}" for move, result in validation.invalid_moves
        )
        super().__init__(f"invalid pending moves: {details}")


# ---------------------------------------------------------------------------
# Tree building / enrichment
# ---------------------------------------------------------------------------

def build_tree(nodes: Iterable[HierarchyNode]) -> list[TreeNode]:
    """Build a forest from a flat node list.

    Nodes whose parent is not in the list (orphans) become roots.
    """
    node_list = list(nodes)
    wrappers = {n.id: TreeNode(node=n) for n in node_list}
    roots: list[TreeNode] = []
    for n in node_list:
        wrapper = wrappers[n.id]
        parent = wrappers.get(n.parent_id) if n.parent_id else None
        if parent is None:
            roots.append(wrapper)
        else:
            parent.children.append(wrapper)
            wrapper.parent = parent
    return roots


def _flatten(forest: Iterable[TreeNode]) -> list[HierarchyNode]:
    out: list[HierarchyNode] = []
    stack = list(reversed(list(forest)))
    while stack:
        current = stack.pop()
        out.append(current.node)
        stack.extend(reversed(current.children))
    return out


def _as_nodes(nodes: Iterable[HierarchyNode] | Iterable[TreeNode]) -> list[HierarchyNode]:
    items = list(nodes)
    if items and isinstance(items[0], TreeNode):
        return _flatten(items)
    return items


def enrich(nodes: Iterable[HierarchyNode] | Iterable[TreeNode]) -> list[HierarchyNode]:
    """Return copies of `nodes` with the derived fields recomputed.

    Accepts a flat list or a forest from build_tree(). Levels are found by
    walking up to a root, memoizing every node on the walk.

    Raises:
        HierarchyCycleError: when parent links loop
    """
    flat = _as_nodes(nodes)
    by_id = {n.id: n for n in flat}

    def parent_of(node_id: str) -> str | None:
        parent = by_id[node_id].parent_id
        return parent if parent in by_id else None

    level: dict[str, int] = {}
    for n in flat:
        path: list[str] = []
        on_path: set[str] = set()
        current: str | None = n.id
        while current is not None and current not in level:
            if current in on_path:
                raise HierarchyCycleError(path[path.index(current):] + [current])
            on_path.add(current)
            path.append(current)
            current = parent_of(current)
        base = -1 if current is None else level[current]
        for offset, node_id in enumerate(reversed(path), start=1):
            level[node_id] = base + offset

    children: dict[str, int] = defaultdict(int)
    descendants: dict[str, int] = defaultdict(int)
    # 深い順に子孫数を親へ積み上げる
    for node_id in sorted(by_id, key=lambda i: level[i], reverse=True):
        parent = parent_of(node_id)
        if parent is not None:
            children[parent] += 1
            descendants[parent] += 1 + descendants[node_id]

    return [
        dataclasses.replace(
            n,
            level=level[n.id],
            child_count=children[n.id],
            total_descendants=descendants[n.id],
            is_root=parent_of(n.id) is None,
            is_leaf=children[n.id] == 0,
        )
        for n in flat
    ]


def calculate_hierarchy_stats(nodes: Iterable[HierarchyNode]) -> HierarchyStats:
    """Summary numbers for a hierarchy. max_depth counts levels (a lone root -> 1)."""
    enriched = enrich(nodes)
    if not enriched:
        return HierarchyStats(0, 0, 0, 0, 0.0)
    total_children = sum(n.child_count for n in enriched)
    return HierarchyStats(
        total_nodes=len(enriched),
        max_depth=max(n.level for n in enriched) + 1,
        root_count=sum(1 for n in enriched if n.is_root),
        leaf_count=sum(1 for n in enriched if n.is_leaf),
        average_children_per_node=total_children / len(enriched),
    )


def find_path_to_root(node_id: str, nodes: Iterable[HierarchyNode]) -> list[str]:
    """Ids from the root down to `node_id` (empty when the node is unknown)."""
    by_id = {n.id: n for n in nodes}
    path: list[str] = []
    seen: set[str] = set()
    current = by_id.get(node_id)
    while current is not None and current.id not in seen:
        seen.add(current.id)
        path.append(current.id)
        current = by_id.get(current.parent_id) if current.parent_id else None
    path.reverse()
    return path


def search_nodes(nodes: Iterable[HierarchyNode], query: str) -> list[HierarchyNode]:
    """Case-insensitive substring match on name or code."""
    needle = query.strip().lower()
    node_list = list(nodes)
    if not needle:
        return node_list
    return [n for n in node_list if needle in n.name.lower() or needle in n.code.lower()]


def filter_by_active_status(nodes: Iterable[HierarchyNode], show_inactive: bool) -> list[HierarchyNode]:
    node_list = list(nodes)
    return node_list if show_inactive else [n for n in node_list if n.is_active]


@dataclass(frozen=True)
class SortedPosition:
    row: Any
    depth: int
    path: tuple[str, ...]


def sort_positions_by_hierarchy(
    rows: Sequence[Any],
    key_field: str = "pos_code",
    parent_field: str = "reports_to_pos_code",
) -> list[SortedPosition]:
    """Depth-first ordering along reporting lines, siblings sorted by code.

    Rows reporting to a code outside `rows` are treated as top level. Rows
    that can't be reached from a top-level row (reporting loops) are appended
    at depth 0 in their original order.
    """
    keys = {_value(r, key_field) for r in rows}
    by_parent: dict[str | None, list[Any]] = defaultdict(list)
    for r in rows:
        parent = _value(r, parent_field) or None
        by_parent[parent if parent in keys else None].append(r)
    for siblings in by_parent.values():
        siblings.sort(key=lambda r: _value(r, key_field))

    out: list[SortedPosition] = []
    placed: set[int] = set()
    stack: list[tuple[Any, int, tuple[str, ...]]] = [
        (r, 0, (_value(r, key_field),)) for r in reversed(by_parent[None])
    ]
    while stack:
        row, depth, path = stack.pop()
        if id(row) in placed:
            continue
        placed.add(id(row))
        out.append(SortedPosition(row=row, depth=depth, path=path))
        code = _value(row, key_field)
        for child in reversed(by_parent.get(code, [])):
            stack.append((child, depth + 1, path + (_value(child, key_field),)))

    for r in rows:
        if id(r) not in placed:
            out.append(SortedPosition(row=r, depth=0, path=(_value(r, key_field),)))
    return out


# ---------------------------------------------------------------------------
# Move validation
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PendingMovesValidation:
    is_valid: bool
    invalid_moves: list[tuple[PendingMove, MoveValidationResult]] = field(default_factory=list)
    noop_moves: list[PendingMove] = field(default_factory=list)


def _effective_parents(
    nodes: Mapping[str, HierarchyNode], staged: Mapping[str, str | None]
) -> dict[str, str | None]:
    parents: dict[str, str | None] = {nid: n.parent_id for nid, n in nodes.items()}
    parents.update(staged)
    return parents


def _depth(node_id: str, parents: Mapping[str, str | None]) -> int | None:
    """Edges from `node_id` up to its root, None when the walk loops."""
    depth = 0
    seen: set[str] = set()
    current: str | None = node_id
    while current is not None:
        if current in seen:
            return None
        seen.add(current)
        parent = parents.get(current)
        if parent is None or parent not in parents:
            break
        current = parent
        depth += 1
    return depth


def _subtree_stats(node_id: str, parents: Mapping[str, str | None]) -> tuple[int, int]:
    """(height below node_id, descendant count) under the given parent links."""
    children: dict[str, list[str]] = defaultdict(list)
    for child, parent in parents.items():
        if parent is not None:
            children[parent].append(child)
    height = 0
    count = 0
    seen = {node_id}
    stack = [(node_id, 0)]
    while stack:
        current, depth = stack.pop()
        height = max(height, depth)
        for child in children.get(current, []):
            if child in seen:
                continue
            seen.add(child)
            count += 1
            stack.append((child, depth + 1))
    return height, count


def validate_move(
    node_id: str,
    new_parent_id: str | None,
    all_nodes: Iterable[HierarchyNode],
    pending_moves: Iterable[PendingMove] = (),
    max_depth: int = DEFAULT_MAX_DEPTH,
) -> MoveValidationResult:
    """Validate re-parenting `node_id` under `new_parent_id` (None = make root).

    Other staged moves are taken into account: the ancestry walk follows
    pending links first and committed links otherwise. A move to the node's
    current parent is a no-op (is_valid=False, is_noop=True, no errors).
    """
    nodes = {n.id: n for n in all_nodes}
    errors: list[str] = []
    warnings: list[str] = []

    node = nodes.get(node_id)
    if node is None:
        return MoveValidationResult(False, [f"node '{node_id}' not found"], warnings)

    # 検証対象の移動自身は pending から除外
    staged: dict[str, str | None] = {}
    for move in pending_moves:
        if move.node_id == node_id:
            if move.new_parent_id != new_parent_id:
                errors.append(
                    f"conflicts with another staged move of '{node_id}' "
                    f"to '{move.new_parent_id or 'root'}'"
                )
            continue
        staged[move.node_id] = move.new_parent_id
    if errors:
        return MoveValidationResult(False, errors, warnings)

    if node.parent_id == new_parent_id:
        warnings.append(f"'{node_id}' is already under '{new_parent_id or 'root'}'")
        return MoveValidationResult(False, errors, warnings, is_noop=True)

    if new_parent_id == node_id:
        return MoveValidationResult(False, [f"cannot move '{node_id}' under itself"], warnings)

    if new_parent_id is not None:
        target = nodes.get(new_parent_id)
        if target is None:
            return MoveValidationResult(False, [f"target parent '{new_parent_id}' not found"], warnings)
        if not target.is_active:
            warnings.append(f"moving under inactive node '{new_parent_id}'")

    parents = _effective_parents(nodes, staged)

    # 新しい親から上へ辿り、移動対象に到達したら循環
    seen: set[str] = set()
    current = new_parent_id
    while current is not None and current not in seen:
        if current == node_id:
            return MoveValidationResult(
                False,
                [f"moving '{node_id}' under '{new_parent_id}' would create a circular reference"],
                warnings,
            )
        seen.add(current)
        current = parents.get(current)

    parents[node_id] = new_parent_id
    parent_depth = _depth(new_parent_id, parents) if new_parent_id is not None else -1
    if parent_depth is None:
        return MoveValidationResult(
            False, [f"staged moves above '{new_parent_id}' form a loop"], warnings
        )
    height, descendant_count = _subtree_stats(node_id, parents)
    total_depth = parent_depth + 1 + height
    if total_depth > max_depth:
        errors.append(
            f"this move would create a hierarchy depth of {total_depth}, "
            f"exceeding the maximum of {max_depth}"
        )
        return MoveValidationResult(False, errors, warnings)
    if total_depth >= max_depth - DEEP_HIERARCHY_MARGIN:
        warnings.append(f"this move creates a deep hierarchy (depth: {total_depth})")
    if descendant_count > LARGE_SUBTREE_THRESHOLD:
        warnings.append(
            f"'{node_id}' has {descendant_count} descendants; the whole subtree moves with it"
        )
    return MoveValidationResult(True, errors, warnings)


def validate_pending_moves(
    pending_moves: Sequence[PendingMove],
    all_nodes: Iterable[HierarchyNode],
    max_depth: int = DEFAULT_MAX_DEPTH,
) -> PendingMovesValidation:
    """Validate every staged move against all the others."""
    node_list = list(all_nodes)
    invalid: list[tuple[PendingMove, MoveValidationResult]] = []
    noops: list[PendingMove] = []
    for move in pending_moves:
        result = validate_move(move.node_id, move.new_parent_id, node_list, pending_moves, max_depth)
        if result.is_noop:
            noops.append(move)
        elif not result.is_valid:
            invalid.append((move, result))
    return PendingMovesValidation(is_valid=not invalid, invalid_moves=invalid, noop_moves=noops)


def apply_moves(
    nodes: Iterable[HierarchyNode],
    pending_moves: Sequence[PendingMove],
    max_depth: int = DEFAULT_MAX_DEPTH,
) -> list[HierarchyNode]:
    """Commit staged moves and re-derive the hierarchy.

    Raises:
        InvalidMoveError: when any staged move fails joint validation
    """
    node_list = list(nodes)
    validation = validate_pending_moves(pending_moves, node_list, max_depth)
    if not validation.is_valid:
        raise InvalidMoveError(validation)
    targets = {m.node_id: m.new_parent_id for m in pending_moves}
    moved = [
        dataclasses.replace(n, parent_id=targets[n.id]) if n.id in targets else n
        for n in node_list
    ]
    return enrich(moved)


# ---------------------------------------------------------------------------
# Dependency waves
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class WavePlan:
    """Rows grouped into creation waves.

    waves[0] holds rows without a parent or whose parent already exists;
    waves[k] holds rows whose parent is placed in an earlier wave.
    """
    waves: list[list[Any]] = field(default_factory=list)
    unresolved: list[ValidationError] = field(default_factory=list)

    @property
    def is_complete(self) -> bool:
        return not self.unresolved

    @property
    def planned_rows(self) -> int:
        return sum(len(w) for w in self.waves)


def _value(row: Any, name: str) -> str:
    raw = row.get(name) if isinstance(row, Mapping) else getattr(row, name, None)
    return "" if raw is None else str(raw).strip()


def plan_waves(
    rows: Sequence[Any],
    key_field: str,
    parent_field: str,
    existing_codes: Collection[str] = (),
    max_passes: int = DEFAULT_MAX_PASSES,
    sentinels: Collection[str] = DEFAULT_PARENT_SENTINELS,
    sheet: SheetType = SheetType.DEPARTMENTS,
) -> WavePlan:
    """Partition rows into dependency waves, at most `max_passes` of them.

    Rows left over are reported per row: UNRESOLVED_DEPENDENCY when their
    parent chain would resolve with more passes, INVALID_REFERENCE when the
    parent never becomes available (unknown code or a loop).
    """
    placed: set[str] = set(existing_codes)
    remaining = list(rows)
    waves: list[list[Any]] = []

    for _ in range(max_passes):
        if not remaining:
            break
        ready: list[Any] = []
        waiting: list[Any] = []
        for row in remaining:
            parent = _value(row, parent_field)
            if parent in sentinels or parent in placed:
                ready.append(row)
            else:
                waiting.append(row)
        if not ready:
            break
        waves.append(ready)
        placed.update(_value(r, key_field) for r in ready)
        remaining = waiting

    if not remaining:
        return WavePlan(waves=waves)

    parent_by_key = {_value(r, key_field): _value(r, parent_field) for r in remaining}
    resolvable: dict[str, bool] = {}

    def chain_resolves(key: str) -> bool:
        path: list[str] = []
        seen: set[str] = set()
        current = key
        outcome = False
        while True:
            if current in resolvable:
                outcome = resolvable[current]
                break
            if current in seen or current not in parent_by_key:
                outcome = current in placed
                break
            seen.add(current)
            path.append(current)
            parent = parent_by_key[current]
            if parent in sentinels or parent in placed:
                outcome = True
                break
            current = parent
        for k in path:
            resolvable[k] = outcome
        return outcome

    unresolved: list[ValidationError] = []
    for row in remaining:
        key = _value(row, key_field)
        parent = _value(row, parent_field)
        src = row.get("source_row") if isinstance(row, Mapping) else getattr(row, "source_row", -1)
        if chain_resolves(key):
            unresolved.append(
                ValidationError(
                    type=ErrorType.UNRESOLVED_DEPENDENCY,
                    severity=Severity.ERROR,
                    sheet=sheet,
                    row=src,
                    column=parent_field,
                    message=f"'{key}' is still blocked after {max_passes} passes (waiting for '{parent}')",
                    suggestion="Reduce the hierarchy depth or raise limits.max_wave_passes",
                    affected_codes=(key, parent),
                )
            )
        else:
            unresolved.append(
                ValidationError(
                    type=ErrorType.INVALID_REFERENCE,
                    severity=Severity.ERROR,
                    sheet=sheet,
                    row=src,
                    column=parent_field,
                    message=f"parent '{parent}' of '{key}' never becomes available",
                    suggestion=f"Check {parent_field} of '{key}' and the rows above it",
                    affected_codes=(key, parent),
                )
            )
    return WavePlan(waves=waves, unresolved=unresolved)
