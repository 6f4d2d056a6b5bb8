from __future__ import annotations

from dataclasses import dataclass, field

"""Hierarchy models: nodes, tree wrappers, staged moves and their results."""

__all__ = [
    "HierarchyNode",
    "HierarchyStats",
    "MoveValidationResult",
    "PendingMove",
    "TreeNode",
]


@dataclass(frozen=True)
class HierarchyNode:
    """A department (or position) as seen by the hierarchy processor.

    The derived fields are filled by `enrich()` and are recomputed from scratch
    after every structural change.
    """
    id: str
    code: str
    name: str
    parent_id: str | None = None
    is_active: bool = True
    level: int = 0
    child_count: int = 0
    total_descendants: int = 0
    is_root: bool = False
    is_leaf: bool = False


@dataclass
class TreeNode:
    node: HierarchyNode
    children: list[TreeNode] = field(default_factory=list)
    parent: TreeNode | None = field(default=None, repr=False)


@dataclass(frozen=True)
class PendingMove:
    """A staged re-parenting that has not been committed yet."""
    node_id: str
    new_parent_id: str | None
    old_parent_id: str | None = None


@dataclass(frozen=True)
class MoveValidationResult:
    is_valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    is_noop: bool = False


@dataclass(frozen=True)
class HierarchyStats:
    total_nodes: int
    max_depth: int
    root_count: int
    leaf_count: int
    average_children_per_node: float
