from __future__ import annotations

import pytest

from org_import.models.hierarchy import HierarchyNode, PendingMove
from org_import.models.row_data import DepartmentRow
from org_import.models.validation_error import ErrorType, SheetType
from org_import.services.hierarchy import (
    HierarchyCycleError,
    InvalidMoveError,
    apply_moves,
    build_tree,
    calculate_hierarchy_stats,
    enrich,
    filter_by_active_status,
    find_path_to_root,
    plan_waves,
    search_nodes,
    sort_positions_by_hierarchy,
    validate_move,
    validate_pending_moves,
)


def _n(node_id: str, parent: str | None = None, active: bool = True) -> HierarchyNode:
    return HierarchyNode(id=node_id, code=node_id, name=f"Node {node_id}", parent_id=parent, is_active=active)


@pytest.fixture()
def chain() -> list[HierarchyNode]:
    # A (root) <- B <- C
    return [_n("A"), _n("B", "A"), _n("C", "B")]


def test_build_tree_and_orphans_become_roots():
    forest = build_tree([_n("A"), _n("B", "A"), _n("C", "GONE")])
    assert sorted(t.node.id for t in forest) == ["A", "C"]
    a = next(t for t in forest if t.node.id == "A")
    assert [c.node.id for c in a.children] == ["B"]
    assert a.children[0].parent is a


def test_enrich_flat_nodes(chain):
    by_id = {n.id: n for n in enrich(chain)}
    assert (by_id["A"].level, by_id["B"].level, by_id["C"].level) == (0, 1, 2)
    assert by_id["A"].is_root and not by_id["A"].is_leaf
    assert by_id["A"].child_count == 1
    assert by_id["A"].total_descendants == 2
    assert by_id["C"].is_leaf and by_id["C"].total_descendants == 0


def test_enrich_accepts_forest(chain):
    flat = {n.id: n for n in enrich(chain)}
    from_forest = {n.id: n for n in enrich(build_tree(chain))}
    assert flat == from_forest


def test_enrich_survives_tree_round_trip():
    # 2 本の木 (分岐あり) + 親が存在しない孤児
    nodes = [
        _n("R1"), _n("A", "R1"), _n("B", "R1"), _n("A1", "A"), _n("A2", "A"), _n("A2x", "A2"),
        _n("R2"), _n("C", "R2"),
        _n("ORPHAN", "MISSING"), _n("O1", "ORPHAN"),
    ]

    def derived(items):
        return {n.id: (n.level, n.child_count, n.total_descendants) for n in items}

    direct = enrich(nodes)
    round_trip = enrich(build_tree(enrich(nodes)))
    assert derived(round_trip) == derived(direct)
    assert derived(direct)["R1"] == (0, 2, 5)
    assert derived(direct)["A2x"] == (3, 0, 0)
    assert derived(direct)["ORPHAN"] == (0, 1, 1)


def test_enrich_raises_on_cycle():
    with pytest.raises(HierarchyCycleError) as exc:
        enrich([_n("X", "Y"), _n("Y", "X")])
    assert set(exc.value.node_ids) == {"X", "Y"}


def test_stats_and_path(chain):
    stats = calculate_hierarchy_stats(chain + [_n("D", "A")])
    assert stats.total_nodes == 4
    assert stats.max_depth == 3
    assert stats.root_count == 1
    assert stats.leaf_count == 2
    assert stats.average_children_per_node == pytest.approx(3 / 4)
    assert find_path_to_root("C", chain) == ["A", "B", "C"]
    assert find_path_to_root("nope", chain) == []
    assert calculate_hierarchy_stats([]).total_nodes == 0


def test_search_and_filter():
    nodes = [_n("ENG"), _n("SALES", active=False)]
    assert [n.id for n in search_nodes(nodes, "eng")] == ["ENG"]
    assert len(search_nodes(nodes, "  ")) == 2
    assert [n.id for n in filter_by_active_status(nodes, show_inactive=False)] == ["ENG"]
    assert len(filter_by_active_status(nodes, show_inactive=True)) == 2


def test_move_into_own_descendant_rejected(chain):
    result = validate_move("A", "C", chain)
    assert not result.is_valid
    assert not result.is_noop
    assert "circular reference" in result.errors[0]


def test_move_to_current_parent_is_noop(chain):
    result = validate_move("B", "A", chain)
    assert result.is_noop
    assert result.errors == []
    assert not result.is_valid


def test_move_rejections(chain):
    assert validate_move("B", "B", chain).errors == ["cannot move 'B' under itself"]
    assert validate_move("ZZ", "A", chain).errors == ["node 'ZZ' not found"]
    assert validate_move("C", "ZZ", chain).errors == ["target parent 'ZZ' not found"]


def test_valid_move_and_move_to_root(chain):
    assert validate_move("C", "A", chain).is_valid
    assert validate_move("B", None, chain).is_valid


def test_inactive_target_warns():
    nodes = [_n("A"), _n("B", "A"), _n("X", active=False)]
    result = validate_move("B", "X", nodes)
    assert result.is_valid
    assert any("inactive" in w for w in result.warnings)


def test_pending_moves_are_considered(chain):
    # D を C の下へ移動予定。その状態で C を D の下に置くと循環
    nodes = chain + [_n("D")]
    pending = [PendingMove("D", "C", None)]
    result = validate_move("C", "D", nodes, pending)
    assert not result.is_valid
    assert "circular reference" in result.errors[0]


def test_conflicting_staged_move_of_same_node(chain):
    pending = [PendingMove("C", "A", "B")]
    result = validate_move("C", None, chain, pending)
    assert not result.is_valid
    assert "conflicts" in result.errors[0]


def test_depth_limit_and_deep_warning():
    nodes = [_n("N0")] + [_n(f"N{i}", f"N{i - 1}") for i in range(1, 6)] + [_n("X"), _n("Y", "X")]
    too_deep = validate_move("X", "N5", nodes, max_depth=6)
    assert not too_deep.is_valid
    assert "exceeding the maximum of 6" in too_deep.errors[0]
    deep = validate_move("Y", "N3", nodes, max_depth=6)
    assert deep.is_valid
    assert any("deep hierarchy" in w for w in deep.warnings)


def test_large_subtree_warning():
    nodes = [_n("ROOT"), _n("OTHER"), _n("BIG", "ROOT")] + [_n(f"L{i}", "BIG") for i in range(21)]
    result = validate_move("BIG", "OTHER", nodes)
    assert result.is_valid
    assert any("21 descendants" in w for w in result.warnings)


def test_validate_pending_and_apply_moves(chain):
    nodes = chain + [_n("D")]
    pending = [PendingMove("C", "A", "B"), PendingMove("D", "B", None), PendingMove("B", "A", "A")]
    validation = validate_pending_moves(pending, nodes)
    assert validation.is_valid
    assert validation.noop_moves == [pending[2]]

    moved = {n.id: n for n in apply_moves(nodes, pending)}
    assert moved["C"].parent_id == "A"
    assert moved["D"].level == 2
    assert moved["A"].total_descendants == 3

    with pytest.raises(InvalidMoveError):
        apply_moves(nodes, [PendingMove("A", "C", None)])


def test_sort_positions_by_hierarchy():
    rows = [
        {"pos_code": "DEV", "reports_to_pos_code": "CTO"},
        {"pos_code": "CEO", "reports_to_pos_code": None},
        {"pos_code": "CTO", "reports_to_pos_code": "CEO"},
        {"pos_code": "CFO", "reports_to_pos_code": "CEO"},
    ]
    ordered = sort_positions_by_hierarchy(rows)
    assert [(s.row["pos_code"], s.depth) for s in ordered] == [("CEO", 0), ("CFO", 1), ("CTO", 1), ("DEV", 2)]
    assert ordered[-1].path == ("CEO", "CTO", "DEV")


def _rows(*pairs: tuple[str, str | None]) -> list[DepartmentRow]:
    return [DepartmentRow(code, code, parent, None, i + 2) for i, (code, parent) in enumerate(pairs)]


def test_plan_waves_orders_parents_first():
    rows = _rows(("C", "B"), ("B", "A"), ("A", None), ("E", "EXT"))
    plan = plan_waves(rows, "dept_code", "parent_dept_code", existing_codes={"EXT"})
    assert plan.is_complete
    assert [[r.dept_code for r in w] for w in plan.waves] == [["A", "E"], ["B"], ["C"]]
    assert plan.planned_rows == 4


def test_plan_waves_bound_reports_unresolved_dependency():
    rows = _rows(*[(f"D{i}", f"D{i - 1}" if i else None) for i in range(5)])
    plan = plan_waves(rows, "dept_code", "parent_dept_code", max_passes=3)
    assert len(plan.waves) == 3
    assert [e.type for e in plan.unresolved] == [ErrorType.UNRESOLVED_DEPENDENCY] * 2
    assert "still blocked after 3 passes" in plan.unresolved[0].message
    assert plan.unresolved[0].affected_codes == ("D3", "D2")
    assert plan.unresolved[0].sheet is SheetType.DEPARTMENTS


def test_plan_waves_unknown_parent_is_invalid_reference():
    rows = _rows(("A", None), ("B", "MISSING"), ("C", "B"))
    plan = plan_waves(rows, "dept_code", "parent_dept_code")
    assert [r.dept_code for w in plan.waves for r in w] == ["A"]
    assert [e.type for e in plan.unresolved] == [ErrorType.INVALID_REFERENCE] * 2
    assert plan.unresolved[0].row == 3
