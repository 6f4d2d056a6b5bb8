from __future__ import annotations

import json
from pathlib import Path

import pytest

from org_import.db.backend import ImportContext, InMemoryBackend, PersistenceError
from org_import.logging.error_log import ErrorLogBuffer
from org_import.models.config_models import ImportConfig, LimitsConfig
from org_import.models.processing_result import ImportStatus
from org_import.models.validation_error import ErrorType
from org_import.services.orchestrator import ProcessingError, run_import, run_import_file
from org_import.services.progress import ImportProgressTracker, Stage
from tests.workbooks import build_workbook, chain_departments, dept, pos

CTX = ImportContext(organization_id="org-1", actor_id="admin")


class FailingPositionsBackend(InMemoryBackend):
    def upsert_positions(self, records, context):
        raise PersistenceError("positions: connection reset")


def _log_lines(logs: Path) -> list[dict]:
    files = list(logs.glob("errors-*.log"))
    if not files:
        return []
    return [json.loads(line) for line in files[0].read_text(encoding="utf-8").splitlines()]


@pytest.fixture()
def logs(tmp_path: Path) -> Path:
    return tmp_path / "logs"


def _run(payload: bytes, backend, logs: Path, config: ImportConfig | None = None, **kwargs):
    return run_import(payload, "org.xlsx", CTX, backend, config, error_log=ErrorLogBuffer(logs), **kwargs)


def test_success_persists_parents_before_children(org_workbook, logs):
    backend = InMemoryBackend()
    tracker = ImportProgressTracker()
    result = _run(org_workbook, backend, logs, tracker=tracker)

    assert result.status is ImportStatus.SUCCESS
    assert (result.departments_created, result.departments_updated) == (3, 0)
    assert (result.positions_created, result.positions_updated) == (3, 0)
    assert result.errors == []
    # CTO の incumbents_count が空 -> WARNING 1 件
    assert [w.type for w in result.warnings] == [ErrorType.MISSING_OPTIONAL_FIELD]
    assert backend.upsert_calls == [
        ("departments", 1),
        ("departments", 2),
        ("positions", 1),
        ("positions", 1),
        ("positions", 1),
    ]
    assert [(s.entity, s.wave_index, s.rows) for s in result.wave_stats][:2] == [
        ("departments", 0, 1),
        ("departments", 1, 2),
    ]

    depts = {code: row for (_, code), row in backend.departments.items()}
    positions = {code: row for (_, code), row in backend.positions.items()}
    assert depts["ENG"]["parent_id"] == depts["HQ"]["id"]
    assert depts["ENG"]["metadata"] == {"cost_center": "CC-100"}
    assert depts["HQ"]["created_by"] == "admin"
    assert positions["CTO"]["reports_to_id"] == positions["CEO"]["id"]
    assert positions["CTO"]["department_id"] == depts["ENG"]["id"]
    assert positions["DEV"]["is_active"] is False
    assert positions["DEV"]["incumbents_count"] == 4
    assert positions["CTO"]["incumbents_count"] == 0

    assert tracker.state.stage is Stage.COMPLETE
    assert not tracker.timer_active
    assert [r["severity"] for r in _log_lines(logs)] == ["WARNING"]


def test_reimport_updates_existing_rows(org_workbook, logs):
    backend = InMemoryBackend()
    _run(org_workbook, backend, logs)
    ids_before = backend.fetch_department_ids(CTX)

    again = run_import(
        org_workbook, "org.xlsx", ImportContext("org-1", "auditor"), backend, error_log=ErrorLogBuffer(logs)
    )
    assert again.status is ImportStatus.SUCCESS
    assert (again.departments_created, again.departments_updated) == (0, 3)
    assert (again.positions_created, again.positions_updated) == (0, 3)
    assert backend.fetch_department_ids(CTX) == ids_before
    hq = backend.departments[("org-1", "HQ")]
    assert (hq["created_by"], hq["updated_by"]) == ("admin", "auditor")


def test_validation_failure_persists_nothing(logs):
    payload = build_workbook(
        [dept("HQ"), dept("X", parent="Y"), dept("Y", parent="X")],
        [pos("P1", "NOPE")],
    )
    backend = InMemoryBackend()
    tracker = ImportProgressTracker()
    result = _run(payload, backend, logs, tracker=tracker)

    assert result.status is ImportStatus.VALIDATION_FAILED
    assert backend.upsert_calls == []
    types = {e.type for e in result.errors}
    assert types == {ErrorType.CIRCULAR_REFERENCE, ErrorType.INVALID_REFERENCE}
    assert result.total_departments == 3
    assert tracker.state.stage is Stage.ERROR
    logged = _log_lines(logs)
    assert {r["error_type"] for r in logged} >= {"CIRCULAR_REFERENCE", "INVALID_REFERENCE"}
    assert all(r["file"] == "org.xlsx" for r in logged)


def test_dry_run_reports_planned_operations(org_workbook, logs):
    backend = InMemoryBackend()
    result = _run(org_workbook, backend, logs, dry_run=True)
    assert result.status is ImportStatus.VALIDATED
    assert result.message == "dry run: nothing persisted"
    assert (result.departments_created, result.positions_created) == (3, 3)
    assert backend.upsert_calls == []
    assert backend.departments == {}


def _deep_config(policy: str) -> ImportConfig:
    return ImportConfig(limits=LimitsConfig(max_wave_passes=10), on_wave_limit=policy)


def test_wave_limit_fail_blocks_import(logs):
    payload = build_workbook(chain_departments(12), [pos("P0", "D0"), pos("P11", "D11")])
    backend = InMemoryBackend()
    result = _run(payload, backend, logs, _deep_config("fail"))
    assert result.status is ImportStatus.VALIDATION_FAILED
    assert result.message == "dependency planning failed: 3 rows unresolved"
    assert backend.upsert_calls == []


def test_wave_limit_partial_persists_resolved_waves(logs):
    payload = build_workbook(chain_departments(12), [pos("P0", "D0", incumbents=1), pos("P11", "D11", incumbents=1)])
    backend = InMemoryBackend()
    result = _run(payload, backend, logs, _deep_config("partial"))

    assert result.status is ImportStatus.PARTIAL
    assert result.departments_created == 10
    assert result.positions_created == 1
    assert sorted(code for (_, code) in backend.departments) == sorted(f"D{i}" for i in range(10))
    unresolved = [e for e in result.errors if e.type is ErrorType.UNRESOLVED_DEPENDENCY]
    assert sorted(e.affected_codes[0] for e in unresolved) == ["D10", "D11", "P11"]
    # 既定の max_hierarchy_depth=10 を超える D10, D11 は WARNING
    depth = [w for w in result.warnings if w.type is ErrorType.BUSINESS_RULE]
    assert [w.affected_codes for w in depth] == [("D10",), ("D11",)]


def test_depth_limit_is_configurable(org_workbook, logs):
    cfg = ImportConfig(limits=LimitsConfig(max_hierarchy_depth=1))
    result = _run(org_workbook, InMemoryBackend(), logs, cfg)
    assert result.status is ImportStatus.SUCCESS
    depth = [w for w in result.warnings if w.type is ErrorType.BUSINESS_RULE]
    assert [w.message for w in depth] == [
        "department 'ENG' is at depth 2 (limit 1)",
        "department 'SALES' is at depth 2 (limit 1)",
    ]


def test_persistence_failure_reports_last_completed_wave(org_workbook, logs):
    tracker = ImportProgressTracker()
    result = _run(org_workbook, FailingPositionsBackend(), logs, tracker=tracker)
    assert result.status is ImportStatus.FAILED
    assert result.message == (
        "persistence failed (last completed: departments wave 1): positions: connection reset"
    )
    assert tracker.state.stage is Stage.ERROR
    file_level = [r for r in _log_lines(logs) if r["row"] == -1]
    assert file_level[0]["error_type"] == "PERSISTENCE_ERROR"
    assert file_level[0]["sheet"] == "<FILE_LEVEL>"


def test_duplicates_block_unless_auto_resolved(logs):
    payload = build_workbook(
        [dept("HQ"), dept("ENG", "Engineering", "HQ"), dept("ENG", "Engineering", "HQ")],
        [pos("CEO", "HQ", incumbents=1)],
    )
    blocked = _run(payload, InMemoryBackend(), logs)
    assert blocked.status is ImportStatus.VALIDATION_FAILED
    assert [e.type for e in blocked.errors] == [ErrorType.DUPLICATE_CODE_IN_FILE] * 2

    backend = InMemoryBackend()
    resolved = _run(payload, backend, logs, auto_resolve=True)
    assert resolved.status is ImportStatus.SUCCESS
    assert resolved.departments_created == 2
    assert resolved.total_departments == 2


def test_unreadable_payload_is_file_level_failure(logs):
    tracker = ImportProgressTracker()
    result = _run(b"x" * 200, InMemoryBackend(), logs, tracker=tracker)
    assert result.status is ImportStatus.FAILED
    assert result.message.startswith("cannot read workbook")
    assert tracker.state.stage is Stage.ERROR
    (record,) = _log_lines(logs)
    assert (record["row"], record["error_type"]) == (-1, "MALFORMEDFILEERROR")


def test_run_import_file(org_file, logs):
    result = run_import_file(org_file, CTX, InMemoryBackend(), error_log=ErrorLogBuffer(logs))
    assert result.status is ImportStatus.SUCCESS
    assert result.file_name == "org.xlsx"
    with pytest.raises(ProcessingError, match="file not found"):
        run_import_file(org_file.with_name("missing.xlsx"), CTX, InMemoryBackend())
