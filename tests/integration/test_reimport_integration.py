from __future__ import annotations

from pathlib import Path

from org_import.db.backend import ImportContext, InMemoryBackend
from org_import.logging.error_log import ErrorLogBuffer
from org_import.models.processing_result import ImportStatus
from org_import.models.validation_error import ErrorType
from org_import.services.orchestrator import run_import
from tests.workbooks import build_workbook, dept, pos

"""Integration: importing into an organization that already has data.

Existing codes are updated in place (ids and created_by kept), new codes are
created, and references may point at rows that only exist in storage.
"""

ACME = ImportContext("acme", "first-admin")


def _seed(backend: InMemoryBackend, org_workbook: bytes, logs: Path) -> None:
    result = run_import(org_workbook, "org.xlsx", ACME, backend, error_log=ErrorLogBuffer(logs))
    assert result.status is ImportStatus.SUCCESS


def test_update_and_create_mixed(org_workbook, tmp_path):
    backend = InMemoryBackend()
    _seed(backend, org_workbook, tmp_path)
    before = backend.fetch_position_ids(ACME)

    payload = build_workbook(
        [dept("HQ", "Head Office"), dept("OPS", "Operations", "HQ")],
        # DEV を CEO 直属に変更、OPS-LEAD は既存の CEO に報告
        [
            pos("DEV", "ENG", "CEO", incumbents=2),
            pos("OPS-LEAD", "OPS", "CEO", is_manager="1", incumbents=1),
        ],
    )
    result = run_import(payload, "update.xlsx", ImportContext("acme", "second-admin"), backend,
                        error_log=ErrorLogBuffer(tmp_path))

    assert result.status is ImportStatus.SUCCESS
    assert (result.departments_created, result.departments_updated) == (1, 1)
    assert (result.positions_created, result.positions_updated) == (1, 1)

    hq = backend.departments[("acme", "HQ")]
    assert hq["name"] == "Head Office"
    assert (hq["created_by"], hq["updated_by"]) == ("first-admin", "second-admin")
    assert backend.departments[("acme", "OPS")]["parent_id"] == hq["id"]

    dev = backend.positions[("acme", "DEV")]
    assert dev["id"] == before["DEV"]
    assert dev["reports_to_id"] == before["CEO"]
    assert dev["incumbents_count"] == 2
    assert backend.positions[("acme", "OPS-LEAD")]["is_manager"] is True


def test_subtree_without_root_is_rejected(org_workbook, tmp_path):
    backend = InMemoryBackend()
    _seed(backend, org_workbook, tmp_path)

    payload = build_workbook([dept("OPS", "Operations", "HQ")], [pos("OPS-LEAD", "OPS", "CEO", incumbents=1)])
    result = run_import(payload, "ops.xlsx", ACME, backend, error_log=ErrorLogBuffer(tmp_path))

    assert result.status is ImportStatus.VALIDATION_FAILED
    (error,) = result.errors
    assert error.type is ErrorType.BUSINESS_RULE
    assert error.message == "no root found: every row has a parent"
    assert ("acme", "OPS") not in backend.departments


def test_organizations_are_isolated(org_workbook, tmp_path):
    backend = InMemoryBackend()
    _seed(backend, org_workbook, tmp_path)
    other = run_import(org_workbook, "org.xlsx", ImportContext("globex", "x"), backend,
                       error_log=ErrorLogBuffer(tmp_path))
    assert (other.departments_created, other.departments_updated) == (3, 0)
    assert len(backend.departments) == 6
