# Shared pytest fixtures
from __future__ import annotations

import tempfile
from pathlib import Path

import pytest

from org_import.logging.init import reset_logging
from tests.workbooks import build_workbook, dept, pos


@pytest.fixture(autouse=True)
def _reset_logging():
    reset_logging()
    yield
    reset_logging()


@pytest.fixture()
def org_workbook() -> bytes:
    """A small valid organization: HQ -> ENG/SALES, CEO -> CTO -> DEV."""
    return build_workbook(
        [
            dept("HQ", "Headquarters"),
            dept("ENG", "Engineering", "HQ", '{"cost_center": "CC-100"}'),
            dept("SALES", "Sales", "HQ"),
        ],
        [
            pos("CEO", "HQ", is_manager="TRUE", incumbents=1),
            pos("CTO", "ENG", "CEO", is_manager="TRUE"),
            pos("DEV", "ENG", "CTO", is_active="FALSE", incumbents=4),
        ],
    )


@pytest.fixture()
def temp_workdir(monkeypatch) -> Path:
    with tempfile.TemporaryDirectory() as d:
        p = Path(d)
        (p / "config").mkdir()
        (p / "data").mkdir()
        (p / "logs").mkdir()
        monkeypatch.chdir(p)
        yield p


@pytest.fixture()
def sample_config_yaml() -> str:
    return """sheets:
  departments:
    aliases: [Departments, 部署]
  positions:
    aliases: [Positions, 役職]
database:
  host: localhost
  port: 5432
  user: appuser
  password: secret
  database: appdb
limits:
  max_wave_passes: 10
on_wave_limit: fail
logs_directory: ./logs
"""


@pytest.fixture()
def write_config(temp_workdir: Path, sample_config_yaml: str) -> Path:
    cfg = temp_workdir / "config" / "import.yml"
    cfg.write_text(sample_config_yaml, encoding="utf-8")
    return cfg


@pytest.fixture()
def org_file(temp_workdir: Path, org_workbook: bytes) -> Path:
    f = temp_workdir / "data" / "org.xlsx"
    f.write_bytes(org_workbook)
    return f
