from __future__ import annotations

import json
from pathlib import Path

import jsonschema
import pytest
import yaml

from org_import.config.loader import SCHEMA_PATH

"""Config schema contract: the shipped config/import.yml and the schema agree."""

PROJECT_ROOT = Path(__file__).resolve().parents[2]


@pytest.fixture(scope="module")
def schema() -> dict:
    return json.loads(SCHEMA_PATH.read_text(encoding="utf-8"))


def test_shipped_config_is_valid(schema):
    data = yaml.safe_load((PROJECT_ROOT / "config" / "import.yml").read_text(encoding="utf-8"))
    jsonschema.validate(data, schema)


def test_minimal_config_is_valid(schema):
    jsonschema.validate({"sheets": {}, "database": {}}, schema)


@pytest.mark.parametrize(
    "data",
    [
        {"database": {}},
        {"sheets": {}, "database": {"port": 70000}},
        {"sheets": {"departments": {"aliases": []}}, "database": {}},
        {"sheets": {}, "database": {}, "limits": {"max_wave_passes": 0}},
        {"sheets": {}, "database": {}, "limits": {"unknown": 1}},
        {"sheets": {}, "database": {}, "duplicates": {"auto_resolve": "yes"}},
        {"sheets": {}, "database": {}, "on_wave_limit": "skip"},
    ],
)
def test_invalid_configs_rejected(schema, data):
    with pytest.raises(jsonschema.exceptions.ValidationError):
        jsonschema.validate(data, schema)
