from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import jsonschema
import yaml
from jsonschema.exceptions import ValidationError as SchemaValidationError

from org_import.models.config_models import (
    DatabaseConfig,
    DuplicateConfig,
    ImportConfig,
    LimitsConfig,
    SheetAliasConfig,
    WAVE_LIMIT_FAIL,
)

"""Config loader.

Responsibilities:
- Load YAML config/import.yml
- Validate against the JSON schema shipped next to this module
- Apply defaults for every optional key (limits, sentinels, logs directory, ...)
"""

SCHEMA_PATH = Path(__file__).parent / "import_schema.json"
DEFAULT_CONFIG_PATH = Path("config/import.yml")


class ConfigError(Exception):
    pass


def _validate_config_schema(data: dict[str, Any]) -> None:
    """Validate config data against JSON schema.

    Args:
        data: Configuration data to validate

    Raises:
        ConfigError: If the schema file is missing or not valid JSON, or the
            config data fails schema validation (missing required keys, wrong
            types, unknown keys).
    """
    if not SCHEMA_PATH.exists():
        raise ConfigError(f"config schema not found: {SCHEMA_PATH}")

    try:
        schema = json.loads(SCHEMA_PATH.read_text(encoding="utf-8"))
        jsonschema.validate(data, schema)
    except json.JSONDecodeError as e:
        raise ConfigError(f"invalid schema file: {e}") from e
    except SchemaValidationError as e:
        raise ConfigError(f"config validation failed: {e.message}") from e


def _build_sheets(raw: dict[str, Any]) -> SheetAliasConfig:
    defaults = SheetAliasConfig()
    dept = raw.get("departments", {}).get("aliases")
    pos = raw.get("positions", {}).get("aliases")
    return SheetAliasConfig(
        departments=tuple(dept) if dept else defaults.departments,
        positions=tuple(pos) if pos else defaults.positions,
    )


def config_from_dict(data: dict[str, Any]) -> ImportConfig:
    """Build an ImportConfig from already-validated raw data."""
    db_raw = data.get("database", {}) or {}
    db = DatabaseConfig(
        host=db_raw.get("host"),
        port=db_raw.get("port"),
        user=db_raw.get("user"),
        password=db_raw.get("password"),
        database=db_raw.get("database"),
        dsn=db_raw.get("dsn"),
    )
    limits_defaults = LimitsConfig()
    limits_raw = data.get("limits", {}) or {}
    limits = LimitsConfig(
        max_file_bytes=limits_raw.get("max_file_bytes", limits_defaults.max_file_bytes),
        max_rows_per_sheet=limits_raw.get("max_rows_per_sheet", limits_defaults.max_rows_per_sheet),
        max_wave_passes=limits_raw.get("max_wave_passes", limits_defaults.max_wave_passes),
        max_hierarchy_depth=limits_raw.get("max_hierarchy_depth", limits_defaults.max_hierarchy_depth),
    )
    dup_raw = data.get("duplicates", {}) or {}
    kwargs: dict[str, Any] = {}
    if "parent_sentinels" in data:
        # 空文字は常に「親なし」扱い
        kwargs["parent_sentinels"] = frozenset(s.strip() for s in data["parent_sentinels"]) | {""}
    return ImportConfig(
        sheets=_build_sheets(data.get("sheets", {}) or {}),
        database=db,
        limits=limits,
        duplicates=DuplicateConfig(auto_resolve=bool(dup_raw.get("auto_resolve", False))),
        on_wave_limit=data.get("on_wave_limit", WAVE_LIMIT_FAIL),
        logs_directory=data.get("logs_directory", "./logs"),
        **kwargs,
    )


def load_config(path: Path) -> ImportConfig:
    if not path.exists():
        raise ConfigError(f"config file not found: {path}")
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"invalid yaml: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"config root must be a mapping, got {type(data).__name__}")

    _validate_config_schema(data)
    return config_from_dict(data)
