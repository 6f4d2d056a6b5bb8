from __future__ import annotations

from dataclasses import dataclass, field

"""Config dataclasses for the organization structure importer.

These are the typed form of `config/import.yml`. The loader in
`org_import.config.loader` validates the raw YAML against the JSON schema and
builds these objects; library callers can use `default_config()` without a file.
"""

__all__ = [
    "DatabaseConfig",
    "DuplicateConfig",
    "ImportConfig",
    "LimitsConfig",
    "SheetAliasConfig",
    "WAVE_LIMIT_FAIL",
    "WAVE_LIMIT_PARTIAL",
    "default_config",
]

WAVE_LIMIT_FAIL = "fail"
WAVE_LIMIT_PARTIAL = "partial"

DEFAULT_DEPARTMENT_ALIASES = ("departments", "department", "depts", "dept")
DEFAULT_POSITION_ALIASES = ("positions", "position", "pos")
DEFAULT_PARENT_SENTINELS = ("", "-")


@dataclass(frozen=True)
class DatabaseConfig:
    """Database connection configuration.

    Used as fallback when environment variables are not set.
    Environment variables take precedence over these values.
    """
    host: str | None = None
    port: int | None = None
    user: str | None = None
    password: str | None = None
    database: str | None = None
    dsn: str | None = None


@dataclass(frozen=True)
class SheetAliasConfig:
    """Accepted sheet names (case-insensitive) per logical sheet."""
    departments: tuple[str, ...] = DEFAULT_DEPARTMENT_ALIASES
    positions: tuple[str, ...] = DEFAULT_POSITION_ALIASES


@dataclass(frozen=True)
class LimitsConfig:
    max_file_bytes: int = 10 * 1024 * 1024
    max_rows_per_sheet: int = 10_000
    max_wave_passes: int = 10  # 依存ウェーブ生成の最大パス数
    max_hierarchy_depth: int = 10


@dataclass(frozen=True)
class DuplicateConfig:
    auto_resolve: bool = False


@dataclass(frozen=True)
class ImportConfig:
    """Root configuration object for an import run."""
    sheets: SheetAliasConfig = field(default_factory=SheetAliasConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    limits: LimitsConfig = field(default_factory=LimitsConfig)
    duplicates: DuplicateConfig = field(default_factory=DuplicateConfig)
    parent_sentinels: frozenset[str] = frozenset(DEFAULT_PARENT_SENTINELS)
    on_wave_limit: str = WAVE_LIMIT_FAIL  # "fail" | "partial"
    logs_directory: str = "./logs"

    @property
    def allows_partial_import(self) -> bool:
        return self.on_wave_limit == WAVE_LIMIT_PARTIAL


def default_config() -> ImportConfig:
    return ImportConfig()
