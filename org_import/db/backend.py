from __future__ import annotations

import uuid
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any, Protocol

import psycopg2
from psycopg2.extras import Json

from .batch_insert import BatchInsertError, BatchMetrics, batch_upsert

"""Persistence collaborators.

`PersistenceBackend` is what the orchestrator talks to. Records are keyed by
business code; every upsert returns code -> surrogate id so that the next wave
can resolve its parent / department / reports-to references.

- PostgresBackend: psycopg2 cursor, one execute_values upsert per call
- InMemoryBackend: dict storage for mock mode (DISABLE_DB_CONNECT=1) and tests
"""

__all__ = [
    "DepartmentRecord",
    "ImportContext",
    "InMemoryBackend",
    "PersistenceBackend",
    "PersistenceError",
    "PositionRecord",
    "PostgresBackend",
]


class PersistenceError(Exception):
    pass


@dataclass(frozen=True)
class ImportContext:
    """Already-authenticated identity of the caller, written to audit columns."""
    organization_id: str
    actor_id: str | None = None


@dataclass(frozen=True)
class DepartmentRecord:
    dept_code: str
    name: str
    parent_id: str | None
    metadata: dict[str, Any] | None = None


@dataclass(frozen=True)
class PositionRecord:
    pos_code: str
    title: str
    department_id: str
    reports_to_id: str | None
    is_manager: bool = False
    is_active: bool = True
    incumbents_count: int = 0


class PersistenceBackend(Protocol):
    def fetch_department_ids(self, context: ImportContext) -> dict[str, str]: ...

    def fetch_position_ids(self, context: ImportContext) -> dict[str, str]: ...

    def upsert_departments(
        self, records: Sequence[DepartmentRecord], context: ImportContext
    ) -> dict[str, str]: ...

    def upsert_positions(
        self, records: Sequence[PositionRecord], context: ImportContext
    ) -> dict[str, str]: ...


DEPARTMENT_COLUMNS = (
    "organization_id",
    "dept_code",
    "name",
    "parent_id",
    "metadata",
    "created_by",
    "updated_by",
)
POSITION_COLUMNS = (
    "organization_id",
    "pos_code",
    "title",
    "department_id",
    "reports_to_id",
    "is_manager",
    "is_active",
    "incumbents_count",
    "created_by",
    "updated_by",
)


class PostgresBackend:
    """PersistenceBackend over a psycopg2 cursor.

    Transaction boundaries belong to the connection owner (the CLI commits
    after a successful run and rolls back otherwise).
    """

    def __init__(
        self,
        cursor: Any,
        *,
        departments_table: str = "departments",
        positions_table: str = "positions",
        page_size: int = 1000,
        metrics_callback: Callable[[BatchMetrics], None] | None = None,
    ) -> None:
        self.cursor = cursor
        self.departments_table = departments_table
        self.positions_table = positions_table
        self.page_size = page_size
        self.metrics_callback = metrics_callback

    def _fetch_ids(self, table: str, code_column: str, context: ImportContext) -> dict[str, str]:
        try:
            self.cursor.execute(
                f'SELECT "{code_column}", "id" FROM {table} WHERE "organization_id" = %s',
                (context.organization_id,),
            )
            return {str(code): str(pk) for code, pk in self.cursor.fetchall()}
        except psycopg2.Error as e:
            raise PersistenceError(f"failed reading {table}: {e}") from e

    def fetch_department_ids(self, context: ImportContext) -> dict[str, str]:
        return self._fetch_ids(self.departments_table, "dept_code", context)

    def fetch_position_ids(self, context: ImportContext) -> dict[str, str]:
        return self._fetch_ids(self.positions_table, "pos_code", context)

    def _upsert(
        self,
        table: str,
        columns: Sequence[str],
        code_column: str,
        rows: list[tuple[Any, ...]],
    ) -> dict[str, str]:
        # created_by は INSERT 時のみ、更新時は updated_by だけ書き換える
        update_columns = [c for c in columns if c not in ("organization_id", code_column, "created_by")]
        try:
            result = batch_upsert(
                self.cursor,
                table,
                columns,
                rows,
                conflict_columns=("organization_id", code_column),
                update_columns=update_columns,
                returning=(code_column, "id"),
                page_size=self.page_size,
                metrics_callback=self.metrics_callback,
            )
        except BatchInsertError as e:
            raise PersistenceError(str(e)) from e
        return {str(code): str(pk) for code, pk in result.returned_values}

    def upsert_departments(
        self, records: Sequence[DepartmentRecord], context: ImportContext
    ) -> dict[str, str]:
        rows = [
            (
                context.organization_id,
                r.dept_code,
                r.name,
                r.parent_id,
                Json(r.metadata) if r.metadata is not None else None,
                context.actor_id,
                context.actor_id,
            )
            for r in records
        ]
        return self._upsert(self.departments_table, DEPARTMENT_COLUMNS, "dept_code", rows)

    def upsert_positions(
        self, records: Sequence[PositionRecord], context: ImportContext
    ) -> dict[str, str]:
        rows = [
            (
                context.organization_id,
                r.pos_code,
                r.title,
                r.department_id,
                r.reports_to_id,
                r.is_manager,
                r.is_active,
                r.incumbents_count,
                context.actor_id,
                context.actor_id,
            )
            for r in records
        ]
        return self._upsert(self.positions_table, POSITION_COLUMNS, "pos_code", rows)


class InMemoryBackend:
    """Dict-backed PersistenceBackend.

    Stored rows are plain dicts keyed by (organization_id, code) and carry the
    same audit columns the PostgreSQL tables do.
    """

    def __init__(self) -> None:
        self.departments: dict[tuple[str, str], dict[str, Any]] = {}
        self.positions: dict[tuple[str, str], dict[str, Any]] = {}
        self.upsert_calls: list[tuple[str, int]] = []

    def _ids(self, store: dict[tuple[str, str], dict[str, Any]], context: ImportContext) -> dict[str, str]:
        return {code: row["id"] for (org, code), row in store.items() if org == context.organization_id}

    def fetch_department_ids(self, context: ImportContext) -> dict[str, str]:
        return self._ids(self.departments, context)

    def fetch_position_ids(self, context: ImportContext) -> dict[str, str]:
        return self._ids(self.positions, context)

    def _store(
        self,
        store: dict[tuple[str, str], dict[str, Any]],
        code: str,
        values: dict[str, Any],
        context: ImportContext,
    ) -> str:
        key = (context.organization_id, code)
        existing = store.get(key)
        if existing is None:
            row = {
                "id": str(uuid.uuid4()),
                "organization_id": context.organization_id,
                "created_by": context.actor_id,
            }
            store[key] = row
        else:
            row = existing
        row.update(values)
        row["updated_by"] = context.actor_id
        return row["id"]

    def upsert_departments(
        self, records: Sequence[DepartmentRecord], context: ImportContext
    ) -> dict[str, str]:
        self.upsert_calls.append(("departments", len(records)))
        out: dict[str, str] = {}
        for r in records:
            out[r.dept_code] = self._store(
                self.departments,
                r.dept_code,
                {"dept_code": r.dept_code, "name": r.name, "parent_id": r.parent_id, "metadata": r.metadata},
                context,
            )
        return out

    def upsert_positions(
        self, records: Sequence[PositionRecord], context: ImportContext
    ) -> dict[str, str]:
        self.upsert_calls.append(("positions", len(records)))
        out: dict[str, str] = {}
        for r in records:
            out[r.pos_code] = self._store(
                self.positions,
                r.pos_code,
                {
                    "pos_code": r.pos_code,
                    "title": r.title,
                    "department_id": r.department_id,
                    "reports_to_id": r.reports_to_id,
                    "is_manager": r.is_manager,
                    "is_active": r.is_active,
                    "incumbents_count": r.incumbents_count,
                },
                context,
            )
        return out
