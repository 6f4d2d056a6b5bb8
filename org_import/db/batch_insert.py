from __future__ import annotations

import time
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from typing import Any

import psycopg2
from psycopg2.extras import execute_values

"""DB batch upsert.

psycopg2.extras.execute_values で INSERT ... ON CONFLICT ... DO UPDATE を発行し、
RETURNING で (business key, surrogate id) を受け取る。

- One statement per page (page_size rows); fetch=True collects RETURNING rows
  of every page
- Driver errors are wrapped in BatchInsertError
- An optional metrics callback receives BatchMetrics for each call
"""

__all__ = [
    "BatchInsertError",
    "BatchMetrics",
    "UpsertResult",
    "batch_upsert",
    "build_upsert_sql",
]


class BatchInsertError(Exception):
    pass


@dataclass(frozen=True)
class BatchMetrics:
    """Metrics data for a single batch upsert call."""
    batch_size: int  # Number of rows in this batch
    elapsed_seconds: float  # Time spent on execute_values call
    start_time: float  # Start timestamp (time.time())
    end_time: float  # End timestamp (time.time())


@dataclass(frozen=True)
class UpsertResult:
    affected_rows: int
    returned_values: list[tuple[Any, ...]]


def _quote(identifier: str) -> str:
    return '"' + identifier.replace('"', '""') + '"'


def build_upsert_sql(
    table: str,
    columns: Sequence[str],
    conflict_columns: Sequence[str],
    update_columns: Sequence[str],
    returning: Sequence[str],
) -> str:
    """Build the execute_values statement (VALUES %s placeholder included)."""
    cols_sql = ",".join(_quote(c) for c in columns)
    conflict_sql = ",".join(_quote(c) for c in conflict_columns)
    sql = f"INSERT INTO {table} ({cols_sql}) VALUES %s ON CONFLICT ({conflict_sql})"
    if update_columns:
        assignments = ",".join(f"{_quote(c)} = EXCLUDED.{_quote(c)}" for c in update_columns)
        sql += f" DO UPDATE SET {assignments}"
    else:
        sql += " DO NOTHING"
    if returning:
        sql += " RETURNING " + ",".join(_quote(c) for c in returning)
    return sql


def batch_upsert(
    cursor: Any,
    table: str,
    columns: Sequence[str],
    rows: Iterable[Sequence[Any]],
    conflict_columns: Sequence[str],
    update_columns: Sequence[str],
    returning: Sequence[str] = (),
    page_size: int = 1000,
    metrics_callback: Callable[[BatchMetrics], None] | None = None,
) -> UpsertResult:
    """Perform a batched upsert using psycopg2.extras.execute_values.

    Parameters
    ----------
    cursor: psycopg2 cursor
    table: 対象テーブル名 (サニタイズ済み想定)
    columns: 挿入列
    rows: 行シーケンス (columns と同順)
    conflict_columns: ON CONFLICT の一意制約列 (例: organization_id, dept_code)
    update_columns: 衝突時に EXCLUDED 値で更新する列
    returning: RETURNING 列 (例: dept_code, id)
    page_size: execute_values の page_size (性能調整)
    metrics_callback: Optional callback receiving BatchMetrics.
        Not invoked when `rows` is empty (the function returns early).
    """
    rows_list = list(rows)
    if not rows_list:
        return UpsertResult(affected_rows=0, returned_values=[])

    sql = build_upsert_sql(table, columns, conflict_columns, update_columns, returning)

    start_time = time.time()
    try:
        returned = execute_values(
            cursor, sql, rows_list, page_size=page_size, fetch=bool(returning)
        )
    except psycopg2.Error as e:
        raise BatchInsertError(f"{table}: {e}") from e
    finally:
        end_time = time.time()
        if metrics_callback is not None:
            metrics_callback(
                BatchMetrics(
                    batch_size=len(rows_list),
                    elapsed_seconds=end_time - start_time,
                    start_time=start_time,
                    end_time=end_time,
                )
            )

    return UpsertResult(affected_rows=len(rows_list), returned_values=list(returned or []))
