from __future__ import annotations

import argparse
import json
import os
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

import psycopg2
from dotenv import load_dotenv

from org_import.config.loader import DEFAULT_CONFIG_PATH, ConfigError, load_config
from org_import.db.backend import ImportContext, InMemoryBackend, PersistenceBackend, PostgresBackend
from org_import.excel.reader import ExtractionError, normalize_header, read_raw_sheets
from org_import.excel.template import generate_template
from org_import.logging.error_log import ErrorLogBuffer
from org_import.logging.init import log_summary, setup_logging
from org_import.models.config_models import ImportConfig
from org_import.models.processing_result import ImportResult, ImportStatus
from org_import.services.orchestrator import ProcessingError, run_import_file
from org_import.services.progress import ImportProgressTracker, TqdmProgressRenderer
from org_import.services.summary import render_summary_line, render_validation_report

"""CLI entrypoint.

    python -m org_import.cli FILE --organization ORG [--actor ID] [--config PATH]
        [--dry-run] [--auto-resolve] [--debug]
    python -m org_import.cli --template OUT
    python -m org_import.cli --inspect-data FILE

Exit codes: 0 success (or dry run validated), 1 fatal, 2 validation failure or
partial import.
"""

EXIT_SUCCESS = 0
EXIT_FATAL = 1
EXIT_VALIDATION_FAILED = 2

_EXIT_CODES = {
    ImportStatus.SUCCESS: EXIT_SUCCESS,
    ImportStatus.VALIDATED: EXIT_SUCCESS,
    ImportStatus.VALIDATION_FAILED: EXIT_VALIDATION_FAILED,
    ImportStatus.PARTIAL: EXIT_VALIDATION_FAILED,
    ImportStatus.FAILED: EXIT_FATAL,
}

_COMMIT_STATUSES = frozenset({ImportStatus.SUCCESS, ImportStatus.PARTIAL})


def _resolve_dsn(cfg: ImportConfig) -> str:
    """接続情報の解決優先順位:
        1. `.env` で読み込まれた環境変数 (main() 冒頭で上書き読み込み済み)
        2. 既存の環境変数
             - DATABASE_URL / PGDSN があれば DSN 全体をそのまま使用
             - 個別 PGHOST / PGPORT / PGUSER / PGPASSWORD / PGDATABASE
        3. config/import.yml の database セクション (不足分のフォールバック)
    """
    db_cfg = cfg.database
    dsn = os.getenv("DATABASE_URL") or os.getenv("PGDSN") or db_cfg.dsn
    if dsn:
        return dsn
    host = os.getenv("PGHOST", db_cfg.host or "localhost")
    port = os.getenv("PGPORT", str(db_cfg.port) if db_cfg.port else "5432")
    user = os.getenv("PGUSER", db_cfg.user or "postgres")
    password = os.getenv("PGPASSWORD", db_cfg.password or "")
    database = os.getenv("PGDATABASE", db_cfg.database or "postgres")
    dsn = f"host={host} port={port} user={user} dbname={database}"
    if password:
        dsn += f" password={password}"
    return dsn


@contextmanager
def _db_connection(cfg: ImportConfig) -> Iterator[tuple[Any, Any]]:  # pragma: no cover (thin wrapper)
    """Yield (connection, cursor); the caller decides commit or rollback."""
    conn = psycopg2.connect(_resolve_dsn(cfg))
    conn.autocommit = False  # 1 ファイル = 1 トランザクション
    try:
        with conn.cursor() as cur:
            yield conn, cur
    finally:
        conn.close()


def _load_env_file(path: Path, override: bool = True) -> None:
    """Load .env using python-dotenv.

    override=True により .env の値で既存環境変数を上書きし、PostgreSQL 接続情報を最優先化。
    """
    if path.exists():
        load_dotenv(dotenv_path=path, override=override)


def _parse_args(argv: list[str]) -> argparse.Namespace:
    p = argparse.ArgumentParser(
        prog="org_import", description="Organization structure workbook -> PostgreSQL importer"
    )
    p.add_argument("file", nargs="?", type=Path, help="Workbook (.xlsx) to import")
    p.add_argument("--organization", help="Organization id the rows belong to")
    p.add_argument("--actor", default=None, help="User id written to created_by / updated_by")
    p.add_argument("--config", type=Path, default=DEFAULT_CONFIG_PATH, help="Config YAML path")
    p.add_argument("--dry-run", action="store_true", help="Validate and plan only; persist nothing")
    p.add_argument(
        "--auto-resolve", action="store_true", help="Resolve duplicate codes with the recommended strategy"
    )
    p.add_argument("--debug", action="store_true", help="Enable debug logging")
    p.add_argument("--template", type=Path, metavar="OUT", help="Write the import template workbook and exit")
    p.add_argument(
        "--inspect-data", action="store_true", help="Print sheet headers & first rows of FILE then exit"
    )
    return p.parse_args(argv)


def _write_template(out: Path) -> int:
    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_bytes(generate_template())
    print(f"template written: {out}")
    return EXIT_SUCCESS


def _inspect_data(path: Path, cfg: ImportConfig) -> int:
    if not path.exists():
        print(f"inspect: file not found: {path}")
        return EXIT_FATAL
    print(f"FILE: {path.name}")
    try:
        raw = read_raw_sheets(path.read_bytes(), cfg)
    except ExtractionError as e:
        print(f"  read_error: {e}")
        return EXIT_FATAL
    for sname, df in raw.items():
        if df.shape[0] == 0:
            print(f"  SHEET: {sname} (empty)")
            continue
        columns = [normalize_header(c) for c in df.iloc[0].tolist()]
        print(f"  SHEET: {sname} cols={columns} rows={df.shape[0] - 1}")
        sample = []
        for _, row in df.iloc[1:4].iterrows():
            # datetime セルは isoformat で文字列化
            sample.append(
                {k: (v.isoformat() if hasattr(v, "isoformat") else v) for k, v in zip(columns, row.tolist())}
            )
        print("    sample_rows=", json.dumps(sample, ensure_ascii=False, default=str))
    return EXIT_SUCCESS


def _print_findings(result: ImportResult) -> None:
    for line in render_validation_report(result.errors + result.warnings):
        print(line)


def _run(args: argparse.Namespace, cfg: ImportConfig, context: ImportContext, logger: Any) -> ImportResult:
    tracker = ImportProgressTracker(heartbeat_interval=1.0)
    error_log = ErrorLogBuffer(Path(cfg.logs_directory))
    kwargs: dict[str, Any] = {
        "dry_run": args.dry_run,
        "auto_resolve": True if args.auto_resolve else None,
        "tracker": tracker,
        "error_log": error_log,
    }
    with TqdmProgressRenderer().attach(tracker):
        try:
            # DB 接続制御: テスト等で完全に無効化したい場合 DISABLE_DB_CONNECT=1
            if os.getenv("DISABLE_DB_CONNECT") == "1":
                logger.debug("DB connect disabled via DISABLE_DB_CONNECT=1 -> mock mode")
                backend: PersistenceBackend = InMemoryBackend()
                return run_import_file(args.file, context, backend, cfg, **kwargs)
            with _db_connection(cfg) as (conn, cur):
                result = run_import_file(args.file, context, PostgresBackend(cur), cfg, **kwargs)
                if result.status in _COMMIT_STATUSES and not args.dry_run:
                    conn.commit()
                else:
                    conn.rollback()
                return result
        finally:
            tracker.dispose()


def main(argv: list[str] | None = None) -> int:
    # NOTE: 空リスト [] が与えられた場合に sys.argv[1:] が混入しないよう None のときのみ読む
    if argv is None:
        argv = sys.argv[1:]
    args = _parse_args(argv)
    logger = setup_logging(debug=args.debug)
    if args.debug:
        logger.debug("debug mode enabled")

    if args.template is not None:
        return _write_template(args.template)

    # .env を最優先で読み込む (DB 接続パラメータ優先順位保証)
    _load_env_file(Path(".env"), override=True)
    try:
        cfg = load_config(args.config)
    except ConfigError as e:
        logger.error(f"config: {e}")
        return EXIT_FATAL

    if args.file is None:
        logger.error("no input file given")
        return EXIT_FATAL
    if args.inspect_data:
        return _inspect_data(args.file, cfg)
    if not args.organization:
        logger.error("--organization is required for an import")
        return EXIT_FATAL

    context = ImportContext(organization_id=args.organization, actor_id=args.actor)
    logger.info(f"Importing {args.file} for organization {context.organization_id}")
    try:
        result = _run(args, cfg, context, logger)
    except ProcessingError as e:
        logger.error(f"processing: {e}")
        return EXIT_FATAL
    except psycopg2.Error as e:
        logger.error(f"database: {e}")
        return EXIT_FATAL

    _print_findings(result)
    if result.message:
        logger.info(result.message)
    summary_line = render_summary_line(result)
    # log_summary が "SUMMARY " を付与するので先頭を除去
    log_summary(summary_line[len("SUMMARY "):])
    return _EXIT_CODES[result.status]


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
