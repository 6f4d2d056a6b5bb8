from __future__ import annotations

import dataclasses
import logging
import time
from collections.abc import Sequence
from datetime import UTC, datetime
from pathlib import Path

from ..db.backend import (
    DepartmentRecord,
    ImportContext,
    PersistenceBackend,
    PersistenceError,
    PositionRecord,
)
from ..excel.reader import ExtractionError, extract
from ..logging.error_log import ErrorLogBuffer
from ..models.config_models import ImportConfig, default_config
from ..models.error_record import FILE_LEVEL_SHEET, ErrorRecord
from ..models.hierarchy import HierarchyNode
from ..models.processing_result import BatchStatsAccumulator, ImportResult, ImportStatus, WaveStat
from ..models.row_data import DepartmentRow, ExtractionResult, PositionRow
from ..models.validation_error import ErrorType, Severity, SheetType, ValidationError
from .duplicates import apply_resolutions, auto_resolve_all, detect_all
from .hierarchy import WavePlan, enrich, plan_waves
from .progress import ImportProgressTracker
from .upsert import build_preview
from .validator import validate_extraction

logger = logging.getLogger(__name__)

"""Service orchestration for the organization structure import.

run_import() drives one workbook through

    upload -> parse -> validate -> process (wave planning) -> import

reporting every stage boundary to an ImportProgressTracker. Departments are
persisted wave by wave before positions; each wave completes before the next
is issued because later waves reference ids returned by earlier ones.

Findings go to the JSON Lines error log; the returned ImportResult carries
counts, per-wave timings and every finding.
"""

__all__ = [
    "ProcessingError",
    "run_import",
    "run_import_file",
]


class ProcessingError(Exception):
    """Raised for problems outside the data itself (unreadable input path)."""


@dataclasses.dataclass(frozen=True)
class _Plans:
    departments: WavePlan
    positions: WavePlan
    skipped_positions: list[ValidationError]


def _finish(
    status: ImportStatus,
    file_name: str,
    start_time: datetime,
    t0: float,
    *,
    errors: Sequence[ValidationError] = (),
    warnings: Sequence[ValidationError] = (),
    message: str | None = None,
    wave_stats: Sequence[WaveStat] = (),
    **counts: int,
) -> ImportResult:
    return ImportResult(
        status=status,
        file_name=file_name,
        start_time=start_time,
        end_time=datetime.now(UTC),
        elapsed_seconds=time.perf_counter() - t0,
        errors=list(errors),
        warnings=list(warnings),
        message=message,
        wave_stats=list(wave_stats),
        **counts,
    )


def _resolve_duplicates(extraction: ExtractionResult) -> ExtractionResult:
    detection = detect_all(extraction.departments, extraction.positions)
    if not detection.has_duplicates:
        return extraction
    resolutions = auto_resolve_all(detection)
    for res in resolutions:
        logger.info(
            f"duplicate {res.key_field}={res.key} resolved with {res.strategy.value} "
            f"(kept rows {res.kept_source_rows}, removed rows {res.removed_source_rows})"
        )
    return dataclasses.replace(
        extraction,
        departments=apply_resolutions(extraction.departments, resolutions, "dept_code"),
        positions=apply_resolutions(extraction.positions, resolutions, "pos_code"),
    )


def _plan(
    extraction: ExtractionResult,
    existing_departments: set[str],
    existing_positions: set[str],
    config: ImportConfig,
) -> _Plans:
    dept_plan = plan_waves(
        extraction.departments,
        "dept_code",
        "parent_dept_code",
        existing_departments,
        config.limits.max_wave_passes,
        config.parent_sentinels,
        SheetType.DEPARTMENTS,
    )
    blocked_depts = {e.affected_codes[0] for e in dept_plan.unresolved if e.affected_codes}

    # 未解決部署に属するポジションは計画から外す
    positions: list[PositionRow] = []
    skipped: list[ValidationError] = []
    for row in extraction.positions:
        if row.dept_code in blocked_depts:
            skipped.append(
                ValidationError(
                    type=ErrorType.UNRESOLVED_DEPENDENCY,
                    severity=Severity.ERROR,
                    sheet=SheetType.POSITIONS,
                    row=row.source_row,
                    column="dept_code",
                    message=f"department '{row.dept_code}' of position '{row.pos_code}' could not be placed",
                    suggestion="Fix the department hierarchy first",
                    affected_codes=(row.pos_code, row.dept_code),
                )
            )
        else:
            positions.append(row)

    pos_plan = plan_waves(
        positions,
        "pos_code",
        "reports_to_pos_code",
        existing_positions,
        config.limits.max_wave_passes,
        config.parent_sentinels,
        SheetType.POSITIONS,
    )
    return _Plans(departments=dept_plan, positions=pos_plan, skipped_positions=skipped)


def _depth_warnings(departments: Sequence[DepartmentRow], max_depth: int) -> list[ValidationError]:
    """WARNING per department placed deeper than `max_depth` levels (root = level 1).

    Only called on validated rows, so parent links are acyclic. Parents that
    already exist outside the file count as roots.
    """
    nodes = [
        HierarchyNode(id=r.dept_code, code=r.dept_code, name=r.name, parent_id=r.parent_dept_code or None)
        for r in departments
    ]
    rows = {r.dept_code: r.source_row for r in departments}
    out: list[ValidationError] = []
    for node in enrich(nodes):
        depth = node.level + 1
        if depth > max_depth:
            out.append(
                ValidationError(
                    type=ErrorType.BUSINESS_RULE,
                    severity=Severity.WARNING,
                    sheet=SheetType.DEPARTMENTS,
                    row=rows[node.code],
                    column="parent_dept_code",
                    message=f"department '{node.code}' is at depth {depth} (limit {max_depth})",
                    suggestion="Consider flattening the department hierarchy",
                    affected_codes=(node.code,),
                )
            )
    return out


def _department_record(row: DepartmentRow, ids: dict[str, str]) -> DepartmentRecord:
    return DepartmentRecord(
        dept_code=row.dept_code,
        name=row.name,
        parent_id=ids[row.parent_dept_code] if row.parent_dept_code else None,
        metadata=row.metadata,
    )


def _position_record(row: PositionRow, dept_ids: dict[str, str], pos_ids: dict[str, str]) -> PositionRecord:
    return PositionRecord(
        pos_code=row.pos_code,
        title=row.title,
        department_id=dept_ids[row.dept_code],
        reports_to_id=pos_ids[row.reports_to_pos_code] if row.reports_to_pos_code else None,
        is_manager=bool(row.is_manager) if row.is_manager is not None else False,
        is_active=row.is_active if row.is_active is not None else True,
        incumbents_count=row.incumbents_count if row.incumbents_count is not None else 0,
    )


def run_import(
    payload: bytes,
    file_name: str,
    context: ImportContext,
    backend: PersistenceBackend,
    config: ImportConfig | None = None,
    *,
    dry_run: bool = False,
    auto_resolve: bool | None = None,
    tracker: ImportProgressTracker | None = None,
    error_log: ErrorLogBuffer | None = None,
) -> ImportResult:
    """Import one workbook.

    Args:
        payload: Workbook bytes
        file_name: Name used in logs and error records
        context: Organization / actor written to audit columns
        backend: Persistence collaborator
        config: Import configuration (default_config() when omitted)
        dry_run: Validate and plan only, persist nothing
        auto_resolve: Resolve duplicate keys with the recommended strategy
            (config.duplicates.auto_resolve when omitted)
        tracker: Progress tracker to report to
        error_log: Buffer receiving findings (flushed before returning)

    Returns:
        ImportResult. Data problems never raise; they end in
        VALIDATION_FAILED (or PARTIAL with on_wave_limit=partial).
    """
    cfg = config or default_config()
    if tracker is None:
        tracker = ImportProgressTracker()
    if error_log is None:
        error_log = ErrorLogBuffer(Path(cfg.logs_directory))
    resolve_dupes = cfg.duplicates.auto_resolve if auto_resolve is None else auto_resolve
    start_time = datetime.now(UTC)
    t0 = time.perf_counter()

    try:
        return _run(
            payload, file_name, context, backend, cfg, dry_run, resolve_dupes, tracker, error_log, start_time, t0
        )
    finally:
        log_path = error_log.flush()
        if log_path is not None:
            breakdown = " ".join(f"{k}={v}" for k, v in sorted(error_log.written_by_type.items()))
            logger.info(f"error log written: {log_path} ({breakdown})")


def _run(
    payload: bytes,
    file_name: str,
    context: ImportContext,
    backend: PersistenceBackend,
    cfg: ImportConfig,
    dry_run: bool,
    resolve_dupes: bool,
    tracker: ImportProgressTracker,
    error_log: ErrorLogBuffer,
    start_time: datetime,
    t0: float,
) -> ImportResult:
    tracker.start()

    tracker.start_upload(len(payload))
    tracker.update_upload(len(payload), len(payload))
    tracker.complete_upload()

    # --- parse -------------------------------------------------------------
    tracker.start_parsing()
    try:
        extraction = extract(payload, cfg)
    except ExtractionError as e:
        logger.error(f"{file_name}: {e}")
        error_log.append(
            ErrorRecord.create(file_name, FILE_LEVEL_SHEET, -1, type(e).__name__.upper(), str(e))
        )
        tracker.error(str(e))
        return _finish(ImportStatus.FAILED, file_name, start_time, t0, message=str(e))
    total = extraction.total_rows
    tracker.update_parsing(total, total)
    tracker.complete_parsing()
    logger.debug(
        f"{file_name}: parsed departments={len(extraction.departments)} positions={len(extraction.positions)}"
    )

    try:
        existing_dept_ids = backend.fetch_department_ids(context)
        existing_pos_ids = backend.fetch_position_ids(context)
    except PersistenceError as e:
        logger.error(f"{file_name}: {e}")
        tracker.error(str(e))
        return _finish(ImportStatus.FAILED, file_name, start_time, t0, message=str(e))
    existing_depts = set(existing_dept_ids)
    existing_positions = set(existing_pos_ids)

    # --- validate ----------------------------------------------------------
    tracker.start_validation(total)
    if resolve_dupes:
        extraction = _resolve_duplicates(extraction)
        total = extraction.total_rows
    report = validate_extraction(extraction, existing_depts, existing_positions, cfg.parent_sentinels)
    tracker.update_validation(total, total, len(report.errors), len(report.warnings))
    tracker.complete_validation(len(report.errors), len(report.warnings))
    error_log.extend_from_findings(file_name, report.findings)
    for finding in report.warnings:
        logger.warning(f"{finding.sheet.value} row {finding.row}: {finding.message}")
    for finding in report.errors:
        logger.error(f"{finding.sheet.value} row {finding.row}: {finding.message}")
    warnings = list(report.warnings)

    if not report.is_valid:
        message = f"validation failed: {len(report.errors)} errors"
        tracker.error(message)
        return _finish(
            ImportStatus.VALIDATION_FAILED,
            file_name,
            start_time,
            t0,
            errors=report.errors,
            warnings=warnings,
            message=message,
            total_departments=len(extraction.departments),
            total_positions=len(extraction.positions),
        )

    depth_warnings = _depth_warnings(extraction.departments, cfg.limits.max_hierarchy_depth)
    if depth_warnings:
        error_log.extend_from_findings(file_name, depth_warnings)
        for finding in depth_warnings:
            logger.warning(f"{finding.sheet.value} row {finding.row}: {finding.message}")
        warnings += depth_warnings

    # --- process (dependency waves) ------------------------------------------
    tracker.start_processing(total)
    plans = _plan(extraction, existing_depts, existing_positions, cfg)
    tracker.update_processing(total, total)
    tracker.complete_processing()

    unresolved = plans.departments.unresolved + plans.skipped_positions + plans.positions.unresolved
    errors = list(report.errors) + unresolved
    if unresolved:
        error_log.extend_from_findings(file_name, unresolved)
        for finding in unresolved:
            logger.error(f"{finding.sheet.value} row {finding.row}: {finding.message}")
        if not cfg.allows_partial_import:
            message = f"dependency planning failed: {len(unresolved)} rows unresolved"
            tracker.error(message)
            return _finish(
                ImportStatus.VALIDATION_FAILED,
                file_name,
                start_time,
                t0,
                errors=errors,
                warnings=warnings,
                message=message,
                total_departments=len(extraction.departments),
                total_positions=len(extraction.positions),
            )
        logger.warning(f"{file_name}: on_wave_limit=partial, skipping {len(unresolved)} unresolved rows")

    counts = {
        "total_departments": len(extraction.departments),
        "total_positions": len(extraction.positions),
    }

    if dry_run:
        preview = build_preview(extraction, existing_depts, existing_positions, report)
        logger.info(f"{file_name}: dry run {preview.summary()}")
        tracker.complete()
        return _finish(
            ImportStatus.VALIDATED,
            file_name,
            start_time,
            t0,
            errors=errors,
            warnings=warnings,
            message="dry run: nothing persisted",
            departments_created=preview.departments_to_create,
            departments_updated=preview.departments_to_update,
            positions_created=preview.positions_to_create,
            positions_updated=preview.positions_to_update,
            **counts,
        )

    # --- import --------------------------------------------------------------
    to_persist = plans.departments.planned_rows + plans.positions.planned_rows
    tracker.start_importing(to_persist)
    dept_ids = dict(existing_dept_ids)
    pos_ids = dict(existing_pos_ids)
    wave_stats: list[WaveStat] = []
    persisted_depts: set[str] = set()
    persisted_positions: set[str] = set()
    done = 0
    last_wave = "none"
    try:
        for index, wave in enumerate(plans.departments.waves):
            started = time.perf_counter()
            ids = backend.upsert_departments([_department_record(r, dept_ids) for r in wave], context)
            dept_ids.update(ids)
            persisted_depts.update(r.dept_code for r in wave)
            wave_stats.append(WaveStat("departments", index, len(wave), time.perf_counter() - started))
            done += len(wave)
            last_wave = f"departments wave {index}"
            tracker.update_importing(done, to_persist)
        for index, wave in enumerate(plans.positions.waves):
            started = time.perf_counter()
            ids = backend.upsert_positions(
                [_position_record(r, dept_ids, pos_ids) for r in wave], context
            )
            pos_ids.update(ids)
            persisted_positions.update(r.pos_code for r in wave)
            wave_stats.append(WaveStat("positions", index, len(wave), time.perf_counter() - started))
            done += len(wave)
            last_wave = f"positions wave {index}"
            tracker.update_importing(done, to_persist)
    except PersistenceError as e:
        message = f"persistence failed (last completed: {last_wave}): {e}"
        logger.error(f"{file_name}: {message}")
        error_log.append(
            ErrorRecord.create(file_name, FILE_LEVEL_SHEET, -1, "PERSISTENCE_ERROR", message)
        )
        tracker.error(message)
        return _finish(
            ImportStatus.FAILED,
            file_name,
            start_time,
            t0,
            errors=errors,
            warnings=warnings,
            message=message,
            **counts,
        )

    tracker.complete_importing()
    tracker.complete()
    batch_stats = BatchStatsAccumulator()
    for stat in wave_stats:
        batch_stats.add_batch_time(stat.elapsed_seconds)
        logger.debug(f"{stat.entity} wave {stat.wave_index}: rows={stat.rows} elapsed={stat.elapsed_seconds:.3f}s")
    waves, avg_wave, p95_wave = batch_stats.get_stats()
    logger.debug(f"{file_name}: waves={waves} avg_wave_sec={avg_wave:.3f} p95_wave_sec={p95_wave:.3f}")

    status = ImportStatus.PARTIAL if unresolved else ImportStatus.SUCCESS
    return _finish(
        status,
        file_name,
        start_time,
        t0,
        errors=errors,
        warnings=warnings,
        wave_stats=wave_stats,
        departments_created=len(persisted_depts - existing_depts),
        departments_updated=len(persisted_depts & existing_depts),
        positions_created=len(persisted_positions - existing_positions),
        positions_updated=len(persisted_positions & existing_positions),
        **counts,
    )


def run_import_file(
    path: Path,
    context: ImportContext,
    backend: PersistenceBackend,
    config: ImportConfig | None = None,
    **kwargs: object,
) -> ImportResult:
    """Read `path` and pass its bytes to run_import().

    Raises:
        ProcessingError: when the file cannot be read
    """
    if not path.exists():
        raise ProcessingError(f"file not found: {path}")
    try:
        payload = path.read_bytes()
    except OSError as e:
        raise ProcessingError(f"cannot read {path}: {e}") from e
    return run_import(payload, path.name, context, backend, config, **kwargs)  # type: ignore[arg-type]
