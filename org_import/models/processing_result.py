from __future__ import annotations

import statistics
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from .validation_error import ValidationError

"""Processing result models for an import run.

ImportResult aggregates what happened to one workbook: counts per entity and
operation, per-wave persistence timings, and every finding reported on the way.
"""

__all__ = [
    "BatchStatsAccumulator",
    "ImportResult",
    "ImportStatus",
    "WaveStat",
]


class ImportStatus(Enum):
    """Outcome of an import run.

    - SUCCESS: every row persisted
    - VALIDATED: dry run finished without blocking errors (nothing persisted)
    - VALIDATION_FAILED: blocking findings, nothing persisted
    - PARTIAL: some waves persisted, unresolved rows skipped (on_wave_limit=partial)
    - FAILED: persistence failed mid-run
    """
    SUCCESS = "success"
    VALIDATED = "validated"
    VALIDATION_FAILED = "validation_failed"
    PARTIAL = "partial"
    FAILED = "failed"


@dataclass(frozen=True)
class WaveStat:
    """Per-wave persistence statistics."""
    entity: str  # departments / positions
    wave_index: int
    rows: int
    elapsed_seconds: float


@dataclass(frozen=True)
class ImportResult:
    status: ImportStatus
    file_name: str
    start_time: datetime
    end_time: datetime
    elapsed_seconds: float
    departments_created: int = 0
    departments_updated: int = 0
    positions_created: int = 0
    positions_updated: int = 0
    total_departments: int = 0
    total_positions: int = 0
    errors: list[ValidationError] = field(default_factory=list)
    warnings: list[ValidationError] = field(default_factory=list)
    wave_stats: list[WaveStat] = field(default_factory=list)
    message: str | None = None

    @property
    def persisted_rows(self) -> int:
        return (
            self.departments_created
            + self.departments_updated
            + self.positions_created
            + self.positions_updated
        )

    @property
    def throughput_rows_per_sec(self) -> float:
        if self.elapsed_seconds <= 0:
            return 0.0
        return self.persisted_rows / self.elapsed_seconds


class BatchStatsAccumulator:
    """Helper class to accumulate batch timing statistics.

    Collects individual batch timing data and calculates summary statistics.
    """

    def __init__(self) -> None:
        self.batch_times: list[float] = []

    def add_batch_time(self, elapsed_seconds: float) -> None:
        """Add a batch timing measurement."""
        self.batch_times.append(elapsed_seconds)

    def get_stats(self) -> tuple[int, float, float]:
        """Calculate batch statistics.

        Returns:
            tuple: (total_batches, avg_batch_seconds, p95_batch_seconds)
        """
        if not self.batch_times:
            return (0, 0.0, 0.0)

        total_batches = len(self.batch_times)
        avg_batch_seconds = statistics.mean(self.batch_times)

        if total_batches == 1:
            p95_batch_seconds = self.batch_times[0]
        else:
            p95_batch_seconds = statistics.quantiles(
                self.batch_times, n=20, method='inclusive'
            )[18]  # 95th percentile (19th out of 20 quantiles, 0-indexed)

        return (total_batches, avg_batch_seconds, p95_batch_seconds)
