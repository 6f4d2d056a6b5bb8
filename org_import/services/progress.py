from __future__ import annotations

import dataclasses
import math
import sys
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from tqdm import tqdm
from tqdm.std import tqdm as TqdmType

"""Import progress tracking.

Three layers:

- `reduce(state, event)`: pure state machine over ProgressState. Events carry
  their own timestamps, so the reducer needs no clock.
- `ImportProgressTracker`: owns the current state, stamps events with an
  injectable clock, notifies subscribers, and runs an optional heartbeat timer.
- `TqdmProgressRenderer`: a subscriber drawing a tqdm bar per stage (TTY only).

Stages: idle -> uploading -> parsing -> validating -> processing -> importing
-> complete | error. complete / error are terminal: later events are ignored
until reset.

speed は stage 開始からの件数/秒、ETA は operation 開始からの平均で算出。
"""

__all__ = [
    "ProgressState",
    "Stage",
    "ImportProgressTracker",
    "TqdmProgressRenderer",
    "format_bytes",
    "format_speed",
    "format_time_remaining",
    "get_stage_label",
    "is_tty_enabled",
    "reduce",
]


class Stage(Enum):
    IDLE = "idle"
    UPLOADING = "uploading"
    PARSING = "parsing"
    VALIDATING = "validating"
    PROCESSING = "processing"
    IMPORTING = "importing"
    COMPLETE = "complete"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (Stage.COMPLETE, Stage.ERROR)


ACTIVE_STAGES = (
    Stage.UPLOADING,
    Stage.PARSING,
    Stage.VALIDATING,
    Stage.PROCESSING,
    Stage.IMPORTING,
)

_STAGE_LABELS = {
    Stage.IDLE: "Ready",
    Stage.UPLOADING: "Uploading",
    Stage.PARSING: "Reading",
    Stage.VALIDATING: "Validating",
    Stage.PROCESSING: "Processing",
    Stage.IMPORTING: "Importing",
    Stage.COMPLETE: "Complete",
    Stage.ERROR: "Error",
}

_START_MESSAGES = {
    Stage.UPLOADING: "Uploading file...",
    Stage.PARSING: "Reading workbook...",
    Stage.VALIDATING: "Validating data...",
    Stage.PROCESSING: "Processing data...",
    Stage.IMPORTING: "Saving to database...",
}

_COMPLETE_MESSAGES = {
    Stage.UPLOADING: "Upload complete",
    Stage.PARSING: "Parsing complete",
    Stage.VALIDATING: "Validation complete",
    Stage.PROCESSING: "Processing complete",
    Stage.IMPORTING: "Import complete",
}

_UNITS = {
    Stage.UPLOADING: "B",
    Stage.PARSING: "row",
    Stage.VALIDATING: "row",
    Stage.PROCESSING: "row",
    Stage.IMPORTING: "row",
}


def get_stage_label(stage: Stage) -> str:
    return _STAGE_LABELS[stage]


@dataclass(frozen=True)
class ProgressState:
    """Snapshot of an import's progress. Subscribers must treat it as read-only."""
    stage: Stage = Stage.IDLE
    progress: int = 0  # 0-100
    current_item: int | None = None
    total_items: int | None = None
    speed: float | None = None  # items / second, stage-local
    estimated_time_remaining: int | None = None  # seconds
    errors: int = 0
    warnings: int = 0
    message: str | None = None
    started_at: float | None = None
    stage_started_at: float | None = None


# --- events ---------------------------------------------------------------

@dataclass(frozen=True)
class Started:
    at: float


@dataclass(frozen=True)
class StageStarted:
    stage: Stage
    total: int | None
    at: float


@dataclass(frozen=True)
class StageUpdated:
    stage: Stage
    current: int
    total: int
    at: float
    errors: int | None = None
    warnings: int | None = None


@dataclass(frozen=True)
class StageCompleted:
    stage: Stage
    at: float
    errors: int | None = None
    warnings: int | None = None


@dataclass(frozen=True)
class Completed:
    at: float


@dataclass(frozen=True)
class Failed:
    message: str
    at: float


@dataclass(frozen=True)
class Reset:
    at: float


ProgressEvent = Started | StageStarted | StageUpdated | StageCompleted | Completed | Failed | Reset


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _percent(current: int, total: int | None) -> int:
    if not total or total <= 0:
        return 0
    return max(0, min(100, _round_half_up(current / total * 100)))


def _speed(current: int, state: ProgressState, at: float) -> float | None:
    if not current or state.stage_started_at is None:
        return None
    elapsed = at - state.stage_started_at
    if elapsed <= 0:
        return None
    return math.floor(current / elapsed * 10 + 0.5) / 10


def _eta(current: int, total: int | None, state: ProgressState, at: float) -> int | None:
    if not current or not total or state.started_at is None:
        return None
    elapsed = at - state.started_at
    per_item = elapsed / current
    remaining = max(0, total - current)
    return math.ceil(per_item * remaining)


def _update_message(stage: Stage, current: int, total: int, progress: int) -> str:
    if stage is Stage.UPLOADING:
        return f"Uploading... {progress}%"
    unit = "rows" if stage is Stage.PARSING else "items"
    return f"{get_stage_label(stage)}... {current} of {total} {unit}"


def reduce(state: ProgressState, event: ProgressEvent) -> ProgressState:
    """Pure transition function. Returns `state` itself when the event is ignored."""
    if isinstance(event, Reset):
        return ProgressState()
    if state.stage.is_terminal:
        return state

    if isinstance(event, Started):
        return ProgressState(started_at=event.at, stage_started_at=event.at)

    if isinstance(event, StageStarted):
        extra: dict[str, Any] = {}
        if event.stage is Stage.VALIDATING:
            extra = {"errors": 0, "warnings": 0}
        return dataclasses.replace(
            state,
            stage=event.stage,
            progress=0,
            current_item=0,
            total_items=event.total,
            speed=None,
            estimated_time_remaining=None,
            message=_START_MESSAGES[event.stage],
            started_at=state.started_at if state.started_at is not None else event.at,
            stage_started_at=event.at,
            **extra,
        )

    if isinstance(event, StageUpdated):
        progress = _percent(event.current, event.total)
        return dataclasses.replace(
            state,
            stage=event.stage,
            progress=progress,
            current_item=event.current,
            total_items=event.total,
            speed=_speed(event.current, state, event.at),
            estimated_time_remaining=_eta(event.current, event.total, state, event.at),
            message=_update_message(event.stage, event.current, event.total, progress),
            errors=state.errors if event.errors is None else event.errors,
            warnings=state.warnings if event.warnings is None else event.warnings,
        )

    if isinstance(event, StageCompleted):
        return dataclasses.replace(
            state,
            stage=event.stage,
            progress=100,
            estimated_time_remaining=0,
            message=_COMPLETE_MESSAGES[event.stage],
            errors=state.errors if event.errors is None else event.errors,
            warnings=state.warnings if event.warnings is None else event.warnings,
        )

    if isinstance(event, Completed):
        return dataclasses.replace(
            state, stage=Stage.COMPLETE, progress=100, estimated_time_remaining=0, message="All done!"
        )

    if isinstance(event, Failed):
        return dataclasses.replace(state, stage=Stage.ERROR, message=event.message)

    raise TypeError(f"unknown progress event: {event!r}")


ProgressCallback = Callable[[ProgressState], None]


class ImportProgressTracker:
    """Observable wrapper around `reduce`.

    Subscribers are called once with the current state when they subscribe
    and then after every state change. With `heartbeat_interval` set, a
    daemon timer re-notifies subscribers while a stage is active so that
    renderers can refresh elapsed-time displays. complete() / error() /
    reset() / dispose() cancel the timer.
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        heartbeat_interval: float | None = None,
    ) -> None:
        self._clock = clock
        self._heartbeat_interval = heartbeat_interval
        self._state = ProgressState()
        self._subscribers: list[ProgressCallback] = []
        self._lock = threading.RLock()
        # subscriber への通知はスレッドをまたいで直列化する (tqdm バーは共有)
        self._notify_lock = threading.RLock()
        self._timer: threading.Timer | None = None
        self._disposed = False

    @property
    def state(self) -> ProgressState:
        return self._state

    @property
    def timer_active(self) -> bool:
        return self._timer is not None

    def subscribe(self, callback: ProgressCallback) -> Callable[[], None]:
        """Register a callback; returns an idempotent unsubscribe function."""
        with self._lock:
            self._subscribers.append(callback)
            current = self._state
        callback(current)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def dispatch(self, event: ProgressEvent) -> ProgressState:
        with self._lock:
            previous = self._state
            self._state = reduce(previous, event)
            changed = self._state is not previous or isinstance(event, Reset)
            if self._state.stage.is_terminal or isinstance(event, Reset):
                self._cancel_timer()
            elif self._state.stage in ACTIVE_STAGES:
                self._ensure_timer()
            current = self._state
            subscribers = list(self._subscribers)
        if changed:
            with self._notify_lock:
                for callback in subscribers:
                    callback(current)
        return current

    # --- heartbeat ---------------------------------------------------------

    def _ensure_timer(self) -> None:
        if self._heartbeat_interval is None or self._timer is not None or self._disposed:
            return
        timer = threading.Timer(self._heartbeat_interval, self._heartbeat)
        timer.daemon = True
        self._timer = timer
        timer.start()

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _heartbeat(self) -> None:
        with self._lock:
            self._timer = None
            if self._disposed or self._state.stage not in ACTIVE_STAGES:
                return
            self._ensure_timer()
            subscribers = list(self._subscribers)
        with self._notify_lock:
            for callback in subscribers:
                # 通知直前に読み直す: complete() と競合した古い状態は流さない
                with self._lock:
                    current = self._state
                    if self._disposed or current.stage not in ACTIVE_STAGES:
                        return
                callback(current)

    # --- lifecycle -------------------------------------------------------------

    def start(self) -> None:
        self.dispatch(Started(at=self._clock()))

    def complete(self) -> None:
        self.dispatch(Completed(at=self._clock()))

    def error(self, message: str) -> None:
        self.dispatch(Failed(message=message, at=self._clock()))

    def reset(self) -> None:
        self.dispatch(Reset(at=self._clock()))

    def dispose(self) -> None:
        """Stop the timer and drop every subscriber."""
        with self._lock:
            self._disposed = True
            self._cancel_timer()
            self._subscribers.clear()

    # --- stages ----------------------------------------------------------------

    def _start_stage(self, stage: Stage, total: int | None) -> None:
        self.dispatch(StageStarted(stage=stage, total=total, at=self._clock()))

    def _update_stage(
        self,
        stage: Stage,
        current: int,
        total: int,
        errors: int | None = None,
        warnings: int | None = None,
    ) -> None:
        self.dispatch(
            StageUpdated(
                stage=stage, current=current, total=total, at=self._clock(), errors=errors, warnings=warnings
            )
        )

    def _complete_stage(self, stage: Stage, errors: int | None = None, warnings: int | None = None) -> None:
        self.dispatch(StageCompleted(stage=stage, at=self._clock(), errors=errors, warnings=warnings))

    def start_upload(self, total_bytes: int | None = None) -> None:
        self._start_stage(Stage.UPLOADING, total_bytes)

    def update_upload(self, bytes_uploaded: int, total_bytes: int) -> None:
        self._update_stage(Stage.UPLOADING, bytes_uploaded, total_bytes)

    def complete_upload(self) -> None:
        self._complete_stage(Stage.UPLOADING)

    def start_parsing(self, total_rows: int | None = None) -> None:
        self._start_stage(Stage.PARSING, total_rows)

    def update_parsing(self, rows_parsed: int, total_rows: int) -> None:
        self._update_stage(Stage.PARSING, rows_parsed, total_rows)

    def complete_parsing(self) -> None:
        self._complete_stage(Stage.PARSING)

    def start_validation(self, total_items: int | None = None) -> None:
        self._start_stage(Stage.VALIDATING, total_items)

    def update_validation(self, items_validated: int, total_items: int, errors: int = 0, warnings: int = 0) -> None:
        self._update_stage(Stage.VALIDATING, items_validated, total_items, errors, warnings)

    def complete_validation(self, errors: int = 0, warnings: int = 0) -> None:
        self._complete_stage(Stage.VALIDATING, errors, warnings)

    def start_processing(self, total_items: int | None = None) -> None:
        self._start_stage(Stage.PROCESSING, total_items)

    def update_processing(self, items_processed: int, total_items: int) -> None:
        self._update_stage(Stage.PROCESSING, items_processed, total_items)

    def complete_processing(self) -> None:
        self._complete_stage(Stage.PROCESSING)

    def start_importing(self, total_items: int | None = None) -> None:
        self._start_stage(Stage.IMPORTING, total_items)

    def update_importing(self, items_imported: int, total_items: int) -> None:
        self._update_stage(Stage.IMPORTING, items_imported, total_items)

    def complete_importing(self) -> None:
        self._complete_stage(Stage.IMPORTING)


# --- display helpers ------------------------------------------------------

def format_time_remaining(seconds: int | None) -> str:
    """90 -> "1m 30s remaining"; None or < 1 -> ""."""
    if seconds is None or seconds < 1:
        return ""
    if seconds < 60:
        return f"{seconds}s remaining"
    minutes, rest = divmod(seconds, 60)
    if minutes < 60:
        return f"{minutes}m {rest}s remaining" if rest else f"{minutes}m remaining"
    hours, minutes = divmod(minutes, 60)
    return f"{hours}h {minutes}m remaining"


def format_speed(speed: float | None, unit: str = "items") -> str:
    if speed is None:
        return ""
    if speed < 1:
        return f"{_round_half_up(speed * 60)} {unit}/min"
    return f"{speed:g} {unit}/s"


def format_bytes(num_bytes: int, decimals: int = 2) -> str:
    if num_bytes <= 0:
        return "0 Bytes"
    sizes = ["Bytes", "KB", "MB", "GB"]
    i = min(int(math.floor(math.log(num_bytes, 1024))), len(sizes) - 1)
    value = round(num_bytes / 1024**i, max(decimals, 0))
    return f"{value:g} {sizes[i]}"


# --- tqdm renderer -------------------------------------------------------

def is_tty_enabled() -> bool:
    """Check if TTY output is enabled.

    Returns:
        True if stdout is a TTY and progress should be displayed, False otherwise
    """
    return sys.stdout.isatty()


class TqdmProgressRenderer:
    """Renders tracker states as one tqdm bar per stage.

    In non-TTY environments (CI) nothing is drawn, to avoid ANSI control
    sequence spam in logs.
    """

    def __init__(self, *, enabled: bool | None = None) -> None:
        self.enabled = is_tty_enabled() if enabled is None else enabled
        self.pbar: TqdmType[Any] | None = None
        self._stage: Stage | None = None
        self._unsubscribe: Callable[[], None] | None = None

    def attach(self, tracker: ImportProgressTracker) -> TqdmProgressRenderer:
        if self.enabled:
            self._unsubscribe = tracker.subscribe(self)
        return self

    def __call__(self, state: ProgressState) -> None:
        if state.stage.is_terminal:
            self._close_bar()
            self._stage = state.stage
            return
        if state.stage not in ACTIVE_STAGES:
            return
        if state.stage is not self._stage or self.pbar is None:
            self._close_bar()
            self._stage = state.stage
            self.pbar = tqdm(
                total=state.total_items or 100,
                desc=get_stage_label(state.stage),
                unit=_UNITS[state.stage],
                leave=False,
                ncols=80,  # Standard width for consistency
                ascii=True,  # ASCII chars for better compatibility
            )
        if state.total_items:
            self.pbar.total = state.total_items
            self.pbar.n = min(state.current_item or 0, state.total_items)
            if state.progress == 100:
                self.pbar.n = state.total_items
        else:
            self.pbar.n = state.progress
        postfix = {}
        if state.speed is not None:
            postfix["speed"] = format_speed(state.speed, _UNITS[state.stage])
        eta = format_time_remaining(state.estimated_time_remaining)
        if eta:
            postfix["eta"] = eta
        if postfix:
            self.pbar.set_postfix(**postfix, refresh=False)
        self.pbar.refresh()

    def _close_bar(self) -> None:
        if self.pbar is not None:
            self.pbar.close()
            self.pbar = None

    def close(self) -> None:
        """Unsubscribe and close the current bar."""
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self._close_bar()

    def __enter__(self) -> TqdmProgressRenderer:
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()
