from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest

from org_import.services.progress import (
    Completed,
    Failed,
    ImportProgressTracker,
    ProgressState,
    Reset,
    Stage,
    StageCompleted,
    StageStarted,
    StageUpdated,
    Started,
    TqdmProgressRenderer,
    format_bytes,
    format_speed,
    format_time_remaining,
    get_stage_label,
    is_tty_enabled,
    reduce,
)


class FakeClock:
    def __init__(self, now: float = 100.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def test_upload_scenario_ends_complete_with_timer_released():
    clock = FakeClock()
    tracker = ImportProgressTracker(clock=clock, heartbeat_interval=60.0)
    tracker.start()
    tracker.start_upload(1000)
    assert tracker.timer_active
    clock.advance(1)
    tracker.update_upload(500, 1000)
    assert tracker.state.progress == 50
    clock.advance(1)
    tracker.update_upload(1000, 1000)
    tracker.complete()

    state = tracker.state
    assert state.stage is Stage.COMPLETE
    assert state.progress == 100
    assert not tracker.timer_active


def test_error_is_terminal_and_ignores_later_events():
    tracker = ImportProgressTracker(clock=FakeClock(), heartbeat_interval=60.0)
    tracker.start()
    tracker.start_parsing(10)
    tracker.error("boom")
    assert tracker.state.stage is Stage.ERROR
    assert tracker.state.message == "boom"
    assert not tracker.timer_active

    tracker.start_validation(5)
    tracker.complete()
    assert tracker.state.stage is Stage.ERROR

    tracker.reset()
    assert tracker.state == ProgressState()


def test_speed_is_stage_local_and_eta_operation_global():
    clock = FakeClock(0.0)
    tracker = ImportProgressTracker(clock=clock)
    tracker.start()
    clock.advance(10)  # operation 全体は 10 秒経過
    tracker.start_importing(100)
    clock.advance(2)
    tracker.update_importing(24, 100)
    state = tracker.state
    assert state.speed == 12.0  # 24 rows / 2 s (stage)
    # 12 s / 24 rows = 0.5 s per row, 76 rows left
    assert state.estimated_time_remaining == 38
    assert state.message == "Importing... 24 of 100 items"


def test_validation_stage_counts():
    tracker = ImportProgressTracker(clock=FakeClock())
    tracker.start()
    tracker.start_validation(10)
    assert (tracker.state.errors, tracker.state.warnings) == (0, 0)
    tracker.update_validation(5, 10, errors=2, warnings=1)
    tracker.complete_validation(errors=3, warnings=1)
    assert tracker.state.stage is Stage.VALIDATING
    assert tracker.state.progress == 100
    assert (tracker.state.errors, tracker.state.warnings) == (3, 1)
    assert tracker.state.message == "Validation complete"


def test_reduce_is_pure():
    state = reduce(ProgressState(), Started(at=1.0))
    started = reduce(state, StageStarted(stage=Stage.PARSING, total=3, at=1.0))
    updated = reduce(started, StageUpdated(stage=Stage.PARSING, current=1, total=3, at=2.0))
    assert started.progress == 0
    assert updated.progress == 33
    assert updated.message == "Reading... 1 of 3 rows"
    assert started.current_item == 0  # 元の state は変わらない


@pytest.mark.parametrize(
    ("current", "total", "expected"),
    [(0, 0, 0), (5, 0, 0), (1, 8, 13), (1, 200, 1), (150, 100, 100), (-5, 100, 0)],
)
def test_progress_percent_rounding_and_clamping(current, total, expected):
    state = reduce(ProgressState(), Started(at=0.0))
    state = reduce(state, StageUpdated(stage=Stage.PROCESSING, current=current, total=total, at=1.0))
    assert state.progress == expected


def test_reduce_terminal_and_reset():
    done = reduce(reduce(ProgressState(), Started(at=0.0)), Completed(at=1.0))
    assert reduce(done, StageStarted(stage=Stage.PARSING, total=1, at=2.0)) is done
    assert reduce(done, Failed(message="x", at=2.0)) is done
    assert reduce(done, Reset(at=3.0)) == ProgressState()
    assert reduce(ProgressState(), StageCompleted(stage=Stage.PARSING, at=0.0)).progress == 100


def test_subscribe_immediate_call_and_idempotent_unsubscribe():
    tracker = ImportProgressTracker(clock=FakeClock())
    seen: list[Stage] = []
    unsubscribe = tracker.subscribe(lambda s: seen.append(s.stage))
    assert seen == [Stage.IDLE]
    tracker.start()
    tracker.start_upload(10)
    unsubscribe()
    unsubscribe()
    tracker.complete_upload()
    assert seen == [Stage.IDLE, Stage.IDLE, Stage.UPLOADING]


def test_ignored_events_do_not_notify():
    tracker = ImportProgressTracker(clock=FakeClock())
    tracker.start()
    tracker.complete()
    calls = []
    tracker.subscribe(calls.append)
    tracker.start_parsing(1)
    assert len(calls) == 1


def test_dispose_stops_timer_and_drops_subscribers():
    tracker = ImportProgressTracker(clock=FakeClock(), heartbeat_interval=60.0)
    calls = []
    tracker.subscribe(calls.append)
    tracker.start()
    tracker.start_processing(5)
    assert tracker.timer_active
    tracker.dispose()
    assert not tracker.timer_active
    tracker.update_processing(1, 5)
    assert len(calls) == 3


def test_heartbeat_renotifies_active_stage():
    tracker = ImportProgressTracker(clock=FakeClock(), heartbeat_interval=60.0)
    calls = []
    tracker.subscribe(calls.append)
    tracker.start()
    tracker.start_parsing(5)
    before = len(calls)
    tracker._heartbeat()  # Timer のコールバックを直接呼ぶ
    assert len(calls) == before + 1
    assert tracker.timer_active
    tracker.dispose()


def test_heartbeat_does_not_deliver_stale_state_after_completion():
    tracker = ImportProgressTracker(clock=FakeClock(), heartbeat_interval=60.0)
    first, second = [], []

    def finishes_on_heartbeat(state: ProgressState) -> None:
        first.append(state)
        # heartbeat 配信中に main 側で complete() された状況を再現
        if state.stage is Stage.PARSING and len(first) > 3:
            tracker.complete()

    tracker.subscribe(finishes_on_heartbeat)
    tracker.subscribe(second.append)
    tracker.start()
    tracker.start_parsing(5)
    tracker._heartbeat()

    assert tracker.state.stage is Stage.COMPLETE
    assert second[-1].stage is Stage.COMPLETE
    assert [s.stage for s in second].count(Stage.COMPLETE) == 1
    assert not tracker.timer_active


@pytest.mark.parametrize(
    ("seconds", "expected"),
    [(None, ""), (0, ""), (45, "45s remaining"), (90, "1m 30s remaining"), (120, "2m remaining"),
     (3725, "1h 2m remaining")],
)
def test_format_time_remaining(seconds, expected):
    assert format_time_remaining(seconds) == expected


def test_format_speed_and_bytes():
    assert format_speed(None) == ""
    assert format_speed(0.5, "rows") == "30 rows/min"
    assert format_speed(12.5, "rows") == "12.5 rows/s"
    assert format_bytes(0) == "0 Bytes"
    assert format_bytes(1536) == "1.5 KB"
    assert format_bytes(10 * 1024 * 1024) == "10 MB"


def test_stage_labels():
    assert get_stage_label(Stage.PARSING) == "Reading"
    assert get_stage_label(Stage.IMPORTING) == "Importing"


def test_is_tty_enabled_returns_stdout_isatty():
    with patch("sys.stdout.isatty", return_value=True):
        assert is_tty_enabled() is True
    with patch("sys.stdout.isatty", return_value=False):
        assert is_tty_enabled() is False


class TestTqdmProgressRenderer:
    def test_disabled_renderer_never_subscribes(self):
        tracker = ImportProgressTracker(clock=FakeClock())
        with patch("org_import.services.progress.tqdm") as mock_tqdm:
            renderer = TqdmProgressRenderer(enabled=False).attach(tracker)
            tracker.start()
            tracker.start_upload(10)
            renderer.close()
        mock_tqdm.assert_not_called()

    def test_one_bar_per_stage(self):
        tracker = ImportProgressTracker(clock=FakeClock())
        bars = [MagicMock(), MagicMock()]
        with patch("org_import.services.progress.tqdm", side_effect=bars) as mock_tqdm:
            with TqdmProgressRenderer(enabled=True).attach(tracker):
                tracker.start()
                tracker.start_parsing(4)
                tracker.update_parsing(2, 4)
                tracker.start_validation(4)
                tracker.complete()
        assert mock_tqdm.call_count == 2
        first_kwargs = mock_tqdm.call_args_list[0].kwargs
        assert first_kwargs["desc"] == "Reading"
        assert first_kwargs["unit"] == "row"
        assert first_kwargs["ascii"] is True
        assert bars[0].n == 2
        bars[0].close.assert_called()
        bars[1].close.assert_called()

    def test_close_unsubscribes(self):
        tracker = ImportProgressTracker(clock=FakeClock())
        with patch("org_import.services.progress.tqdm") as mock_tqdm:
            renderer = TqdmProgressRenderer(enabled=True).attach(tracker)
            renderer.close()
            tracker.start()
            tracker.start_upload(10)
        mock_tqdm.assert_not_called()
