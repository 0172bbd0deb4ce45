import math
import threading
import time

import pytest

from conftest import BASE_MS, build_ticks
from replay.engine import ManualFrameScheduler, ReplayCallbacks, ReplayEngine, TimerFrameScheduler


class Recorder:
    def __init__(self):
        self.events = []

    def callbacks(self, on_tick=None):
        def _tick(tick, index):
            self.events.append(("tick", index))
            if on_tick is not None:
                on_tick(tick, index)

        return ReplayCallbacks(
            on_tick=_tick,
            on_candles=lambda candles: self.events.append(("candles", len(candles))),
            on_state=lambda state: self.events.append(("state", state)),
        )

    def states(self):
        return [item for kind, item in self.events if kind == "state"]


def _engine(prices, step_ms=60_000, speed=1, on_tick=None, timeframe="1m"):
    recorder = Recorder()
    scheduler = ManualFrameScheduler()
    engine = ReplayEngine(
        build_ticks(prices, step_ms=step_ms),
        recorder.callbacks(on_tick),
        scheduler=scheduler,
        timeframe=timeframe,
        speed=speed,
    )
    return engine, scheduler, recorder


def test_initial_state_is_emitted_on_construction():
    engine, _, recorder = _engine([100, 101])
    assert len(recorder.events) == 1
    state = recorder.states()[0]
    assert (state.current_tick_index, state.total_ticks, state.is_playing) == (0, 2, False)
    assert state.progress == 0.0
    assert engine.last_tick is None


def test_step_processes_one_tick_then_candles_then_state():
    engine, _, recorder = _engine([100, 101])
    recorder.events.clear()

    assert engine.step() is True
    assert [kind for kind, _ in recorder.events] == ["tick", "candles", "state"]
    state = recorder.states()[-1]
    assert state.current_tick_index == 1
    assert state.current_time == BASE_MS
    assert state.progress == pytest.approx(0.5)
    assert engine.last_tick.price == 100.0


def test_step_at_end_is_a_noop():
    engine, _, recorder = _engine([100])
    assert engine.step() is True
    recorder.events.clear()
    assert engine.step() is False
    assert recorder.events == []
    assert engine.get_state().at_end


def test_play_batches_speed_ticks_per_frame_and_stops_at_end():
    engine, scheduler, recorder = _engine([1, 2, 3, 4, 5], speed=2)
    engine.play()
    assert engine.is_playing
    assert scheduler.pending == 1

    assert scheduler.run_next() is True
    assert engine.current_index == 2
    frames = scheduler.run_until_idle()
    assert frames == 2
    assert engine.current_index == 5
    assert not engine.is_playing
    assert recorder.states()[-1].is_playing is False
    assert len(engine.get_candles()) == 5


def test_play_at_end_does_nothing():
    engine, scheduler, _ = _engine([1])
    engine.step()
    engine.play()
    assert not engine.is_playing
    assert scheduler.pending == 0


def test_pause_cancels_pending_frame():
    engine, scheduler, _ = _engine([1, 2, 3])
    engine.play()
    engine.pause()
    assert scheduler.pending == 0
    assert engine.current_index == 0


def test_pause_from_tick_callback_stops_the_batch():
    holder = {}

    def on_tick(tick, index):
        if index == 1:
            holder["engine"].pause()

    engine, scheduler, _ = _engine([1, 2, 3, 4, 5], speed=10, on_tick=on_tick)
    holder["engine"] = engine
    engine.play()
    scheduler.run_next()

    assert engine.current_index == 2
    assert not engine.is_playing
    assert scheduler.pending == 0


def test_reentrant_play_does_not_double_schedule():
    holder = {}

    def on_tick(tick, index):
        holder["engine"].play()

    engine, scheduler, _ = _engine([1, 2, 3, 4], speed=1, on_tick=on_tick)
    holder["engine"] = engine
    engine.play()
    scheduler.run_next()
    assert scheduler.pending == 1
    scheduler.run_until_idle()
    assert engine.current_index == 4


def test_seek_from_tick_callback_restarts_the_batch():
    holder = {"seeked": False}

    def on_tick(tick, index):
        if index == 2 and not holder["seeked"]:
            holder["seeked"] = True
            holder["engine"].seek_to_index(0)

    engine, scheduler, _ = _engine([1, 2, 3, 4, 5], speed=10, on_tick=on_tick)
    holder["engine"] = engine
    engine.play()
    scheduler.run_next()
    assert engine.current_index == 0
    assert engine.is_playing
    assert scheduler.pending == 1

    scheduler.run_until_idle()
    assert engine.current_index == 5
    assert not engine.is_playing


def test_seek_is_idempotent():
    engine, _, _ = _engine(list(range(10)), step_ms=20_000)
    engine.seek_to_progress(0.5)
    candles, state = engine.get_candles(), engine.get_state()
    engine.seek_to_progress(0.5)
    assert engine.get_candles() == candles
    assert engine.get_state() == state
    assert state.current_tick_index == 5


def test_seek_matches_stepping():
    stepped, _, _ = _engine(list(range(12)), step_ms=25_000)
    for _ in range(7):
        stepped.step()
    seeked, _, _ = _engine(list(range(12)), step_ms=25_000)
    seeked.seek_to_index(7)
    assert seeked.get_candles() == stepped.get_candles()
    assert seeked.get_state() == stepped.get_state()


@pytest.mark.parametrize(
    "pct, expected",
    [(-0.5, 0), (0.0, 0), (0.25, 1), (1.0, 4), (3.0, 4), (math.nan, 0), (math.inf, 4)],
)
def test_seek_to_progress_clamps(pct, expected):
    engine, _, _ = _engine([1, 2, 3, 4])
    engine.seek_to_progress(pct)
    assert engine.current_index == expected


def test_seek_while_playing_keeps_playing():
    engine, scheduler, _ = _engine([1, 2, 3, 4])
    engine.play()
    engine.seek_to_index(2)
    assert engine.is_playing
    assert scheduler.pending == 1
    engine.seek_to_index(4)
    assert not engine.is_playing
    assert scheduler.pending == 0


def test_step_back_walks_candle_boundaries():
    # Two ticks per one-minute candle.
    engine, _, _ = _engine([1, 2, 3, 4, 5, 6], step_ms=30_000)
    engine.seek_to_index(6)
    assert len(engine.get_candles()) == 3

    engine.step_back()
    assert engine.current_index == 4
    assert len(engine.get_candles()) == 2
    engine.step_back()
    assert engine.current_index == 2
    engine.step_back()
    assert engine.current_index == 0
    assert engine.get_candles() == []
    engine.step_back()
    assert engine.current_index == 0


def test_step_back_inside_a_candle_returns_to_its_start():
    engine, _, _ = _engine([1, 2, 3, 4, 5], step_ms=30_000)
    engine.seek_to_index(3)
    engine.step_back()
    assert engine.current_index == 2


def test_set_timeframe_rebuilds_at_current_index():
    engine, _, recorder = _engine(list(range(10)), step_ms=60_000)
    engine.seek_to_index(10)
    assert len(engine.get_candles()) == 10
    recorder.events.clear()

    engine.set_timeframe("5m")
    assert engine.timeframe == "5m"
    assert engine.current_index == 10
    assert len(engine.get_candles()) == 2
    assert [kind for kind, _ in recorder.events] == ["candles", "state"]

    recorder.events.clear()
    engine.set_timeframe("5M")
    assert recorder.events == []


def test_set_speed_clamps_to_one():
    engine, _, _ = _engine([1])
    engine.set_speed(0)
    assert engine.speed == 1
    engine.set_speed(50)
    assert engine.get_state().speed == 50


def test_reset_emits_state_then_empty_snapshot():
    engine, scheduler, recorder = _engine([1, 2, 3])
    engine.step()
    engine.play()
    recorder.events.clear()

    engine.reset()
    assert [kind for kind, _ in recorder.events] == ["state", "candles"]
    assert recorder.events[-1] == ("candles", 0)
    assert engine.current_index == 0
    assert not engine.is_playing
    assert scheduler.pending == 0


def test_empty_series_is_inert():
    engine, scheduler, _ = _engine([])
    assert engine.step() is False
    engine.play()
    engine.seek_to_progress(0.5)
    engine.step_back()
    assert scheduler.pending == 0
    assert engine.get_state().progress == 0.0


class FiredFrameScheduler(ManualFrameScheduler):
    """Queued frames behave like timers that already fired: cancel cannot stop them."""

    def cancel(self, handle):
        pass


def test_stale_frame_after_pause_and_play_is_ignored():
    recorder = Recorder()
    scheduler = FiredFrameScheduler()
    engine = ReplayEngine(build_ticks([1, 2, 3, 4, 5, 6]), recorder.callbacks(), scheduler=scheduler, speed=1)

    engine.play()
    engine.pause()
    engine.play()
    assert scheduler.pending == 2

    scheduler.run_next()
    assert engine.current_index == 0
    assert scheduler.pending == 1

    scheduler.run_until_idle()
    ticks = [index for kind, index in recorder.events if kind == "tick"]
    assert ticks == [0, 1, 2, 3, 4, 5]
    assert not engine.is_playing


class CountingTimerScheduler(TimerFrameScheduler):
    """Timer scheduler that tracks how many frames are scheduled but not yet fired."""

    def __init__(self, interval_sec=0.0):
        super().__init__(interval_sec)
        self._guard = threading.Lock()
        self._unfired = set()
        self.live = 0
        self.max_live = 0
        self.fired = threading.Event()

    def schedule(self, callback):
        marker = object()

        def _fire():
            with self._guard:
                if marker in self._unfired:
                    self._unfired.discard(marker)
                    self.live -= 1
            self.fired.set()
            callback()

        with self._guard:
            self._unfired.add(marker)
            self.live += 1
            self.max_live = max(self.max_live, self.live)
        timer = super().schedule(_fire)
        timer.marker = marker
        return timer

    def cancel(self, handle):
        super().cancel(handle)
        with self._guard:
            marker = getattr(handle, "marker", None)
            if marker in self._unfired:
                self._unfired.discard(marker)
                self.live -= 1


def _timer_engine(prices, scheduler, speed=1, on_tick=None):
    recorder = Recorder()
    done = threading.Event()

    def _state(state):
        recorder.events.append(("state", state))
        if state.total_ticks and state.current_tick_index == state.total_ticks and not state.is_playing:
            done.set()

    callbacks = recorder.callbacks(on_tick)
    callbacks.on_state = _state
    engine = ReplayEngine(build_ticks(prices), callbacks, scheduler=scheduler, timeframe="1m", speed=speed)
    return engine, recorder, done


def test_timer_scheduler_plays_to_end_of_data():
    scheduler = CountingTimerScheduler(interval_sec=0)
    engine, recorder, done = _timer_engine(list(range(1, 21)), scheduler, speed=3)

    engine.play()
    assert done.wait(timeout=5)

    ticks = [index for kind, index in recorder.events if kind == "tick"]
    assert ticks == list(range(20))
    assert engine.current_index == 20
    assert not engine.is_playing
    assert scheduler.max_live == 1


def test_timer_frame_fired_during_pause_and_play_does_not_start_a_second_chain():
    scheduler = CountingTimerScheduler(interval_sec=0)
    engine, recorder, done = _timer_engine(list(range(1, 31)), scheduler, speed=1)

    with engine._lock:
        engine.play()
        # The first timer fires and blocks on the engine lock.
        assert scheduler.fired.wait(timeout=5)
        engine.pause()
        engine.play()

    assert done.wait(timeout=5)
    ticks = [index for kind, index in recorder.events if kind == "tick"]
    assert ticks == list(range(30))
    assert scheduler.max_live <= 1


def test_pause_from_host_thread_stops_timer_playback():
    started = threading.Event()

    def on_tick(tick, index):
        if index == 5:
            started.set()

    scheduler = TimerFrameScheduler(interval_sec=0.005)
    engine, recorder, _ = _timer_engine(list(range(1, 2001)), scheduler, speed=1, on_tick=on_tick)

    engine.play()
    assert started.wait(timeout=5)
    engine.pause()
    processed = len([kind for kind, _ in recorder.events if kind == "tick"])
    index_at_pause = engine.current_index

    time.sleep(0.1)
    assert len([kind for kind, _ in recorder.events if kind == "tick"]) == processed
    assert engine.current_index == index_at_pause < 2000
    assert not engine.is_playing
    engine.destroy()
