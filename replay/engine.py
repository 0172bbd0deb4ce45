"""Tick replay state machine with pluggable frame scheduling."""

from __future__ import annotations

import functools
import itertools
import logging
import math
import threading
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Optional, Protocol

from .aggregator import CandleAggregator
from .models import Candle, ReplayState, Tick
from .tick_feeder import TickSeries, as_tick_series

logger = logging.getLogger(__name__)

DEFAULT_FRAME_INTERVAL_SEC = 1.0 / 60.0


class FrameScheduler(Protocol):
    def schedule(self, callback: Callable[[], None]) -> Any:
        ...

    def cancel(self, handle: Any) -> None:
        ...


class ManualFrameScheduler:
    """FIFO of pending frames that the host drains explicitly."""

    def __init__(self) -> None:
        self._pending: OrderedDict[int, Callable[[], None]] = OrderedDict()
        self._ids = itertools.count(1)

    @property
    def pending(self) -> int:
        return len(self._pending)

    def schedule(self, callback: Callable[[], None]) -> int:
        handle = next(self._ids)
        self._pending[handle] = callback
        return handle

    def cancel(self, handle: Any) -> None:
        self._pending.pop(handle, None)

    def run_next(self) -> bool:
        """Run the oldest pending frame. Returns False when nothing was queued."""
        if not self._pending:
            return False
        _, callback = self._pending.popitem(last=False)
        callback()
        return True

    def run_until_idle(self, max_frames: int | None = None) -> int:
        frames = 0
        while self._pending:
            if max_frames is not None and frames >= max_frames:
                break
            self.run_next()
            frames += 1
        return frames


class TimerFrameScheduler:
    """Runs frames on daemon timer threads at a fixed interval."""

    def __init__(self, interval_sec: float = DEFAULT_FRAME_INTERVAL_SEC):
        if interval_sec < 0:
            raise ValueError("interval_sec must be non-negative")
        self.interval_sec = float(interval_sec)

    def schedule(self, callback: Callable[[], None]) -> threading.Timer:
        timer = threading.Timer(self.interval_sec, callback)
        timer.daemon = True
        timer.start()
        return timer

    def cancel(self, handle: Any) -> None:
        if isinstance(handle, threading.Timer):
            handle.cancel()


@dataclass
class ReplayCallbacks:
    on_tick: Optional[Callable[[Tick, int], None]] = None
    on_candles: Optional[Callable[[list[Candle]], None]] = None
    on_state: Optional[Callable[[ReplayState], None]] = None


class ReplayEngine:
    """
    Owns the replay clock over an immutable tick series.

    The engine is either paused or playing. While playing, each scheduled frame
    processes up to ``speed`` ticks: every tick is aggregated and handed to the
    tick callback before the next one, then one candle snapshot and one state
    event are emitted for the whole batch. Seek, step-back and timeframe changes
    rebuild candles from tick 0.
    """

    def __init__(
        self,
        ticks: TickSeries | Any,
        callbacks: ReplayCallbacks | None = None,
        scheduler: FrameScheduler | None = None,
        timeframe: str = "5m",
        speed: int = 1,
    ):
        self._ticks = as_tick_series(ticks)
        self._callbacks = callbacks or ReplayCallbacks()
        self._scheduler: FrameScheduler = scheduler or ManualFrameScheduler()
        self._aggregator = CandleAggregator(timeframe)
        self._lock = threading.RLock()
        self._current_index = 0
        self._speed = max(1, int(speed))
        self._playing = False
        self._frame_handle: Any = None
        # Identifies the one frame the engine is waiting for.
        self._frame_token = 0
        # Bumped by every rebuild so an in-flight frame can detect it.
        self._generation = 0
        self._emit_state()

    @property
    def ticks(self) -> TickSeries:
        return self._ticks

    @property
    def total_ticks(self) -> int:
        return self._ticks.rows

    @property
    def timeframe(self) -> str:
        return self._aggregator.timeframe

    @property
    def speed(self) -> int:
        return self._speed

    @property
    def current_index(self) -> int:
        return self._current_index

    @property
    def is_playing(self) -> bool:
        return self._playing

    @property
    def last_tick(self) -> Tick | None:
        with self._lock:
            if self._current_index <= 0:
                return None
            return self._ticks.tick_at(self._current_index - 1)

    @property
    def last_tick_index(self) -> int | None:
        if self._current_index <= 0:
            return None
        return self._current_index - 1

    def get_state(self) -> ReplayState:
        with self._lock:
            return self._build_state()

    def get_candles(self) -> list[Candle]:
        with self._lock:
            return self._aggregator.snapshot()

    def last_candle(self) -> Candle | None:
        with self._lock:
            return self._aggregator.last_candle()

    def play(self) -> None:
        with self._lock:
            if self._playing or self._current_index >= self.total_ticks:
                return
            self._playing = True
            logger.debug("Replay playing from index=%s speed=%s", self._current_index, self._speed)
            self._emit_state()
            self._schedule_frame()

    def pause(self) -> None:
        with self._lock:
            if not self._playing:
                return
            self._playing = False
            self._cancel_frame()
            logger.debug("Replay paused at index=%s", self._current_index)
            self._emit_state()

    def step(self) -> bool:
        """Process exactly one tick. Returns False at end-of-data."""
        with self._lock:
            if self._current_index >= self.total_ticks:
                return False
            self._process_tick(self._current_index)
            self._emit_candles()
            self._emit_state()
            return True

    def step_back(self) -> None:
        with self._lock:
            boundaries = self._aggregator.boundaries
            if not boundaries:
                return
            last_boundary = boundaries[-1]
            if self._current_index > last_boundary:
                target = last_boundary
            elif len(boundaries) < 2:
                target = 0
            else:
                target = boundaries[-2]
            self._rebuild_to(target)
            self._emit_candles()
            self._emit_state()

    def seek_to_progress(self, pct: float) -> None:
        with self._lock:
            value = float(pct)
            if math.isnan(value):
                value = 0.0
            elif math.isinf(value):
                value = 1.0 if value > 0 else 0.0
            self._seek(math.floor(value * self.total_ticks))

    def seek_to_index(self, index: int) -> None:
        with self._lock:
            self._seek(int(index))

    def _seek(self, index: int) -> None:
        target = min(max(index, 0), self.total_ticks)
        was_playing = self._playing
        if was_playing:
            self._playing = False
            self._cancel_frame()

        self._rebuild_to(target)
        self._emit_candles()
        self._emit_state()

        if was_playing and self._current_index < self.total_ticks:
            self._playing = True
            self._emit_state()
            self._schedule_frame()

    def set_timeframe(self, timeframe: str) -> None:
        with self._lock:
            if not self._aggregator.set_timeframe(timeframe):
                return
            logger.debug("Timeframe changed to %s", self._aggregator.timeframe)
            self._rebuild_to(self._current_index)
            self._emit_candles()
            self._emit_state()

    def set_speed(self, speed: int) -> None:
        with self._lock:
            self._speed = max(1, int(speed))
            self._emit_state()

    def reset(self) -> None:
        with self._lock:
            self._playing = False
            self._cancel_frame()
            self._current_index = 0
            self._aggregator.reset()
            self._generation += 1
            self._emit_state()
            self._emit_candles()

    def destroy(self) -> None:
        with self._lock:
            self._playing = False
            self._cancel_frame()

    def _schedule_frame(self) -> None:
        if self._frame_handle is None:
            self._frame_token += 1
            self._frame_handle = self._scheduler.schedule(functools.partial(self._on_frame, self._frame_token))

    def _cancel_frame(self) -> None:
        # A timer that already fired cannot be cancelled; the new token makes it stale.
        self._frame_token += 1
        if self._frame_handle is not None:
            self._scheduler.cancel(self._frame_handle)
            self._frame_handle = None

    def _on_frame(self, token: int) -> None:
        with self._lock:
            if token != self._frame_token:
                return
            self._frame_handle = None
            if not self._playing:
                return

            generation = self._generation
            count = min(self._speed, self.total_ticks - self._current_index)
            processed = 0
            for _ in range(count):
                self._process_tick(self._current_index)
                processed += 1
                if not self._playing or generation != self._generation:
                    break

            if generation != self._generation:
                # A tick callback rebuilt the timeline and already emitted.
                return

            if processed > 0:
                self._emit_candles()
            self._emit_state()

            if not self._playing:
                return
            if self._current_index >= self.total_ticks:
                self._playing = False
                logger.debug("Replay reached end of data at index=%s", self._current_index)
                self._emit_state()
                return
            self._schedule_frame()

    def _process_tick(self, index: int) -> None:
        tick = self._ticks.tick_at(index)
        self._aggregator.fold(tick, index)
        self._current_index = index + 1
        if self._callbacks.on_tick is not None:
            self._callbacks.on_tick(tick, index)

    def _rebuild_to(self, index: int) -> None:
        self._current_index = max(0, min(int(index), self.total_ticks))
        self._aggregator.rebuild(self._ticks, self._current_index)
        self._generation += 1

    def _build_state(self) -> ReplayState:
        total = self.total_ticks
        idx = self._current_index
        return ReplayState(
            is_playing=self._playing,
            speed=self._speed,
            current_tick_index=idx,
            total_ticks=total,
            current_time=int(self._ticks.timestamp[idx - 1]) if idx > 0 else 0,
            progress=(idx / total) if total > 0 else 0.0,
        )

    def _emit_state(self) -> None:
        if self._callbacks.on_state is not None:
            self._callbacks.on_state(self._build_state())

    def _emit_candles(self) -> None:
        if self._callbacks.on_candles is not None:
            self._callbacks.on_candles(self._aggregator.snapshot())
