"""Timeframe bucketing of ticks into OHLCV candles."""

from __future__ import annotations

import logging

from core.market_metadata import normalize_timeframe, timeframe_to_seconds

from .models import Candle, Tick
from .tick_feeder import TickSeries

logger = logging.getLogger(__name__)


def bucket_time(timestamp_ms: int, tf_seconds: int) -> int:
    """Start of the bucket containing ``timestamp_ms``, in epoch seconds."""
    return (int(timestamp_ms) // (tf_seconds * 1000)) * tf_seconds


class CandleAggregator:
    """
    Folds ticks into sparse, time-ordered candles for one timeframe.

    Incremental stepping and full rebuilds go through the same fold rule, so
    replaying ticks one at a time or rebuilding to the same index yields
    identical candles. The tick index that opened each candle is recorded as a
    boundary for step-back navigation.
    """

    def __init__(self, timeframe: str = "5m"):
        self._timeframe = normalize_timeframe(timeframe)
        self._tf_seconds = timeframe_to_seconds(self._timeframe)
        self._candles: list[Candle] = []
        self._bucket_index: dict[int, int] = {}
        self._boundaries: list[int] = []

    @property
    def timeframe(self) -> str:
        return self._timeframe

    @property
    def tf_seconds(self) -> int:
        return self._tf_seconds

    @property
    def boundaries(self) -> tuple[int, ...]:
        return tuple(self._boundaries)

    def __len__(self) -> int:
        return len(self._candles)

    def set_timeframe(self, timeframe: str) -> bool:
        """Switch timeframe and clear state. Returns False when unchanged."""
        normalized = normalize_timeframe(timeframe)
        if normalized == self._timeframe:
            return False
        self._timeframe = normalized
        self._tf_seconds = timeframe_to_seconds(normalized)
        self.reset()
        return True

    def reset(self) -> None:
        self._candles = []
        self._bucket_index = {}
        self._boundaries = []

    def fold(self, tick: Tick, index: int) -> bool:
        return self._fold_values(tick.timestamp, tick.price, tick.volume, index)

    def _fold_values(self, timestamp: int, price: float, volume: int, index: int) -> bool:
        key = bucket_time(timestamp, self._tf_seconds)
        existing = self._bucket_index.get(key)
        if existing is not None:
            candle = self._candles[existing]
            if price > candle.high:
                candle.high = price
            if price < candle.low:
                candle.low = price
            candle.close = price
            candle.volume += volume
            candle.tick_count += 1
            return False

        self._bucket_index[key] = len(self._candles)
        self._candles.append(
            Candle(time=key, open=price, high=price, low=price, close=price, volume=volume, tick_count=1)
        )
        self._boundaries.append(int(index))
        return True

    def rebuild(self, ticks: TickSeries, end_index: int) -> None:
        """Discard all candles and fold ticks[0:end_index] from scratch."""
        self.reset()
        end = max(0, min(int(end_index), ticks.rows))
        timestamps = ticks.timestamp[:end].tolist()
        prices = ticks.price[:end].tolist()
        volumes = ticks.volume[:end].tolist()
        for index, (timestamp, price, volume) in enumerate(zip(timestamps, prices, volumes)):
            self._fold_values(timestamp, price, volume, index)
        logger.debug("Rebuilt %s candles at %s from %s ticks", len(self._candles), self._timeframe, end)

    def snapshot(self) -> list[Candle]:
        """Copies of all candles; callers can never mutate aggregator state."""
        return [candle.copy() for candle in self._candles]

    def last_candle(self) -> Candle | None:
        if not self._candles:
            return None
        return self._candles[-1].copy()
