from __future__ import annotations

from typing import Iterable

from replay.models import Candle, Tick
from replay.tick_feeder import TickSeries

# 2024-01-01 00:00:00 UTC, aligned to every preset timeframe.
BASE_MS = 1_704_067_200_000


def build_ticks(
    prices: Iterable[float],
    step_ms: int = 1000,
    start_ms: int = BASE_MS,
    volume: int = 1,
) -> TickSeries:
    return TickSeries.from_ticks(
        Tick(
            timestamp=start_ms + index * step_ms,
            price=float(price),
            bid=float(price) - 0.25,
            ask=float(price) + 0.25,
            volume=volume,
        )
        for index, price in enumerate(prices)
    )


def build_candles(closes: Iterable[float], volume: int = 10) -> list[Candle]:
    return [
        Candle(
            time=BASE_MS // 1000 + index * 60,
            open=float(close),
            high=float(close) + 1.0,
            low=float(close) - 1.0,
            close=float(close),
            volume=volume,
        )
        for index, close in enumerate(closes)
    ]
