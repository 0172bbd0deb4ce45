import numpy as np
import pytest

from conftest import BASE_MS, build_ticks
from replay.aggregator import CandleAggregator, bucket_time
from replay.models import Tick
from replay.tick_feeder import TickSeries


def _fold_all(aggregator, series):
    for index, tick in enumerate(series):
        aggregator.fold(tick, index)


def test_bucket_time_floors_to_timeframe_start():
    base_s = BASE_MS // 1000
    assert bucket_time(BASE_MS, 60) == base_s
    assert bucket_time(BASE_MS + 59_999, 60) == base_s
    assert bucket_time(BASE_MS + 60_000, 60) == base_s + 60
    assert bucket_time(BASE_MS + 299_999, 300) == base_s


def test_stepping_and_rebuilding_produce_identical_candles():
    # 1,000 ticks, 180 ms apart, span exactly three one-minute buckets.
    rng = np.random.default_rng(11)
    series = build_ticks(100 + rng.normal(0, 0.5, 1000).cumsum(), step_ms=180)

    stepped = CandleAggregator("1m")
    _fold_all(stepped, series)
    rebuilt = CandleAggregator("1m")
    rebuilt.rebuild(series, 1000)

    assert len(stepped) == 3
    assert stepped.snapshot() == rebuilt.snapshot()
    assert stepped.boundaries == rebuilt.boundaries == (0, 334, 667)
    assert sum(c.tick_count for c in rebuilt.snapshot()) == 1000


@pytest.mark.parametrize("seed", [1, 2, 3])
def test_candle_bounds_hold_for_random_prices(seed):
    rng = np.random.default_rng(seed)
    count = 500
    gaps = rng.integers(1, 5_000, count)
    ticks = [
        Tick(timestamp=BASE_MS + int(offset), price=float(price), bid=0.0, ask=0.0, volume=int(volume))
        for offset, price, volume in zip(
            gaps.cumsum(), 100 + rng.normal(0, 2, count).cumsum(), rng.integers(1, 10, count)
        )
    ]
    series = TickSeries.from_ticks(ticks)
    aggregator = CandleAggregator("15s")
    aggregator.rebuild(series, series.rows)

    candles = aggregator.snapshot()
    assert sum(c.volume for c in candles) == int(series.volume.sum())
    times = [c.time for c in candles]
    assert times == sorted(set(times))
    for candle in candles:
        assert candle.low <= candle.open <= candle.high
        assert candle.low <= candle.close <= candle.high
        assert candle.time % 15 == 0


def test_fold_updates_ohlcv_within_bucket():
    aggregator = CandleAggregator("1m")
    series = build_ticks([100, 103, 98, 101], step_ms=1000)
    opened = [aggregator.fold(tick, index) for index, tick in enumerate(series)]
    assert opened == [True, False, False, False]

    candle = aggregator.last_candle()
    assert (candle.open, candle.high, candle.low, candle.close) == (100, 103, 98, 101)
    assert candle.volume == 4
    assert candle.tick_count == 4
    assert candle.time == BASE_MS // 1000


def test_gaps_do_not_create_empty_candles():
    series = build_ticks([1, 2, 3], step_ms=5 * 60_000)
    aggregator = CandleAggregator("1m")
    aggregator.rebuild(series, series.rows)
    assert [c.time - BASE_MS // 1000 for c in aggregator.snapshot()] == [0, 300, 600]


def test_rebuild_clamps_end_index():
    series = build_ticks([1, 2, 3], step_ms=60_000)
    aggregator = CandleAggregator("1m")
    aggregator.rebuild(series, 99)
    assert len(aggregator) == 3
    aggregator.rebuild(series, -5)
    assert len(aggregator) == 0
    assert aggregator.boundaries == ()


def test_snapshot_returns_copies():
    aggregator = CandleAggregator("1m")
    _fold_all(aggregator, build_ticks([100, 101]))
    snapshot = aggregator.snapshot()
    snapshot[0].close = -1.0
    assert aggregator.last_candle().close == 101


def test_set_timeframe_resets_only_on_change():
    aggregator = CandleAggregator("1M")
    _fold_all(aggregator, build_ticks([100, 101]))
    assert aggregator.timeframe == "1m"
    assert aggregator.set_timeframe("1m") is False
    assert len(aggregator) == 1
    assert aggregator.set_timeframe("5m") is True
    assert aggregator.tf_seconds == 300
    assert len(aggregator) == 0
    with pytest.raises(ValueError):
        aggregator.set_timeframe("7x")
