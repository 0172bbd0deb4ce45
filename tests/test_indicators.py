import pytest

from conftest import build_candles
from replay.indicators import compute_indicator, compute_indicators, indicator_frame
from replay.models import IndicatorConfig


def _values(candles, **config):
    return [item.value for item in compute_indicator(candles, config)]


def test_indicator_config_defaults_and_ids():
    assert IndicatorConfig.from_raw({"type": "rsi"}).id == "rsi_14"
    config = IndicatorConfig.from_raw({"type": "BB", "period": 20, "output": "Upper"})
    assert (config.type, config.output, config.id) == ("BB", "upper", "bb_upper_20")
    assert IndicatorConfig.from_raw({"type": "ema", "period": 9, "id": "fast"}).id == "fast"
    with pytest.raises(ValueError):
        IndicatorConfig.from_raw({"type": "NOPE"})
    with pytest.raises(ValueError):
        IndicatorConfig.from_raw({"type": "SMA", "period": 0})


def test_sma_starts_once_period_is_filled():
    candles = build_candles([1, 2, 3, 4, 5])
    values = compute_indicator(candles, {"type": "SMA", "period": 3})
    assert [item.value for item in values] == pytest.approx([2.0, 3.0, 4.0])
    assert [item.time for item in values] == [c.time for c in candles[2:]]


def test_ema_is_seeded_with_sma():
    assert _values(build_candles([1, 2, 3, 4, 5]), type="EMA", period=3) == pytest.approx([2.0, 3.0, 4.0])


def test_wma_weights_recent_values():
    assert _values(build_candles([1, 2, 3]), type="WMA", period=3) == pytest.approx([14.0 / 6.0])


def test_rsi_extremes():
    rising = build_candles(range(1, 21))
    falling = build_candles(range(20, 0, -1))
    assert _values(rising, type="RSI", period=14) == pytest.approx([100.0] * 6)
    assert _values(falling, type="RSI", period=14) == pytest.approx([0.0] * 6)


def test_atr_of_constant_range():
    candles = build_candles([10.0] * 20)
    assert _values(candles, type="ATR", period=14) == pytest.approx([2.0] * 6)


def test_macd_and_signal_warm_up():
    candles = build_candles([100 + (i % 7) for i in range(40)])
    assert len(_values(candles, type="MACD", period=12)) == 15
    assert len(_values(candles, type="MACD", period=12, output="signal")) == 7


def test_bollinger_bands_collapse_on_flat_prices():
    flat = build_candles([5.0] * 6)
    assert _values(flat, type="BB", period=5, output="upper") == pytest.approx([5.0, 5.0])
    varied = build_candles([1, 3, 2, 5, 4])
    upper = _values(varied, type="BB", period=5, output="upper")
    middle = _values(varied, type="BB", period=5)
    lower = _values(varied, type="BB", period=5, output="lower")
    assert upper[0] > middle[0] > lower[0]
    assert middle == pytest.approx([3.0])


def test_vwap_resets_per_day_and_weights_by_volume():
    candles = build_candles([1, 2, 3])
    assert _values(candles, type="VWAP", period=1) == pytest.approx([1.0, 1.5, 2.0])


def test_obv_accumulates_signed_volume():
    assert _values(build_candles([1, 2, 1, 1], volume=10), type="OBV") == pytest.approx([0.0, 10.0, 0.0, 0.0])


def test_momentum_and_rate_of_change():
    candles = build_candles([1, 2, 4, 7])
    assert _values(candles, type="MOM", period=2) == pytest.approx([3.0, 5.0])
    assert _values(candles, type="ROC", period=1) == pytest.approx([100.0, 100.0, 75.0])


def test_range_oscillators_on_flat_prices():
    candles = build_candles([10.0] * 20)
    assert _values(candles, type="WILLR", period=14) == pytest.approx([-50.0] * 7)
    assert _values(candles, type="CCI", period=14) == pytest.approx([0.0] * 7)
    assert _values(candles, type="STOCH", period=14) == pytest.approx([50.0] * 5)


def test_every_type_handles_short_history():
    candles = build_candles([1, 2])
    for indicator_type in ["SMA", "EMA", "DEMA", "TEMA", "HMA", "ATR", "RSI", "MACD", "ADX", "TRIX", "MFI"]:
        assert compute_indicator(candles, {"type": indicator_type, "period": 14}) == []
    assert compute_indicator([], {"type": "OBV"}) == []


def test_adx_and_trix_produce_values_with_enough_history():
    closes = [100 + i + (3 if i % 2 else -3) for i in range(80)]
    candles = build_candles(closes)
    adx = _values(candles, type="ADX", period=14)
    assert len(adx) == 80 - 27
    assert all(0.0 <= value <= 100.0 for value in adx)
    assert len(_values(candles, type="TRIX", period=5)) == 80 - 13
    assert len(_values(candles, type="HMA", period=9)) == 80 - 10


def test_compute_does_not_mutate_candles():
    candles = build_candles([1, 2, 3, 4, 5])
    before = [c.copy() for c in candles]
    compute_indicators(candles, [{"type": "EMA", "period": 2}, {"type": "BB", "period": 3}])
    assert candles == before


def test_compute_indicators_skips_hidden_configs():
    candles = build_candles(range(1, 30))
    results = compute_indicators(
        candles,
        [{"type": "SMA", "period": 5}, {"type": "RSI", "period": 14, "visible": False}],
    )
    assert list(results) == ["sma_5"]
    assert len(results["sma_5"]) == 25


def test_indicator_frame_adds_columns():
    candles = build_candles([1, 2, 3, 4])
    df = indicator_frame(candles, [{"type": "SMA", "period": 2}])
    assert list(df.columns) == ["time", "open", "high", "low", "close", "volume", "sma_2"]
    assert df["sma_2"].isna().tolist() == [True, False, False, False]
