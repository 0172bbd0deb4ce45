"""Technical indicators over candle snapshots, computed with pandas."""

from __future__ import annotations

import math
from typing import Any, Callable, Iterable, Sequence

import numpy as np
import pandas as pd

from .models import Candle, IndicatorConfig, IndicatorValue

_SECONDS_PER_DAY = 86_400


def candles_to_frame(candles: Sequence[Candle]) -> pd.DataFrame:
    """Columnar copy of a candle snapshot; the input list is never touched."""
    return pd.DataFrame(
        {
            "time": np.asarray([c.time for c in candles], dtype=np.int64),
            "open": np.asarray([c.open for c in candles], dtype=np.float64),
            "high": np.asarray([c.high for c in candles], dtype=np.float64),
            "low": np.asarray([c.low for c in candles], dtype=np.float64),
            "close": np.asarray([c.close for c in candles], dtype=np.float64),
            "volume": np.asarray([c.volume for c in candles], dtype=np.float64),
        }
    )


def _seeded_smooth(values: pd.Series, period: int, alpha: float) -> pd.Series:
    """
    Exponential smoothing seeded with the SMA of the first ``period`` values.

    Leading NaNs (from an upstream indicator) are skipped, so chained EMAs line
    up the same way as nested running averages.
    """
    valid = values.dropna()
    if len(valid) < period:
        return pd.Series(np.nan, index=values.index)
    tail = valid.iloc[period - 1 :].copy()
    tail.iloc[0] = valid.iloc[:period].mean()
    smoothed = tail.ewm(alpha=alpha, adjust=False).mean()
    return smoothed.reindex(values.index)


def _ema(values: pd.Series, period: int) -> pd.Series:
    return _seeded_smooth(values, period, 2.0 / (period + 1))


def _wilder(values: pd.Series, period: int) -> pd.Series:
    return _seeded_smooth(values, period, 1.0 / period)


def _sma(values: pd.Series, period: int) -> pd.Series:
    return values.rolling(period).mean()


def _wma(values: pd.Series, period: int) -> pd.Series:
    weights = np.arange(1, period + 1, dtype=np.float64)
    denom = weights.sum()
    return values.rolling(period).apply(lambda window: float(np.dot(window, weights) / denom), raw=True)


def _true_range(df: pd.DataFrame) -> pd.Series:
    prev_close = df["close"].shift(1)
    ranges = pd.concat(
        [
            df["high"] - df["low"],
            (df["high"] - prev_close).abs(),
            (df["low"] - prev_close).abs(),
        ],
        axis=1,
    )
    # First bar has no previous close.
    return ranges.max(axis=1, skipna=False)


def _typical_price(df: pd.DataFrame) -> pd.Series:
    return (df["high"] + df["low"] + df["close"]) / 3.0


def _sma_indicator(df: pd.DataFrame, period: int) -> pd.Series:
    return _sma(df["close"], period)


def _ema_indicator(df: pd.DataFrame, period: int) -> pd.Series:
    return _ema(df["close"], period)


def _wma_indicator(df: pd.DataFrame, period: int) -> pd.Series:
    return _wma(df["close"], period)


def _dema(df: pd.DataFrame, period: int) -> pd.Series:
    ema1 = _ema(df["close"], period)
    ema2 = _ema(ema1, period)
    return 2.0 * ema1 - ema2


def _tema(df: pd.DataFrame, period: int) -> pd.Series:
    ema1 = _ema(df["close"], period)
    ema2 = _ema(ema1, period)
    ema3 = _ema(ema2, period)
    return 3.0 * ema1 - 3.0 * ema2 + ema3


def _hma(df: pd.DataFrame, period: int) -> pd.Series:
    half = max(1, period // 2)
    root = max(1, int(math.floor(math.sqrt(period) + 0.5)))
    raw = 2.0 * _wma(df["close"], half) - _wma(df["close"], period)
    return _wma(raw, root)


def _vwap(df: pd.DataFrame, period: int) -> pd.Series:
    day = df["time"] // _SECONDS_PER_DAY
    tpv = (_typical_price(df) * df["volume"]).groupby(day).cumsum()
    volume = df["volume"].groupby(day).cumsum()
    return (tpv / volume).where(volume > 0, df["close"])


def _bollinger(df: pd.DataFrame, period: int) -> dict[str, pd.Series]:
    middle = _sma(df["close"], period)
    std = df["close"].rolling(period).std(ddof=0)
    return {"upper": middle + 2.0 * std, "middle": middle, "lower": middle - 2.0 * std}


def _atr(df: pd.DataFrame, period: int) -> pd.Series:
    return _wilder(_true_range(df), period)


def _rsi(df: pd.DataFrame, period: int) -> pd.Series:
    change = df["close"].diff()
    gain = _wilder(change.clip(lower=0.0), period)
    loss = _wilder((-change).clip(lower=0.0), period)
    rsi = 100.0 - 100.0 / (1.0 + gain / loss)
    return rsi.where(loss != 0, 100.0)


def _macd(df: pd.DataFrame, period: int) -> dict[str, pd.Series]:
    macd = _ema(df["close"], 12) - _ema(df["close"], 26)
    return {"macd": macd, "signal": _ema(macd, 9)}


def _stochastic(df: pd.DataFrame, period: int) -> dict[str, pd.Series]:
    highest = df["high"].rolling(period).max()
    lowest = df["low"].rolling(period).min()
    span = highest - lowest
    raw_k = ((df["close"] - lowest) / span * 100.0).where(span != 0, 50.0)
    k = _sma(raw_k, 3)
    return {"k": k, "d": _sma(k, 3)}


def _cci(df: pd.DataFrame, period: int) -> pd.Series:
    typical = _typical_price(df)
    mean = _sma(typical, period)
    mean_dev = typical.rolling(period).apply(lambda window: float(np.mean(np.abs(window - window.mean()))), raw=True)
    return ((typical - mean) / (0.015 * mean_dev)).where(mean_dev != 0, 0.0)


def _williams_r(df: pd.DataFrame, period: int) -> pd.Series:
    highest = df["high"].rolling(period).max()
    lowest = df["low"].rolling(period).min()
    span = highest - lowest
    return ((highest - df["close"]) / span * -100.0).where(span != 0, -50.0)


def _momentum(df: pd.DataFrame, period: int) -> pd.Series:
    return df["close"] - df["close"].shift(period)


def _rate_of_change(df: pd.DataFrame, period: int) -> pd.Series:
    previous = df["close"].shift(period)
    return ((df["close"] - previous) / previous * 100.0).where(previous != 0, 0.0)


def _adx(df: pd.DataFrame, period: int) -> pd.Series:
    up = df["high"].diff()
    down = -df["low"].diff()
    plus_dm = up.where((up > down) & (up > 0), 0.0).where(up.notna())
    minus_dm = down.where((down > up) & (down > 0), 0.0).where(down.notna())
    atr = _wilder(_true_range(df), period)
    plus_di = (_wilder(plus_dm, period) / atr * 100.0).where(atr != 0, 0.0)
    minus_di = (_wilder(minus_dm, period) / atr * 100.0).where(atr != 0, 0.0)
    total = plus_di + minus_di
    dx = ((plus_di - minus_di).abs() / total * 100.0).where(total != 0, 0.0)
    return _wilder(dx, period)


def _trix(df: pd.DataFrame, period: int) -> pd.Series:
    triple = _ema(_ema(_ema(df["close"], period), period), period)
    previous = triple.shift(1)
    return ((triple - previous) / previous * 100.0).where(previous != 0, 0.0)


def _mfi(df: pd.DataFrame, period: int) -> pd.Series:
    typical = _typical_price(df)
    previous = typical.shift(1)
    flow = typical * df["volume"]
    positive = flow.where(typical > previous, 0.0).where(previous.notna())
    negative = flow.where(typical < previous, 0.0).where(previous.notna())
    pos_sum = positive.rolling(period).sum()
    neg_sum = negative.rolling(period).sum()
    return (100.0 - 100.0 / (1.0 + pos_sum / neg_sum)).where(neg_sum != 0, 100.0)


def _obv(df: pd.DataFrame, period: int) -> pd.Series:
    if len(df) < 2:
        return pd.Series(np.nan, index=df.index)
    direction = np.sign(df["close"].diff()).fillna(0.0)
    return (direction * df["volume"]).cumsum()


_SINGLE_OUTPUT: dict[str, Callable[[pd.DataFrame, int], pd.Series]] = {
    "SMA": _sma_indicator,
    "EMA": _ema_indicator,
    "WMA": _wma_indicator,
    "DEMA": _dema,
    "TEMA": _tema,
    "HMA": _hma,
    "VWAP": _vwap,
    "ATR": _atr,
    "RSI": _rsi,
    "CCI": _cci,
    "WILLR": _williams_r,
    "MOM": _momentum,
    "ROC": _rate_of_change,
    "ADX": _adx,
    "TRIX": _trix,
    "MFI": _mfi,
    "OBV": _obv,
}

_MULTI_OUTPUT: dict[str, tuple[Callable[[pd.DataFrame, int], dict[str, pd.Series]], str]] = {
    "BB": (_bollinger, "middle"),
    "MACD": (_macd, "macd"),
    "STOCH": (_stochastic, "k"),
}


def indicator_series(df: pd.DataFrame, config: IndicatorConfig) -> pd.Series:
    """Indicator values aligned to the candle frame's rows (NaN during warm-up)."""
    indicator_type = config.type.upper()
    period = int(config.period)
    empty = pd.Series(np.nan, index=df.index)
    if period < 1 or df.empty:
        return empty

    if indicator_type in _SINGLE_OUTPUT:
        return _SINGLE_OUTPUT[indicator_type](df, period)
    if indicator_type in _MULTI_OUTPUT:
        compute, default_output = _MULTI_OUTPUT[indicator_type]
        outputs = compute(df, period)
        return outputs.get(config.output or default_output, empty)
    return empty


def compute_indicator(candles: Sequence[Candle], config: IndicatorConfig | dict[str, Any]) -> list[IndicatorValue]:
    """One value per candle once enough history exists; [] for unknown types."""
    if isinstance(config, dict):
        config = IndicatorConfig.from_raw(config)
    if not candles:
        return []
    df = candles_to_frame(candles)
    series = indicator_series(df, config).dropna()
    times = df["time"].to_numpy()
    return [IndicatorValue(time=int(times[pos]), value=float(value)) for pos, value in series.items()]


def compute_indicators(
    candles: Sequence[Candle],
    configs: Iterable[IndicatorConfig | dict[str, Any]],
) -> dict[str, list[IndicatorValue]]:
    """Compute every visible indicator, keyed by config id."""
    results: dict[str, list[IndicatorValue]] = {}
    for raw in configs:
        config = IndicatorConfig.from_raw(raw)
        if not config.visible:
            continue
        results[config.id] = compute_indicator(candles, config)
    return results


def indicator_frame(
    candles: Sequence[Candle],
    configs: Iterable[IndicatorConfig | dict[str, Any]],
) -> pd.DataFrame:
    """Candle frame with one extra column per visible indicator."""
    df = candles_to_frame(candles)
    for raw in configs:
        config = IndicatorConfig.from_raw(raw)
        if not config.visible:
            continue
        df[config.id] = indicator_series(df, config)
    return df
