"""Shared instrument metadata and timeframe normalization helpers."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class InstrumentConfig:
    """Contract specification used to value simulated fills."""

    symbol: str
    name: str
    tick_size: float
    tick_value: float
    point_value: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "symbol": self.symbol,
            "name": self.name,
            "tick_size": float(self.tick_size),
            "tick_value": float(self.tick_value),
            "point_value": float(self.point_value),
        }


NQ_CONFIG = InstrumentConfig(symbol="NQ", name="E-mini NASDAQ 100", tick_size=0.25, tick_value=5.0, point_value=20.0)

INSTRUMENTS: dict[str, InstrumentConfig] = {
    "NQ": NQ_CONFIG,
    "MNQ": InstrumentConfig(symbol="MNQ", name="Micro E-mini NASDAQ 100", tick_size=0.25, tick_value=0.5, point_value=2.0),
    "ES": InstrumentConfig(symbol="ES", name="E-mini S&P 500", tick_size=0.25, tick_value=12.5, point_value=50.0),
    "MES": InstrumentConfig(symbol="MES", name="Micro E-mini S&P 500", tick_size=0.25, tick_value=1.25, point_value=5.0),
    "CL": InstrumentConfig(symbol="CL", name="Crude Oil", tick_size=0.01, tick_value=10.0, point_value=1000.0),
    "GC": InstrumentConfig(symbol="GC", name="Gold", tick_size=0.1, tick_value=10.0, point_value=100.0),
}

# User-facing aliases for common symbols.
INSTRUMENT_ALIASES: dict[str, str] = {
    "NASDAQ": "NQ",
    "NAS100": "NQ",
    "MICRO_NQ": "MNQ",
    "SPX": "ES",
    "SP500": "ES",
    "MICRO_ES": "MES",
    "OIL": "CL",
    "WTI": "CL",
    "GOLD": "GC",
}

# Preset bucket widths in seconds; any "<n>s", "<n>m" or "<n>h" string is also accepted.
TIMEFRAME_SECONDS: dict[str, int] = {
    "1s": 1,
    "5s": 5,
    "15s": 15,
    "30s": 30,
    "1m": 60,
    "5m": 300,
    "15m": 900,
    "30m": 1800,
    "1h": 3600,
}

SUPPORTED_TIMEFRAMES = tuple(TIMEFRAME_SECONDS)

SPEED_OPTIONS: tuple[int, ...] = (1, 5, 10, 50, 100, 500, 1000)

_TIMEFRAME_RE = re.compile(r"^(\d+)(s|m|h)$")
_UNIT_SECONDS = {"s": 1, "m": 60, "h": 3600}


def resolve_instrument_alias(raw: str) -> str:
    """Resolve user alias to a canonical contract symbol if available."""
    key = raw.strip().upper()
    return INSTRUMENT_ALIASES.get(key, key)


def normalize_instrument(raw: str, *, allow_aliases: bool = True) -> str:
    """
    Normalize user input to a canonical contract symbol.

    Examples:
    - nq -> NQ
    - " es " -> ES
    - gold -> GC
    """
    if not raw or not raw.strip():
        raise ValueError("Instrument is required.")

    normalized = raw.strip().upper().replace("-", "_").replace(" ", "")
    if allow_aliases:
        normalized = resolve_instrument_alias(normalized)

    if normalized not in INSTRUMENTS:
        raise ValueError(f"Unsupported instrument: {raw}. Supported: {', '.join(sorted(INSTRUMENTS))}.")
    return normalized


def get_instrument(raw: str | InstrumentConfig) -> InstrumentConfig:
    """Return the contract specification for a symbol or alias."""
    if isinstance(raw, InstrumentConfig):
        return raw
    return INSTRUMENTS[normalize_instrument(raw)]


def normalize_timeframe(raw: str) -> str:
    """Normalize timeframe strings to canonical lowercase form (e.g. 1M -> 1m, 1H -> 1h)."""
    if not raw or not str(raw).strip():
        raise ValueError("Timeframe is required.")

    key = str(raw).strip().lower()
    match = _TIMEFRAME_RE.match(key)
    if not match or int(match.group(1)) <= 0:
        raise ValueError(
            f"Unsupported timeframe: {raw}. "
            "Use <n>s, <n>m or <n>h, e.g. 1s, 5s, 1m, 5m, 15m, 1h."
        )
    return f"{int(match.group(1))}{match.group(2)}"


def timeframe_to_seconds(raw: str) -> int:
    """Return the bucket width of a timeframe in seconds."""
    tf = normalize_timeframe(raw)
    if tf in TIMEFRAME_SECONDS:
        return TIMEFRAME_SECONDS[tf]
    return int(tf[:-1]) * _UNIT_SECONDS[tf[-1]]


def get_price_precision(instrument: str | InstrumentConfig) -> int:
    """Get display precision from the contract tick size."""
    tick_size = get_instrument(instrument).tick_size
    decimals = f"{float(tick_size):.10f}".rstrip("0").split(".", 1)[1]
    return len(decimals)


def round_price(instrument: str | InstrumentConfig, value: float) -> float:
    """Round price to the nearest valid tick of the contract."""
    tick_size = get_instrument(instrument).tick_size
    ticks = round(float(value) / tick_size)
    return round(ticks * tick_size, get_price_precision(instrument))


def format_price(instrument: str | InstrumentConfig, value: float) -> str:
    """Format price string using instrument-aware precision."""
    precision = get_price_precision(instrument)
    return f"{float(value):,.{precision}f}"
