"""Core utilities exported by the tick replay repo."""

from .logging_setup import setup_logging
from .market_metadata import (
    INSTRUMENT_ALIASES,
    INSTRUMENTS,
    NQ_CONFIG,
    SPEED_OPTIONS,
    SUPPORTED_TIMEFRAMES,
    TIMEFRAME_SECONDS,
    InstrumentConfig,
    format_price,
    get_instrument,
    get_price_precision,
    normalize_instrument,
    normalize_timeframe,
    resolve_instrument_alias,
    round_price,
    timeframe_to_seconds,
)

__all__ = [
    "setup_logging",
    "InstrumentConfig",
    "INSTRUMENTS",
    "INSTRUMENT_ALIASES",
    "NQ_CONFIG",
    "SPEED_OPTIONS",
    "TIMEFRAME_SECONDS",
    "SUPPORTED_TIMEFRAMES",
    "resolve_instrument_alias",
    "normalize_instrument",
    "get_instrument",
    "normalize_timeframe",
    "timeframe_to_seconds",
    "get_price_precision",
    "round_price",
    "format_price",
]
