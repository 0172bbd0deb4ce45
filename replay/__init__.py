"""Tick replay, candle aggregation and simulated trading."""

from .aggregator import CandleAggregator, bucket_time
from .engine import ManualFrameScheduler, ReplayCallbacks, ReplayEngine, TimerFrameScheduler
from .indicators import compute_indicator, compute_indicators, indicator_frame
from .models import (
    Candle,
    EventType,
    ExitReason,
    IndicatorConfig,
    IndicatorValue,
    OrderConfig,
    OrderSide,
    Position,
    PositionSide,
    PriceLevels,
    ReplayState,
    RiskState,
    RoundTrip,
    SessionEvent,
    Tick,
    Trade,
    TradeMarker,
    TradeStats,
    TrailMode,
    TrailStep,
)
from .reporting import ReplayArtifacts, write_replay_artifacts
from .risk import RiskController, RiskExit
from .runtime import ReplayRunConfig, SessionApi, run_replay
from .session import ReplaySession, SessionCallbacks, TradingSnapshot
from .tick_feeder import TickSeries, load_ticks, parse_tick_line, write_ticks
from .trading import TradingEngine

__all__ = [
    "CandleAggregator",
    "bucket_time",
    "ManualFrameScheduler",
    "TimerFrameScheduler",
    "ReplayCallbacks",
    "ReplayEngine",
    "compute_indicator",
    "compute_indicators",
    "indicator_frame",
    "Candle",
    "EventType",
    "ExitReason",
    "IndicatorConfig",
    "IndicatorValue",
    "OrderConfig",
    "OrderSide",
    "Position",
    "PositionSide",
    "PriceLevels",
    "ReplayState",
    "RiskState",
    "RoundTrip",
    "SessionEvent",
    "Tick",
    "Trade",
    "TradeMarker",
    "TradeStats",
    "TrailMode",
    "TrailStep",
    "ReplayArtifacts",
    "write_replay_artifacts",
    "RiskController",
    "RiskExit",
    "ReplayRunConfig",
    "SessionApi",
    "run_replay",
    "ReplaySession",
    "SessionCallbacks",
    "TradingSnapshot",
    "TickSeries",
    "load_ticks",
    "parse_tick_line",
    "write_ticks",
    "TradingEngine",
]
