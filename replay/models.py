"""Record types shared by the replay, trading and risk engines."""

from __future__ import annotations

import math
from dataclasses import dataclass, field, fields, replace
from enum import Enum
from typing import Any, Optional

import pandas as pd


def ms_to_iso(value: Optional[int]) -> Optional[str]:
    """Serialize epoch milliseconds to an ISO8601 UTC string."""
    if value is None:
        return None
    return pd.Timestamp(int(value), unit="ms", tz="UTC").isoformat().replace("+00:00", "Z")


class PositionSide(str, Enum):
    LONG = "long"
    SHORT = "short"
    FLAT = "flat"

    @property
    def direction(self) -> int:
        if self is PositionSide.LONG:
            return 1
        if self is PositionSide.SHORT:
            return -1
        return 0


class OrderSide(str, Enum):
    BUY = "buy"
    SELL = "sell"

    @classmethod
    def from_value(cls, value: Any) -> "OrderSide":
        side = str(value or "").strip().lower()
        if side in {"buy", "long"}:
            return cls.BUY
        if side in {"sell", "short"}:
            return cls.SELL
        raise ValueError(f"Unsupported order side: {value}")


class TrailMode(str, Enum):
    FIXED = "fixed"
    ONE_STEP = "1-step"
    TWO_STEP = "2-step"
    THREE_STEP = "3-step"

    @classmethod
    def from_value(cls, value: Any) -> "TrailMode":
        try:
            return cls(str(value).strip().lower())
        except ValueError as exc:
            allowed = ", ".join(item.value for item in cls)
            raise ValueError(f"Unsupported trail_mode: {value}. Use one of {allowed}.") from exc

    @property
    def step_count(self) -> int:
        if self is TrailMode.FIXED:
            return 0
        return int(self.value.split("-", 1)[0])


class ExitReason(str, Enum):
    MANUAL = "MANUAL"
    STOP_LOSS = "STOP_LOSS"
    TAKE_PROFIT = "TAKE_PROFIT"
    END_OF_DATA = "END_OF_DATA"

    @classmethod
    def from_value(cls, value: Any) -> "ExitReason":
        try:
            return cls(str(value).strip().upper())
        except ValueError as exc:
            raise ValueError(f"Unsupported exit reason: {value}") from exc


class EventType(str, Enum):
    POSITION_OPENED = "POSITION_OPENED"
    POSITION_INCREASED = "POSITION_INCREASED"
    POSITION_CLOSED = "POSITION_CLOSED"
    STOP_LOSS_FILLED = "STOP_LOSS_FILLED"
    TAKE_PROFIT_FILLED = "TAKE_PROFIT_FILLED"
    STOP_MODIFIED = "STOP_MODIFIED"


@dataclass(frozen=True)
class Tick:
    timestamp: int
    price: float
    bid: float
    ask: float
    volume: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": int(self.timestamp),
            "time_utc": ms_to_iso(self.timestamp),
            "price": float(self.price),
            "bid": float(self.bid),
            "ask": float(self.ask),
            "volume": int(self.volume),
        }


@dataclass
class Candle:
    """OHLCV bar keyed by its bucket start in epoch seconds."""

    time: int
    open: float
    high: float
    low: float
    close: float
    volume: int
    tick_count: int = 1

    def copy(self) -> "Candle":
        return replace(self)

    def to_dict(self) -> dict[str, Any]:
        return {
            "time": int(self.time),
            "open": float(self.open),
            "high": float(self.high),
            "low": float(self.low),
            "close": float(self.close),
            "volume": int(self.volume),
            "tick_count": int(self.tick_count),
        }


@dataclass(frozen=True)
class ReplayState:
    is_playing: bool
    speed: int
    current_tick_index: int
    total_ticks: int
    current_time: int
    progress: float

    @property
    def at_end(self) -> bool:
        return self.current_tick_index >= self.total_ticks

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_playing": bool(self.is_playing),
            "speed": int(self.speed),
            "current_tick_index": int(self.current_tick_index),
            "total_ticks": int(self.total_ticks),
            "current_time": int(self.current_time),
            "progress": float(self.progress),
        }


@dataclass(frozen=True)
class Position:
    side: PositionSide = PositionSide.FLAT
    entry_price: float = 0.0
    size: int = 0
    unrealized_pnl: float = 0.0

    @property
    def is_flat(self) -> bool:
        return self.side is PositionSide.FLAT

    def to_dict(self) -> dict[str, Any]:
        return {
            "side": self.side.value,
            "entry_price": float(self.entry_price),
            "size": int(self.size),
            "unrealized_pnl": float(self.unrealized_pnl),
        }


FLAT_POSITION = Position()


@dataclass(frozen=True)
class Trade:
    id: str
    side: OrderSide
    price: float
    size: int
    timestamp: int
    pnl: float | None = None
    cumulative_pnl: float | None = None

    @property
    def is_closing(self) -> bool:
        return self.pnl is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "side": self.side.value,
            "price": float(self.price),
            "size": int(self.size),
            "timestamp": int(self.timestamp),
            "time_utc": ms_to_iso(self.timestamp),
            "pnl": None if self.pnl is None else float(self.pnl),
            "cumulative_pnl": None if self.cumulative_pnl is None else float(self.cumulative_pnl),
        }


@dataclass(frozen=True)
class RoundTrip:
    side: PositionSide
    entry_price: float
    exit_price: float
    size: int
    pnl: float
    mfe: float
    mae: float
    entry_time: int
    exit_time: int
    holding_ms: int
    holding_ticks: int
    reason: ExitReason = ExitReason.MANUAL

    def to_dict(self) -> dict[str, Any]:
        return {
            "side": self.side.value,
            "entry_price": float(self.entry_price),
            "exit_price": float(self.exit_price),
            "size": int(self.size),
            "pnl": float(self.pnl),
            "mfe": float(self.mfe),
            "mae": float(self.mae),
            "entry_time": int(self.entry_time),
            "entry_time_utc": ms_to_iso(self.entry_time),
            "exit_time": int(self.exit_time),
            "exit_time_utc": ms_to_iso(self.exit_time),
            "holding_ms": int(self.holding_ms),
            "holding_ticks": int(self.holding_ticks),
            "reason": self.reason.value,
        }


@dataclass(frozen=True)
class TradeStats:
    total_trades: int = 0
    winners: int = 0
    losers: int = 0
    win_rate: float = 0.0
    total_pnl: float = 0.0
    avg_win: float = 0.0
    avg_loss: float = 0.0
    profit_factor: float = 0.0
    max_drawdown: float = 0.0
    largest_win: float = 0.0
    largest_loss: float = 0.0
    avg_holding_ticks: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        payload = {item.name: getattr(self, item.name) for item in fields(self)}
        # JSON has no infinity literal.
        if math.isinf(self.profit_factor):
            payload["profit_factor"] = "inf"
        return payload


@dataclass(frozen=True)
class TrailStep:
    trigger: float
    sl_move: float

    @classmethod
    def from_raw(cls, value: Any) -> "TrailStep":
        if isinstance(value, TrailStep):
            return value
        if isinstance(value, dict):
            if "trigger" not in value or "sl_move" not in value:
                raise ValueError("trail step requires trigger and sl_move")
            trigger, sl_move = value["trigger"], value["sl_move"]
        elif isinstance(value, (list, tuple)) and len(value) == 2:
            trigger, sl_move = value
        else:
            raise ValueError(f"Invalid trail step: {value!r}")
        step = cls(trigger=float(trigger), sl_move=float(sl_move))
        if not math.isfinite(step.trigger) or step.trigger < 0:
            raise ValueError("trail step trigger must be a non-negative number")
        if not math.isfinite(step.sl_move):
            raise ValueError("trail step sl_move must be finite")
        return step

    def to_dict(self) -> dict[str, Any]:
        return {"trigger": float(self.trigger), "sl_move": float(self.sl_move)}


_POINT_FIELDS = ("sl_points", "tp_points", "trail_points")
_FLAG_FIELDS = ("sl_enabled", "tp_enabled", "trail_enabled")


@dataclass(frozen=True)
class OrderConfig:
    """Stop-loss, take-profit and trailing settings for new and open positions."""

    sl_enabled: bool = True
    tp_enabled: bool = True
    trail_enabled: bool = False
    sl_points: float = 20.0
    tp_points: float = 20.0
    trail_points: float = 10.0
    trail_mode: TrailMode = TrailMode.FIXED
    trail_steps: tuple[TrailStep, ...] = field(default_factory=tuple)

    @classmethod
    def from_raw(cls, value: Any | None) -> "OrderConfig":
        if value in (None, "", "None"):
            return cls()
        if isinstance(value, OrderConfig):
            return value
        return cls().merged(value)

    def merged(self, partial: Any) -> "OrderConfig":
        """Return a copy with the keys present in ``partial`` replaced."""
        if isinstance(partial, OrderConfig):
            return partial
        if not isinstance(partial, dict):
            raise ValueError("order config must be a mapping")

        known = {item.name for item in fields(self)}
        unknown = sorted(set(partial).difference(known))
        if unknown:
            raise ValueError(f"Unknown order config keys: {unknown}")

        updates: dict[str, Any] = {}
        for key in _FLAG_FIELDS:
            if key in partial:
                updates[key] = bool(partial[key])
        for key in _POINT_FIELDS:
            if key in partial:
                points = float(partial[key])
                if not math.isfinite(points) or points < 0:
                    raise ValueError(f"{key} must be a non-negative number")
                updates[key] = points
        if "trail_mode" in partial:
            updates["trail_mode"] = TrailMode.from_value(partial["trail_mode"])
        if "trail_steps" in partial:
            raw_steps = partial["trail_steps"] or []
            if not isinstance(raw_steps, (list, tuple)):
                raise ValueError("trail_steps must be a list")
            updates["trail_steps"] = tuple(TrailStep.from_raw(item) for item in raw_steps)
        return replace(self, **updates)

    @property
    def active_steps(self) -> tuple[TrailStep, ...]:
        """Steps used by the configured N-step mode (the first N, in order)."""
        return tuple(self.trail_steps[: self.trail_mode.step_count])

    def to_dict(self) -> dict[str, Any]:
        return {
            "sl_enabled": bool(self.sl_enabled),
            "tp_enabled": bool(self.tp_enabled),
            "trail_enabled": bool(self.trail_enabled),
            "sl_points": float(self.sl_points),
            "tp_points": float(self.tp_points),
            "trail_points": float(self.trail_points),
            "trail_mode": self.trail_mode.value,
            "trail_steps": [item.to_dict() for item in self.trail_steps],
        }


@dataclass(frozen=True)
class RiskState:
    entry_price: float
    sl_level: float | None
    tp_level: float | None
    trail_best_price: float
    trail_step_index: int = 0
    trail_active: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "entry_price": float(self.entry_price),
            "sl_level": None if self.sl_level is None else float(self.sl_level),
            "tp_level": None if self.tp_level is None else float(self.tp_level),
            "trail_best_price": float(self.trail_best_price),
            "trail_step_index": int(self.trail_step_index),
            "trail_active": bool(self.trail_active),
        }


@dataclass(frozen=True)
class PriceLevels:
    entry: float | None = None
    stop_loss: float | None = None
    take_profit: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "entry": self.entry,
            "stop_loss": self.stop_loss,
            "take_profit": self.take_profit,
        }


@dataclass(frozen=True)
class SessionEvent:
    event_type: EventType
    time_ms: int
    tick_index: int
    side: str | None = None
    price: float | None = None
    size: int | None = None
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_type": self.event_type.value,
            "time_ms": int(self.time_ms),
            "time_utc": ms_to_iso(self.time_ms),
            "tick_index": int(self.tick_index),
            "side": self.side,
            "price": None if self.price is None else float(self.price),
            "size": None if self.size is None else int(self.size),
            "reason": self.reason,
        }


@dataclass(frozen=True)
class TradeMarker:
    time: int
    position: str
    shape: str
    side: OrderSide
    text: str

    @classmethod
    def for_fill(cls, side: OrderSide, time: int, text: str) -> "TradeMarker":
        if side is OrderSide.BUY:
            return cls(time=int(time), position="below_bar", shape="arrow_up", side=side, text=text)
        return cls(time=int(time), position="above_bar", shape="arrow_down", side=side, text=text)

    def to_dict(self) -> dict[str, Any]:
        return {
            "time": int(self.time),
            "position": self.position,
            "shape": self.shape,
            "side": self.side.value,
            "text": self.text,
        }


INDICATOR_TYPES: tuple[str, ...] = (
    "SMA",
    "EMA",
    "WMA",
    "DEMA",
    "TEMA",
    "HMA",
    "VWAP",
    "BB",
    "ATR",
    "RSI",
    "MACD",
    "STOCH",
    "CCI",
    "WILLR",
    "MOM",
    "ROC",
    "ADX",
    "TRIX",
    "MFI",
    "OBV",
)


@dataclass(frozen=True)
class IndicatorConfig:
    id: str
    type: str
    period: int = 14
    output: str | None = None
    visible: bool = True

    @classmethod
    def from_raw(cls, value: Any) -> "IndicatorConfig":
        if isinstance(value, IndicatorConfig):
            return value
        if not isinstance(value, dict):
            raise ValueError("indicator config must be a mapping")
        indicator_type = str(value.get("type") or "").strip().upper()
        if indicator_type not in INDICATOR_TYPES:
            raise ValueError(f"Unsupported indicator type: {value.get('type')}")
        period = int(value.get("period", 14))
        if period < 1:
            raise ValueError(f"Indicator period must be >= 1, got {period}")
        output = value.get("output")
        output = None if output in (None, "") else str(output).strip().lower()
        default_id = indicator_type.lower() if output is None else f"{indicator_type.lower()}_{output}"
        indicator_id = str(value.get("id") or f"{default_id}_{period}").strip()
        return cls(
            id=indicator_id,
            type=indicator_type,
            period=period,
            output=output,
            visible=bool(value.get("visible", True)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "period": int(self.period),
            "output": self.output,
            "visible": bool(self.visible),
        }


@dataclass(frozen=True)
class IndicatorValue:
    time: int
    value: float

    def to_dict(self) -> dict[str, Any]:
        return {"time": int(self.time), "value": float(self.value)}
