"""Command surface wiring replay, trading and risk into one simulation clock."""

from __future__ import annotations

import logging
import numbers
from dataclasses import dataclass
from typing import Any, Callable, Optional

from core.market_metadata import NQ_CONFIG, SPEED_OPTIONS, InstrumentConfig, get_instrument

from .engine import FrameScheduler, ReplayCallbacks, ReplayEngine
from .models import (
    Candle,
    EventType,
    ExitReason,
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
)
from .risk import RiskController, RiskExit
from .tick_feeder import TickSeries
from .trading import TradingEngine

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TradingSnapshot:
    position: Position
    trades: tuple[Trade, ...]
    round_trips: tuple[RoundTrip, ...]
    stats: TradeStats
    levels: PriceLevels
    last_price: float | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "position": self.position.to_dict(),
            "trades": [item.to_dict() for item in self.trades],
            "round_trips": [item.to_dict() for item in self.round_trips],
            "stats": self.stats.to_dict(),
            "levels": self.levels.to_dict(),
            "last_price": self.last_price,
        }


@dataclass
class SessionCallbacks:
    on_tick: Optional[Callable[[Tick, int], None]] = None
    on_candles: Optional[Callable[[list[Candle]], None]] = None
    on_state: Optional[Callable[[ReplayState], None]] = None
    on_trading: Optional[Callable[[TradingSnapshot], None]] = None


def validate_order_size(size: Any) -> int:
    """Order sizes are whole contracts, at least one."""
    if isinstance(size, bool) or not isinstance(size, numbers.Real):
        raise ValueError(f"Order size must be a positive integer, got {size!r}")
    if isinstance(size, numbers.Integral):
        value = int(size)
    else:
        as_float = float(size)
        if not as_float.is_integer():
            raise ValueError(f"Order size must be a positive integer, got {size!r}")
        value = int(as_float)
    if value < 1:
        raise ValueError(f"Order size must be a positive integer, got {size!r}")
    return value


class ReplaySession:
    """
    One replay session: a tick series, a simulated account and its risk rules.

    Every processed tick runs in a fixed order: the last price is updated,
    unrealized P&L is marked, the risk controller trails and checks its levels,
    then subscribers are notified. Orders fill at the price, time and index of
    the last processed tick and are ignored before the first tick.
    """

    def __init__(
        self,
        ticks: TickSeries | Any,
        instrument: InstrumentConfig | str = NQ_CONFIG,
        order_config: OrderConfig | dict[str, Any] | None = None,
        scheduler: FrameScheduler | None = None,
        callbacks: SessionCallbacks | None = None,
        timeframe: str = "5m",
    ):
        self._instrument = get_instrument(instrument)
        self._callbacks = callbacks or SessionCallbacks()
        self._trading = TradingEngine(self._instrument)
        self._risk = RiskController(self._trading, order_config, on_event=self._record_event)
        self._markers: list[TradeMarker] = []
        self._events: list[SessionEvent] = []
        self._last_tick: Tick | None = None
        self._last_tick_index: int | None = None
        self._engine = ReplayEngine(
            ticks,
            ReplayCallbacks(
                on_tick=self._handle_tick,
                on_candles=self._handle_candles,
                on_state=self._handle_state,
            ),
            scheduler=scheduler,
            timeframe=timeframe,
        )

    @property
    def instrument(self) -> InstrumentConfig:
        return self._instrument

    @property
    def engine(self) -> ReplayEngine:
        return self._engine

    @property
    def trading(self) -> TradingEngine:
        return self._trading

    @property
    def risk(self) -> RiskController:
        return self._risk

    @property
    def ticks(self) -> TickSeries:
        return self._engine.ticks

    @property
    def timeframe(self) -> str:
        return self._engine.timeframe

    @property
    def state(self) -> ReplayState:
        return self._engine.get_state()

    @property
    def last_price(self) -> float | None:
        return None if self._last_tick is None else self._last_tick.price

    @property
    def last_tick(self) -> Tick | None:
        return self._last_tick

    @property
    def order_config(self) -> OrderConfig:
        return self._risk.config

    @property
    def risk_state(self) -> RiskState | None:
        return self._risk.state

    @property
    def position(self) -> Position:
        return self._trading.get_position()

    @property
    def trades(self) -> tuple[Trade, ...]:
        return self._trading.get_trades()

    @property
    def round_trips(self) -> tuple[RoundTrip, ...]:
        return self._trading.get_round_trips()

    @property
    def stats(self) -> TradeStats:
        return self._trading.get_stats()

    @property
    def markers(self) -> tuple[TradeMarker, ...]:
        return tuple(self._markers)

    @property
    def events(self) -> tuple[SessionEvent, ...]:
        return tuple(self._events)

    def candles(self) -> list[Candle]:
        return self._engine.get_candles()

    def levels(self) -> PriceLevels:
        return self._risk.levels()

    def trading_snapshot(self) -> TradingSnapshot:
        return TradingSnapshot(
            position=self._trading.get_position(),
            trades=self._trading.get_trades(),
            round_trips=self._trading.get_round_trips(),
            stats=self._trading.get_stats(),
            levels=self._risk.levels(),
            last_price=self.last_price,
        )

    # Replay commands

    def play(self) -> None:
        self._engine.play()

    def pause(self) -> None:
        self._engine.pause()

    def toggle_play(self) -> None:
        if self._engine.is_playing:
            self._engine.pause()
        else:
            self._engine.play()

    def step(self) -> bool:
        return self._engine.step()

    def step_n(self, count: int) -> int:
        """Step up to ``count`` ticks; returns how many were processed."""
        processed = 0
        for _ in range(max(0, int(count))):
            if not self._engine.step():
                break
            processed += 1
        return processed

    def step_back(self) -> None:
        self._engine.step_back()
        self._sync_last_tick()

    def seek_to_progress(self, pct: float) -> None:
        self._engine.seek_to_progress(pct)
        self._sync_last_tick()

    def seek_to_index(self, index: int) -> None:
        self._engine.seek_to_index(index)
        self._sync_last_tick()

    def set_timeframe(self, timeframe: str) -> None:
        self._engine.set_timeframe(timeframe)

    def set_speed(self, speed: int) -> None:
        self._engine.set_speed(speed)

    def speed_up(self) -> int:
        current = self._engine.speed
        faster = [item for item in SPEED_OPTIONS if item > current]
        if faster:
            self._engine.set_speed(faster[0])
        return self._engine.speed

    def speed_down(self) -> int:
        current = self._engine.speed
        slower = [item for item in SPEED_OPTIONS if item < current]
        if slower:
            self._engine.set_speed(slower[-1])
        return self._engine.speed

    def reset(self) -> None:
        self._engine.reset()
        self._trading.reset()
        self._risk.disarm()
        self._markers = []
        self._events = []
        self._last_tick = None
        self._last_tick_index = None
        self._emit_trading()

    def destroy(self) -> None:
        self._engine.destroy()

    # Order commands

    def update_order_config(self, partial: OrderConfig | dict[str, Any]) -> OrderConfig:
        return self._risk.update_config(partial)

    def buy(self, size: int = 1) -> Trade | None:
        return self._submit(OrderSide.BUY, validate_order_size(size))

    def sell(self, size: int = 1) -> Trade | None:
        return self._submit(OrderSide.SELL, validate_order_size(size))

    def flatten(self, reason: ExitReason | str = ExitReason.MANUAL) -> Trade | None:
        tick = self._last_tick
        if tick is None or self._last_tick_index is None:
            return None
        position = self._trading.get_position()
        if position.is_flat:
            return None

        exit_reason = ExitReason.from_value(reason)
        trade = self._trading.flatten(tick.price, tick.timestamp, self._last_tick_index, reason=exit_reason)
        self._risk.disarm()
        if trade is not None:
            self._add_marker(trade.side, tick.price, tick.timestamp)
            self._record_event(
                SessionEvent(
                    event_type=EventType.POSITION_CLOSED,
                    time_ms=tick.timestamp,
                    tick_index=self._last_tick_index,
                    side=position.side.value,
                    price=tick.price,
                    size=position.size,
                    reason=exit_reason.value,
                )
            )
        self._emit_trading()
        return trade

    def _submit(self, side: OrderSide, size: int) -> Trade | None:
        tick = self._last_tick
        index = self._last_tick_index
        if tick is None or index is None:
            logger.debug("Ignoring %s order before the first tick", side.value)
            return None

        previous = self._trading.get_position()
        if side is OrderSide.BUY:
            trade = self._trading.buy(tick.price, size, tick.timestamp, index)
        else:
            trade = self._trading.sell(tick.price, size, tick.timestamp, index)
        self._add_marker(side, tick.price, tick.timestamp)

        position = self._trading.get_position()
        if position.is_flat:
            self._risk.disarm()
            event_type = EventType.POSITION_CLOSED
            event_side, event_size = previous.side.value, previous.size
        else:
            self._risk.arm()
            event_type = EventType.POSITION_OPENED if previous.is_flat else EventType.POSITION_INCREASED
            event_side, event_size = position.side.value, size
        self._record_event(
            SessionEvent(
                event_type=event_type,
                time_ms=tick.timestamp,
                tick_index=index,
                side=event_side,
                price=tick.price,
                size=event_size,
                reason=ExitReason.MANUAL.value if event_type is EventType.POSITION_CLOSED else None,
            )
        )
        self._emit_trading()
        return trade

    # Engine callbacks

    def _handle_tick(self, tick: Tick, index: int) -> None:
        self._last_tick = tick
        self._last_tick_index = index
        self._trading.update_unrealized_pnl(tick.price)
        exit_info = self._risk.on_tick(tick.price, tick.timestamp, index)
        if exit_info is not None:
            self._add_exit_marker(exit_info, tick.timestamp)
            self._emit_trading()
        elif not self._trading.get_position().is_flat:
            self._emit_trading()
        if self._callbacks.on_tick is not None:
            self._callbacks.on_tick(tick, index)

    def _handle_candles(self, candles: list[Candle]) -> None:
        if self._callbacks.on_candles is not None:
            self._callbacks.on_candles(candles)

    def _handle_state(self, state: ReplayState) -> None:
        if self._callbacks.on_state is not None:
            self._callbacks.on_state(state)

    # Helpers

    def _sync_last_tick(self) -> None:
        """Re-sync the fill price after a rebuild without marking P&L or risk."""
        self._last_tick = self._engine.last_tick
        self._last_tick_index = self._engine.last_tick_index

    def _marker_time(self, timestamp: int) -> int:
        candle = self._engine.last_candle()
        if candle is not None:
            return candle.time
        return int(timestamp) // 1000

    def _add_marker(self, side: OrderSide, price: float, timestamp: int) -> None:
        prefix = "B" if side is OrderSide.BUY else "S"
        self._markers.append(TradeMarker.for_fill(side, self._marker_time(timestamp), f"{prefix} {price:.2f}"))

    def _add_exit_marker(self, exit_info: RiskExit, timestamp: int) -> None:
        side = OrderSide.SELL if exit_info.side is PositionSide.LONG else OrderSide.BUY
        self._markers.append(
            TradeMarker.for_fill(side, self._marker_time(timestamp), f"{exit_info.label} {exit_info.exit_price:.2f}")
        )

    def _record_event(self, event: SessionEvent) -> None:
        self._events.append(event)

    def _emit_trading(self) -> None:
        if self._callbacks.on_trading is not None:
            self._callbacks.on_trading(self.trading_snapshot())
