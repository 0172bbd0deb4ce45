"""Single-instrument position, trade ledger and running statistics."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from core.market_metadata import NQ_CONFIG, InstrumentConfig, get_instrument

from .models import (
    FLAT_POSITION,
    ExitReason,
    OrderSide,
    Position,
    PositionSide,
    RoundTrip,
    Trade,
    TradeStats,
)

logger = logging.getLogger(__name__)


@dataclass
class _OpenPosition:
    side: PositionSide
    entry_price: float
    size: int
    entry_time: int
    entry_tick_index: int
    unrealized_pnl: float = 0.0
    mfe: float = 0.0
    mae: float = 0.0


class TradingEngine:
    """
    Simulated fills at caller-supplied prices for one instrument.

    ``buy`` against a short and ``sell`` against a long close the whole
    position regardless of the requested size. Adding in the same direction
    moves the entry to the size-weighted average.
    """

    def __init__(self, instrument: InstrumentConfig | str = NQ_CONFIG):
        self._instrument = get_instrument(instrument)
        self.reset()

    @property
    def instrument(self) -> InstrumentConfig:
        return self._instrument

    @property
    def realized_pnl(self) -> float:
        return self._cumulative_pnl

    def reset(self) -> None:
        self._position: _OpenPosition | None = None
        self._trades: list[Trade] = []
        self._round_trips: list[RoundTrip] = []
        self._stats = TradeStats()
        self._cumulative_pnl = 0.0
        self._peak_pnl = 0.0
        self._max_drawdown = 0.0
        self._gross_wins = 0.0
        self._gross_losses = 0.0
        self._total_holding_ticks = 0
        self._trade_counter = 0

    def buy(self, price: float, size: int, timestamp: int, tick_index: int = 0) -> Trade:
        if self._position is not None and self._position.side is PositionSide.SHORT:
            return self._close_position(price, timestamp, tick_index, ExitReason.MANUAL)
        return self._open_position(PositionSide.LONG, price, size, timestamp, tick_index)

    def sell(self, price: float, size: int, timestamp: int, tick_index: int = 0) -> Trade:
        if self._position is not None and self._position.side is PositionSide.LONG:
            return self._close_position(price, timestamp, tick_index, ExitReason.MANUAL)
        return self._open_position(PositionSide.SHORT, price, size, timestamp, tick_index)

    def flatten(
        self,
        price: float,
        timestamp: int,
        tick_index: int = 0,
        reason: ExitReason | str = ExitReason.MANUAL,
    ) -> Trade | None:
        if self._position is None:
            return None
        return self._close_position(price, timestamp, tick_index, ExitReason.from_value(reason))

    def update_unrealized_pnl(self, price: float) -> float:
        position = self._position
        if position is None:
            return 0.0
        pnl = self._pnl_at(position, price)
        position.unrealized_pnl = pnl
        position.mfe = max(position.mfe, pnl)
        position.mae = min(position.mae, pnl)
        return pnl

    def get_position(self) -> Position:
        position = self._position
        if position is None:
            return FLAT_POSITION
        return Position(
            side=position.side,
            entry_price=float(position.entry_price),
            size=int(position.size),
            unrealized_pnl=float(position.unrealized_pnl),
        )

    def get_trades(self) -> tuple[Trade, ...]:
        return tuple(self._trades)

    def get_round_trips(self) -> tuple[RoundTrip, ...]:
        return tuple(self._round_trips)

    def get_stats(self) -> TradeStats:
        return self._stats

    def _pnl_at(self, position: _OpenPosition, price: float) -> float:
        return (float(price) - position.entry_price) * position.side.direction * position.size * self._instrument.point_value

    def _open_position(
        self,
        side: PositionSide,
        price: float,
        size: int,
        timestamp: int,
        tick_index: int,
    ) -> Trade:
        if self._position is None:
            self._position = _OpenPosition(
                side=side,
                entry_price=float(price),
                size=int(size),
                entry_time=int(timestamp),
                entry_tick_index=int(tick_index),
            )
            logger.debug("Opened %s %s @ %s", side.value, size, price)
        else:
            position = self._position
            total_size = position.size + int(size)
            position.entry_price = (position.entry_price * position.size + float(price) * int(size)) / total_size
            position.size = total_size
            logger.debug("Added %s to %s, size=%s avg=%s", size, side.value, total_size, position.entry_price)

        order_side = OrderSide.BUY if side is PositionSide.LONG else OrderSide.SELL
        return self._record_trade(order_side, price, int(size), timestamp)

    def _close_position(self, price: float, timestamp: int, tick_index: int, reason: ExitReason) -> Trade:
        position = self._position
        if position is None:
            raise RuntimeError("No open position to close")
        pnl = self._pnl_at(position, price)
        self._cumulative_pnl += pnl

        close_side = OrderSide.SELL if position.side is PositionSide.LONG else OrderSide.BUY
        trade = self._record_trade(close_side, price, position.size, timestamp, pnl=pnl)

        holding_ticks = max(int(tick_index) - position.entry_tick_index, 0)
        self._total_holding_ticks += holding_ticks
        self._round_trips.append(
            RoundTrip(
                side=position.side,
                entry_price=float(position.entry_price),
                exit_price=float(price),
                size=int(position.size),
                pnl=float(pnl),
                mfe=float(max(position.mfe, pnl)),
                mae=float(min(position.mae, pnl)),
                entry_time=int(position.entry_time),
                exit_time=int(timestamp),
                holding_ms=max(int(timestamp) - position.entry_time, 0),
                holding_ticks=holding_ticks,
                reason=reason,
            )
        )
        self._update_stats(pnl)
        self._position = None
        logger.debug("Closed %s @ %s pnl=%.2f reason=%s", position.side.value, price, pnl, reason.value)
        return trade

    def _record_trade(
        self,
        side: OrderSide,
        price: float,
        size: int,
        timestamp: int,
        pnl: float | None = None,
    ) -> Trade:
        self._trade_counter += 1
        trade = Trade(
            id=f"trade-{self._trade_counter}",
            side=side,
            price=float(price),
            size=int(size),
            timestamp=int(timestamp),
            pnl=None if pnl is None else float(pnl),
            cumulative_pnl=None if pnl is None else float(self._cumulative_pnl),
        )
        self._trades.append(trade)
        return trade

    def _update_stats(self, pnl: float) -> None:
        stats = self._stats
        winners = stats.winners
        losers = stats.losers
        largest_win = stats.largest_win
        largest_loss = stats.largest_loss
        if pnl > 0:
            winners += 1
            self._gross_wins += pnl
            largest_win = max(largest_win, pnl)
        elif pnl < 0:
            losers += 1
            self._gross_losses += abs(pnl)
            largest_loss = min(largest_loss, pnl)

        total_trades = len(self._round_trips)
        if self._gross_losses > 0:
            profit_factor = self._gross_wins / self._gross_losses
        else:
            profit_factor = float("inf") if self._gross_wins > 0 else 0.0

        # Peak starts at zero so an opening loss already counts as drawdown.
        self._peak_pnl = max(self._peak_pnl, self._cumulative_pnl)
        self._max_drawdown = max(self._max_drawdown, self._peak_pnl - self._cumulative_pnl)

        self._stats = TradeStats(
            total_trades=total_trades,
            winners=winners,
            losers=losers,
            win_rate=(winners / total_trades) if total_trades else 0.0,
            total_pnl=self._cumulative_pnl,
            avg_win=(self._gross_wins / winners) if winners else 0.0,
            avg_loss=-(self._gross_losses / losers) if losers else 0.0,
            profit_factor=profit_factor,
            max_drawdown=self._max_drawdown,
            largest_win=largest_win,
            largest_loss=largest_loss,
            avg_holding_ticks=(self._total_holding_ticks / total_trades) if total_trades else 0.0,
        )
