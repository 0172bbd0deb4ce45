"""Stop-loss, take-profit and trailing-stop supervision of the open position."""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Any, Callable, Optional

from .models import (
    EventType,
    ExitReason,
    OrderConfig,
    PositionSide,
    PriceLevels,
    RiskState,
    SessionEvent,
    Trade,
)
from .trading import TradingEngine

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RiskExit:
    reason: ExitReason
    side: PositionSide
    exit_price: float
    trade: Trade

    @property
    def label(self) -> str:
        return "SL" if self.reason is ExitReason.STOP_LOSS else "TP"


def _is_better_stop(side: PositionSide, candidate: float, current: float | None) -> bool:
    if current is None:
        return True
    if side is PositionSide.LONG:
        return candidate > current
    return candidate < current


class RiskController:
    """
    Derived SL/TP/trailing state for the trading engine's position.

    States: no position -> armed (step 0..N) -> fixed trailing -> no position.
    The stop only ever moves in the position's favour. Exits go through
    ``TradingEngine.flatten`` at the exact level that was crossed.
    """

    def __init__(
        self,
        trading: TradingEngine,
        config: OrderConfig | dict[str, Any] | None = None,
        on_event: Optional[Callable[[SessionEvent], None]] = None,
    ):
        self._trading = trading
        self._config = OrderConfig.from_raw(config)
        self._on_event = on_event
        self._state: RiskState | None = None

    @property
    def config(self) -> OrderConfig:
        return self._config

    @property
    def state(self) -> RiskState | None:
        return self._state

    @property
    def armed(self) -> bool:
        return self._state is not None

    def update_config(self, partial: OrderConfig | dict[str, Any]) -> OrderConfig:
        """
        Merge a partial config. Trailing settings apply from the next tick;
        SL/TP distances apply from the next entry.
        """
        self._config = self._config.merged(partial)
        return self._config

    def arm(self) -> RiskState | None:
        """
        Recompute levels from the current position's entry after an open or add.

        After an add the levels hang off the weighted average entry, not the
        price of the latest fill, and the step pointer restarts at zero.
        """
        position = self._trading.get_position()
        if position.is_flat:
            self._state = None
            return None

        entry = float(position.entry_price)
        direction = position.side.direction
        config = self._config
        self._state = RiskState(
            entry_price=entry,
            sl_level=entry - direction * config.sl_points if config.sl_enabled else None,
            tp_level=entry + direction * config.tp_points if config.tp_enabled else None,
            trail_best_price=entry,
            trail_step_index=0,
            trail_active=not config.active_steps,
        )
        logger.debug(
            "Armed %s entry=%s sl=%s tp=%s",
            position.side.value,
            entry,
            self._state.sl_level,
            self._state.tp_level,
        )
        return self._state

    def disarm(self) -> None:
        self._state = None

    def levels(self) -> PriceLevels:
        position = self._trading.get_position()
        if position.is_flat:
            return PriceLevels()
        state = self._state
        return PriceLevels(
            entry=float(position.entry_price),
            stop_loss=None if state is None else state.sl_level,
            take_profit=None if state is None else state.tp_level,
        )

    def on_tick(self, price: float, timestamp: int, tick_index: int) -> RiskExit | None:
        """Trail, then check the stop and target against ``price``."""
        position = self._trading.get_position()
        if position.is_flat:
            self._state = None
            return None
        if self._state is None:
            return None

        side = position.side
        if self._config.trail_enabled:
            self._trail(side, float(price), timestamp, tick_index)

        state = self._state
        if side is PositionSide.LONG:
            sl_hit = state.sl_level is not None and price <= state.sl_level
            tp_hit = state.tp_level is not None and price >= state.tp_level
        else:
            sl_hit = state.sl_level is not None and price >= state.sl_level
            tp_hit = state.tp_level is not None and price <= state.tp_level
        if not (sl_hit or tp_hit):
            return None

        # Stop wins when a single tick crosses both levels.
        if sl_hit:
            reason, level, event_type = ExitReason.STOP_LOSS, state.sl_level, EventType.STOP_LOSS_FILLED
        else:
            reason, level, event_type = ExitReason.TAKE_PROFIT, state.tp_level, EventType.TAKE_PROFIT_FILLED

        trade = self._trading.flatten(level, timestamp, tick_index, reason=reason)
        self._state = None
        if trade is None:
            return None
        logger.info("%s hit at %s (tick %s), pnl=%.2f", reason.value, level, tick_index, trade.pnl or 0.0)
        self._emit(event_type, timestamp, tick_index, side=side.value, price=level, size=trade.size, reason=reason.value)
        return RiskExit(reason=reason, side=side, exit_price=float(level), trade=trade)

    def _trail(self, side: PositionSide, price: float, timestamp: int, tick_index: int) -> None:
        state = self._state
        if state is None:
            return
        config = self._config
        direction = side.direction
        entry = state.entry_price

        best = state.trail_best_price
        if (price - best) * direction > 0:
            best = price
        sl_level = state.sl_level
        step_index = state.trail_step_index
        trail_active = state.trail_active

        if not trail_active:
            steps = config.active_steps
            profit = (price - entry) * direction
            if step_index < len(steps) and profit >= steps[step_index].trigger:
                candidate = entry + direction * steps[step_index].sl_move
                if _is_better_stop(side, candidate, sl_level):
                    sl_level = candidate
                step_index += 1
            if step_index >= len(steps):
                trail_active = True

        if trail_active:
            candidate = best - direction * config.trail_points
            if _is_better_stop(side, candidate, sl_level):
                sl_level = candidate

        moved = sl_level != state.sl_level
        self._state = replace(
            state,
            sl_level=sl_level,
            trail_best_price=best,
            trail_step_index=step_index,
            trail_active=trail_active,
        )
        if moved and sl_level is not None:
            logger.debug("Stop moved to %s (best=%s step=%s)", sl_level, best, step_index)
            self._emit(EventType.STOP_MODIFIED, timestamp, tick_index, side=side.value, price=sl_level, reason="trailing_stop_updated")

    def _emit(self, event_type: EventType, timestamp: int, tick_index: int, **kwargs: Any) -> None:
        if self._on_event is None:
            return
        self._on_event(SessionEvent(event_type=event_type, time_ms=int(timestamp), tick_index=int(tick_index), **kwargs))
