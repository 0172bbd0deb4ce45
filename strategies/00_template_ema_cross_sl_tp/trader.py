"""Minimal replay trader template: EMA cross entries with session-managed SL/TP."""

from __future__ import annotations

from typing import Any

from core.market_metadata import round_price


class TemplateEmaCrossTrader:
    """Enters on a close crossing the EMA once per candle; exits are left to the risk rules."""

    def __init__(self, instrument: str, timeframe: str, params: dict[str, Any]):
        self.instrument = instrument
        self.timeframe = timeframe
        self.params = dict(params or {})
        self.period = int(self.params.get("ema_period", 20))
        self.size = int(self.params.get("size", 1))
        self.last_signal_time: int | None = None
        self.configured = False

    def on_tick(self, api) -> None:
        """Read session-owned data and submit orders through the session API."""
        if not self.configured:
            api.update_order_config(self.build_order_config())
            self.configured = True

        if not api.get_position().is_flat:
            return

        history = api.history(self.period + 2)
        if len(history) < self.period + 2:
            return
        # Only act on the candle that just closed.
        signal_candle = history[-2]
        if self.last_signal_time == signal_candle.time:
            return

        ema = api.indicator({"type": "EMA", "period": self.period})
        if len(ema) < 3:
            return
        by_time = {item.time: item.value for item in ema}
        previous_candle = history[-3]
        if signal_candle.time not in by_time or previous_candle.time not in by_time:
            return

        crossed_up = previous_candle.close <= by_time[previous_candle.time] and signal_candle.close > by_time[signal_candle.time]
        crossed_down = previous_candle.close >= by_time[previous_candle.time] and signal_candle.close < by_time[signal_candle.time]
        if crossed_up:
            api.buy(self.size)
        elif crossed_down:
            api.sell(self.size)
        else:
            return
        self.last_signal_time = signal_candle.time

    def build_order_config(self) -> dict[str, Any]:
        """Translate template params into a session order config."""
        stop_points = float(round_price(self.instrument, float(self.params.get("stop_points", 20))))
        target_points = float(round_price(self.instrument, float(self.params.get("target_points", 40))))
        config: dict[str, Any] = {
            "sl_enabled": stop_points > 0,
            "tp_enabled": target_points > 0,
            "sl_points": stop_points,
            "tp_points": target_points,
        }
        trailing_points = self.params.get("trailing_points")
        if trailing_points not in (None, "", "None"):
            trailing_distance = float(trailing_points)
            if trailing_distance <= 0:
                raise ValueError("trailing_points must be positive")
            config["trail_enabled"] = True
            config["trail_points"] = trailing_distance
            config["trail_mode"] = str(self.params.get("trail_mode", "fixed"))
            config["trail_steps"] = list(self.params.get("trail_steps") or [])
        return config
