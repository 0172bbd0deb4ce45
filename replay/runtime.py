"""Headless replay runs driven by a scripted trader plugin."""

from __future__ import annotations

import hashlib
import importlib
import importlib.util
import json
import logging
import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional, Protocol

from core.market_metadata import normalize_instrument, normalize_timeframe

from .engine import ManualFrameScheduler
from .indicators import compute_indicator
from .models import (
    Candle,
    ExitReason,
    IndicatorConfig,
    IndicatorValue,
    OrderConfig,
    Position,
    PriceLevels,
    SessionEvent,
    Tick,
    Trade,
    TradeStats,
)
from .reporting import ReplayArtifacts, write_replay_artifacts
from .session import ReplaySession, SessionCallbacks
from .tick_feeder import load_ticks

logger = logging.getLogger(__name__)


@dataclass
class ReplayRunConfig:
    ticks_path: Path
    report_dir: Path
    instrument: str = "NQ"
    timeframe: str = "5m"
    speed: int = 100
    start_progress: float = 0.0
    trader_class: str | None = None
    params: dict[str, Any] = field(default_factory=dict)
    order_config: OrderConfig = field(default_factory=OrderConfig)
    indicators: list[IndicatorConfig] = field(default_factory=list)
    _config_dir: Path | None = None

    @classmethod
    def from_dict(
        cls,
        payload: dict[str, Any],
        *,
        config_dir: Path | None = None,
    ) -> "ReplayRunConfig":
        if not isinstance(payload, dict):
            raise ValueError("Replay config must be a JSON object")

        ticks_path = str(payload.get("ticks_path") or "").strip()
        report_dir = str(payload.get("report_dir") or "").strip()
        if not ticks_path:
            raise ValueError("ticks_path is required")
        if not report_dir:
            raise ValueError("report_dir is required")

        speed = int(payload.get("speed", 100))
        if speed < 1:
            raise ValueError(f"speed must be >= 1, got {speed}")
        start_progress = float(payload.get("start_progress", 0.0))
        if not math.isfinite(start_progress) or not 0.0 <= start_progress <= 1.0:
            raise ValueError(f"start_progress must be within [0, 1], got {start_progress}")

        params = payload.get("params") or {}
        if not isinstance(params, dict):
            raise ValueError("params must be a JSON object")
        indicators_raw = payload.get("indicators") or []
        if not isinstance(indicators_raw, list):
            raise ValueError("indicators must be a list")

        trader_class = str(payload.get("trader_class") or "").strip() or None
        return cls(
            ticks_path=Path(ticks_path),
            report_dir=Path(report_dir),
            instrument=normalize_instrument(str(payload.get("instrument") or "NQ")),
            timeframe=normalize_timeframe(str(payload.get("timeframe") or "5m")),
            speed=speed,
            start_progress=start_progress,
            trader_class=trader_class,
            params=dict(params),
            order_config=OrderConfig.from_raw(payload.get("order_config")),
            indicators=[IndicatorConfig.from_raw(item) for item in indicators_raw],
            _config_dir=config_dir,
        )

    @classmethod
    def from_path(cls, path: str | Path) -> "ReplayRunConfig":
        config_path = Path(path)
        payload = json.loads(config_path.read_text(encoding="utf-8"))
        config = cls.from_dict(payload, config_dir=config_path.parent)
        if not config.ticks_path.is_absolute():
            config.ticks_path = (config_path.parent / config.ticks_path).resolve()
        if not config.report_dir.is_absolute():
            config.report_dir = (config_path.parent / config.report_dir).resolve()
        return config

    def to_dict(self) -> dict[str, Any]:
        return {
            "ticks_path": str(self.ticks_path),
            "report_dir": str(self.report_dir),
            "instrument": self.instrument,
            "timeframe": self.timeframe,
            "speed": int(self.speed),
            "start_progress": float(self.start_progress),
            "trader_class": self.trader_class,
            "params": dict(self.params),
            "order_config": self.order_config.to_dict(),
            "indicators": [item.to_dict() for item in self.indicators],
        }


class Trader(Protocol):
    def on_tick(self, api: "SessionApi") -> Any:
        ...


class SessionApi:
    """Bounded session view handed to a trader on every processed tick."""

    def __init__(self, session: ReplaySession):
        self._session = session
        self._tick: Tick | None = None
        self._tick_index: int | None = None

    def _set_tick(self, tick: Tick, index: int) -> None:
        self._tick = tick
        self._tick_index = int(index)

    def now_ms(self) -> int:
        if self._tick is None:
            raise RuntimeError("Replay clock is not active")
        return int(self._tick.timestamp)

    def tick_index(self) -> int:
        if self._tick_index is None:
            raise RuntimeError("Replay clock is not active")
        return self._tick_index

    def last_tick(self) -> Tick | None:
        return self._tick

    def last_price(self) -> float | None:
        return self._session.last_price

    def instrument(self) -> str:
        return self._session.instrument.symbol

    def timeframe(self) -> str:
        return self._session.timeframe

    def current_candle(self) -> Candle | None:
        return self._session.engine.last_candle()

    def history(self, n: int | None = None) -> list[Candle]:
        candles = self._session.candles()
        if n is None:
            return candles
        count = max(int(n), 0)
        return candles[-count:] if count else []

    def indicator(self, config: IndicatorConfig | dict[str, Any]) -> list[IndicatorValue]:
        return compute_indicator(self._session.candles(), config)

    def get_position(self) -> Position:
        return self._session.position

    def get_levels(self) -> PriceLevels:
        return self._session.levels()

    def get_stats(self) -> TradeStats:
        return self._session.stats

    def get_trades(self) -> tuple[Trade, ...]:
        return self._session.trades

    def get_recent_events(self, n: int = 10) -> tuple[SessionEvent, ...]:
        events = self._session.events
        count = max(int(n), 0)
        return events[-count:] if count else ()

    def buy(self, size: int = 1) -> Trade | None:
        return self._session.buy(size)

    def sell(self, size: int = 1) -> Trade | None:
        return self._session.sell(size)

    def flatten(self) -> Trade | None:
        return self._session.flatten()

    def update_order_config(self, partial: OrderConfig | dict[str, Any]) -> OrderConfig:
        return self._session.update_order_config(partial)


def _sanitize_module_name(path: Path) -> str:
    digest = hashlib.sha1(str(path).encode("utf-8")).hexdigest()
    return f"_replay_trader_{digest}"


def _load_trader_class(spec: str, base_dir: Path | None = None) -> type:
    raw_spec = str(spec or "").strip()
    if not raw_spec:
        raise ValueError("trader_class is required")

    if ":" in raw_spec:
        target, class_name = raw_spec.rsplit(":", 1)
    elif "." in raw_spec:
        target, class_name = raw_spec.rsplit(".", 1)
    else:
        raise ValueError(f"Invalid trader_class spec: {spec}")

    target = target.strip()
    class_name = class_name.strip()
    if not target or not class_name:
        raise ValueError(f"Invalid trader_class spec: {spec}")

    if target.endswith(".py") or "\\" in target or "/" in target:
        file_path = Path(target)
        if not file_path.is_absolute():
            file_path = ((base_dir or Path.cwd()) / file_path).resolve()
        if not file_path.exists():
            raise FileNotFoundError(f"Trader module file not found: {file_path}")
        module_spec = importlib.util.spec_from_file_location(_sanitize_module_name(file_path), file_path)
        if module_spec is None or module_spec.loader is None:
            raise ImportError(f"Unable to import trader module from {file_path}")
        module = importlib.util.module_from_spec(module_spec)
        module_spec.loader.exec_module(module)
    else:
        module = importlib.import_module(target)

    try:
        return getattr(module, class_name)
    except AttributeError as exc:
        raise ImportError(f"Trader class {class_name} not found in {target}") from exc


def _build_trader(config: ReplayRunConfig) -> Optional[Trader]:
    if not config.trader_class:
        return None
    trader_cls = _load_trader_class(config.trader_class, base_dir=config._config_dir)
    trader = trader_cls(
        instrument=config.instrument,
        timeframe=config.timeframe,
        params=dict(config.params or {}),
    )
    if not hasattr(trader, "on_tick"):
        raise TypeError(f"Trader {config.trader_class} must implement on_tick(api)")
    return trader


def run_replay(config: ReplayRunConfig) -> ReplayArtifacts:
    """Play a tick file to completion and write the report artifacts."""
    ticks = load_ticks(config.ticks_path)
    trader = _build_trader(config)
    scheduler = ManualFrameScheduler()
    callbacks = SessionCallbacks()
    session = ReplaySession(
        ticks,
        instrument=config.instrument,
        order_config=config.order_config,
        scheduler=scheduler,
        callbacks=callbacks,
        timeframe=config.timeframe,
    )
    api = SessionApi(session)
    if trader is not None:

        def _on_tick(tick: Tick, index: int) -> None:
            api._set_tick(tick, index)
            trader.on_tick(api)

        callbacks.on_tick = _on_tick

    session.set_speed(config.speed)
    if config.start_progress > 0:
        session.seek_to_progress(config.start_progress)
    start_index = session.state.current_tick_index
    logger.info(
        "Replaying %s ticks of %s on %s from index %s",
        len(ticks),
        config.instrument,
        config.timeframe,
        start_index,
    )

    session.play()
    frames = scheduler.run_until_idle()
    logger.debug("Replay drained after %s frames", frames)

    if not session.position.is_flat:
        trade = session.flatten(ExitReason.END_OF_DATA)
        if trade is not None:
            logger.info("Flattened open position at end of data, pnl=%.2f", trade.pnl or 0.0)
    session.destroy()

    start_time_ms = int(ticks.timestamp[start_index]) if start_index < len(ticks) else None
    artifacts = write_replay_artifacts(
        config.report_dir,
        trades=session.trades,
        round_trips=session.round_trips,
        events=session.events,
        candles=session.candles(),
        stats=session.stats,
        instrument=config.instrument,
        timeframe=config.timeframe,
        total_ticks=len(ticks),
        start_time_ms=start_time_ms,
        end_time_ms=ticks.end_time_ms,
        indicators=config.indicators,
        run_config=config.to_dict(),
    )
    logger.info("Report written to %s", artifacts.paths["report_dir"])
    return artifacts
