"""Report artifacts for a finished replay session."""

from __future__ import annotations

import json
import math
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Optional, Sequence

import pandas as pd

from .indicators import indicator_frame
from .models import Candle, IndicatorConfig, RoundTrip, SessionEvent, Trade, TradeStats, ms_to_iso

TRADE_COLUMNS = ["id", "side", "price", "size", "timestamp", "time_utc", "pnl", "cumulative_pnl"]
ROUND_TRIP_COLUMNS = [
    "side",
    "entry_price",
    "exit_price",
    "size",
    "pnl",
    "mfe",
    "mae",
    "entry_time",
    "entry_time_utc",
    "exit_time",
    "exit_time_utc",
    "holding_ms",
    "holding_ticks",
    "reason",
]
EVENT_COLUMNS = ["event_type", "time_ms", "time_utc", "tick_index", "side", "price", "size", "reason"]


@dataclass
class ReplayArtifacts:
    trades: pd.DataFrame
    round_trips: pd.DataFrame
    candles: pd.DataFrame
    events: pd.DataFrame
    summary: dict[str, Any]
    paths: dict[str, str]


def _json_default(value: Any) -> Any:
    if isinstance(value, pd.Timestamp):
        return value.isoformat().replace("+00:00", "Z")
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, (set, tuple)):
        return list(value)
    if hasattr(value, "item"):
        # numpy scalars
        return value.item()
    return str(value)


def _safe_float(value: Any) -> Optional[float]:
    try:
        if pd.isna(value):
            return None
        number = float(value)
    except (TypeError, ValueError):
        return None
    if math.isinf(number):
        return None
    return number


def trades_frame(trades: Iterable[Trade]) -> pd.DataFrame:
    return pd.DataFrame([item.to_dict() for item in trades], columns=TRADE_COLUMNS)


def round_trips_frame(round_trips: Iterable[RoundTrip]) -> pd.DataFrame:
    return pd.DataFrame([item.to_dict() for item in round_trips], columns=ROUND_TRIP_COLUMNS)


def events_frame(events: Iterable[SessionEvent]) -> pd.DataFrame:
    return pd.DataFrame([item.to_dict() for item in events], columns=EVENT_COLUMNS)


def candles_frame(candles: Sequence[Candle], indicators: Iterable[IndicatorConfig | dict[str, Any]] = ()) -> pd.DataFrame:
    """Candles with a ``time_utc`` column and one column per visible indicator."""
    df = indicator_frame(candles, indicators)
    df.insert(1, "time_utc", [ms_to_iso(int(value) * 1000) for value in df["time"]])
    df.insert(7, "tick_count", [int(c.tick_count) for c in candles])
    return df


def _group_round_trips(df: pd.DataFrame, group_col: str) -> list[dict[str, Any]]:
    if df.empty:
        return []
    rows: list[dict[str, Any]] = []
    for key, group in df.groupby(group_col, sort=True):
        pnl = group["pnl"].astype(float)
        rows.append(
            {
                group_col: str(key),
                "trades": int(len(group)),
                "winners": int((pnl > 0).sum()),
                "losers": int((pnl < 0).sum()),
                "total_pnl": float(pnl.sum()),
                "avg_pnl": float(pnl.mean()),
            }
        )
    return rows


def build_summary(
    *,
    stats: TradeStats,
    round_trips: pd.DataFrame,
    instrument: str,
    timeframe: str,
    total_ticks: int,
    start_time_ms: int | None,
    end_time_ms: int | None,
    candle_count: int,
    run_config: dict[str, Any] | None = None,
) -> dict[str, Any]:
    holding = round_trips["holding_ms"].astype(float) if not round_trips.empty else pd.Series(dtype=float)
    return {
        "instrument": instrument,
        "timeframe": timeframe,
        "total_ticks": int(total_ticks),
        "start_time_utc": ms_to_iso(start_time_ms),
        "end_time_utc": ms_to_iso(end_time_ms),
        "candles": int(candle_count),
        "stats": stats.to_dict(),
        "avg_holding_ms": _safe_float(holding.mean()) if not holding.empty else 0.0,
        "avg_mfe": _safe_float(round_trips["mfe"].mean()) if not round_trips.empty else 0.0,
        "avg_mae": _safe_float(round_trips["mae"].mean()) if not round_trips.empty else 0.0,
        "breakdowns": {
            "by_side": _group_round_trips(round_trips, "side"),
            "by_reason": _group_round_trips(round_trips, "reason"),
        },
        "run_config": dict(run_config or {}),
    }


def _md_table(rows: list[dict[str, Any]], columns: list[str]) -> str:
    if not rows:
        return "_No rows_\n"
    header = "| " + " | ".join(columns) + " |"
    sep = "| " + " | ".join(["---"] * len(columns)) + " |"
    body: list[str] = []
    for row in rows:
        values: list[str] = []
        for col in columns:
            value = row.get(col)
            if isinstance(value, float):
                values.append(f"{value:.6g}")
            elif value is None:
                values.append("")
            else:
                values.append(str(value))
        body.append("| " + " | ".join(values) + " |")
    return "\n".join([header, sep, *body]) + "\n"


def render_report(summary: dict[str, Any]) -> str:
    stats = summary.get("stats", {})
    sections: list[str] = [
        f"# Replay Report: {summary.get('instrument')} {summary.get('timeframe')}",
        "",
        f"- Ticks: `{summary.get('total_ticks')}`",
        f"- Range: `{summary.get('start_time_utc')}` to `{summary.get('end_time_utc')}`",
        f"- Candles: `{summary.get('candles')}`",
        "",
        "## Trade Stats",
        "",
        _md_table(
            [
                {"metric": "Round trips", "value": stats.get("total_trades")},
                {"metric": "Winners", "value": stats.get("winners")},
                {"metric": "Losers", "value": stats.get("losers")},
                {"metric": "Win rate", "value": stats.get("win_rate")},
                {"metric": "Total P&L", "value": stats.get("total_pnl")},
                {"metric": "Average win", "value": stats.get("avg_win")},
                {"metric": "Average loss", "value": stats.get("avg_loss")},
                {"metric": "Profit factor", "value": stats.get("profit_factor")},
                {"metric": "Max drawdown", "value": stats.get("max_drawdown")},
                {"metric": "Largest win", "value": stats.get("largest_win")},
                {"metric": "Largest loss", "value": stats.get("largest_loss")},
                {"metric": "Avg holding ticks", "value": stats.get("avg_holding_ticks")},
            ],
            ["metric", "value"],
        ).rstrip(),
        "",
        "## Breakdowns",
        "",
    ]
    columns = ["trades", "winners", "losers", "total_pnl", "avg_pnl"]
    for title, key in [("By Side", "side"), ("By Exit Reason", "reason")]:
        sections.append(f"### {title}")
        sections.append("")
        sections.append(_md_table(summary.get("breakdowns", {}).get(f"by_{key}", []), [key, *columns]).rstrip())
        sections.append("")
    return "\n".join(sections)


def write_replay_artifacts(
    report_dir: str | Path,
    *,
    trades: Sequence[Trade],
    round_trips: Sequence[RoundTrip],
    events: Sequence[SessionEvent],
    candles: Sequence[Candle],
    stats: TradeStats,
    instrument: str,
    timeframe: str,
    total_ticks: int,
    start_time_ms: int | None = None,
    end_time_ms: int | None = None,
    indicators: Iterable[IndicatorConfig | dict[str, Any]] = (),
    run_config: dict[str, Any] | None = None,
) -> ReplayArtifacts:
    """Write CSV/JSON/Markdown artifacts and return the frames behind them."""
    out_dir = Path(report_dir)
    out_dir.mkdir(parents=True, exist_ok=True)

    trades_df = trades_frame(trades)
    round_trips_df = round_trips_frame(round_trips)
    events_df = events_frame(events)
    candles_df = candles_frame(candles, indicators)
    summary = build_summary(
        stats=stats,
        round_trips=round_trips_df,
        instrument=instrument,
        timeframe=timeframe,
        total_ticks=total_ticks,
        start_time_ms=start_time_ms,
        end_time_ms=end_time_ms,
        candle_count=len(candles_df),
        run_config=run_config,
    )

    paths = {
        "report_dir": out_dir,
        "trades_csv": out_dir / "trades.csv",
        "round_trips_csv": out_dir / "round_trips.csv",
        "candles_csv": out_dir / "candles.csv",
        "events_csv": out_dir / "events.csv",
        "summary_json": out_dir / "summary.json",
        "report_md": out_dir / "report.md",
        "run_config_json": out_dir / "run_config.json",
    }
    trades_df.to_csv(paths["trades_csv"], index=False)
    round_trips_df.to_csv(paths["round_trips_csv"], index=False)
    candles_df.to_csv(paths["candles_csv"], index=False)
    events_df.to_csv(paths["events_csv"], index=False)
    paths["summary_json"].write_text(json.dumps(summary, indent=2, default=_json_default), encoding="utf-8")
    paths["report_md"].write_text(render_report(summary), encoding="utf-8")
    paths["run_config_json"].write_text(
        json.dumps(dict(run_config or {}), indent=2, default=_json_default),
        encoding="utf-8",
    )

    return ReplayArtifacts(
        trades=trades_df,
        round_trips=round_trips_df,
        candles=candles_df,
        events=events_df,
        summary=summary,
        paths={key: str(value) for key, value in paths.items()},
    )
