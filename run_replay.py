"""CLI for headless tick replays and candle exports."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Any

_HERE = Path(__file__).parent
if str(_HERE) not in sys.path:
    sys.path.insert(0, str(_HERE))

from core.logging_setup import setup_logging  # noqa: E402
from core.market_metadata import SUPPORTED_TIMEFRAMES, normalize_timeframe  # noqa: E402
from replay import CandleAggregator, ReplayRunConfig, load_ticks, run_replay  # noqa: E402
from replay.reporting import candles_frame  # noqa: E402


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Tick replay runtime and candle export CLI")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging verbosity",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Replay a tick file with a trader plugin from a JSON config")
    run_parser.add_argument("--config", required=True, help="Path to the replay JSON config")

    candles_parser = subparsers.add_parser("candles", help="Aggregate a tick file into a candle CSV")
    candles_parser.add_argument("--ticks", required=True, help="Input tick file (NinjaTrader text export)")
    candles_parser.add_argument(
        "--timeframe",
        default="5m",
        help=f"Candle timeframe, e.g. {', '.join(SUPPORTED_TIMEFRAMES)}",
    )
    candles_parser.add_argument("--out", required=True, help="Output CSV path")
    candles_parser.add_argument(
        "--indicator",
        action="append",
        default=[],
        metavar="TYPE[:PERIOD[:OUTPUT]]",
        help="Indicator column to add, e.g. RSI:14 or BB:20:upper (repeatable)",
    )

    return parser.parse_args(argv)


def _parse_indicator_arg(raw: str) -> dict[str, Any]:
    parts = [item.strip() for item in str(raw).split(":")]
    if not parts[0]:
        raise ValueError(f"Invalid indicator: {raw}")
    payload: dict[str, Any] = {"type": parts[0]}
    if len(parts) > 1 and parts[1]:
        try:
            payload["period"] = int(parts[1])
        except ValueError as exc:
            raise ValueError(f"Invalid indicator period in {raw}") from exc
    if len(parts) > 2 and parts[2]:
        payload["output"] = parts[2]
    return payload


def _run_replay(args: argparse.Namespace) -> int:
    logger = logging.getLogger(__name__)
    config_path = Path(args.config)
    if not config_path.exists():
        logger.error("config does not exist: %s", config_path)
        return 2

    try:
        config = ReplayRunConfig.from_path(config_path)
        artifacts = run_replay(config)
    except Exception as exc:  # surface actionable runtime/config errors
        logger.error(str(exc))
        return 3

    stats = artifacts.summary.get("stats", {})
    logger.info("Report dir: %s", artifacts.paths["report_dir"])
    logger.info("Round trips: %s", stats.get("total_trades"))
    logger.info("Total P&L: %s", stats.get("total_pnl"))
    return 0


def _run_candles(args: argparse.Namespace) -> int:
    logger = logging.getLogger(__name__)
    ticks_path = Path(args.ticks)
    if not ticks_path.exists():
        logger.error("ticks file does not exist: %s", ticks_path)
        return 4

    try:
        timeframe = normalize_timeframe(args.timeframe)
        indicators = [_parse_indicator_arg(item) for item in args.indicator]
        ticks = load_ticks(ticks_path)
        aggregator = CandleAggregator(timeframe)
        aggregator.rebuild(ticks, len(ticks))
        df = candles_frame(aggregator.snapshot(), indicators)
    except ValueError as exc:
        logger.error(str(exc))
        return 5

    out_path = Path(args.out)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(out_path, index=False)
    logger.info("Wrote %s %s candles to %s", len(df), timeframe, out_path)
    return 0


def _run(args: argparse.Namespace) -> int:
    if args.command == "run":
        return _run_replay(args)
    if args.command == "candles":
        return _run_candles(args)
    raise ValueError(f"Unknown command: {args.command}")


def main(argv: list[str] | None = None) -> None:
    args = _parse_args(argv)
    setup_logging(log_level=args.log_level)
    raise SystemExit(_run(args))


if __name__ == "__main__":
    main()
