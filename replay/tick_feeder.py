"""Tick file loader for NinjaTrader-style text exports."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Iterator, Sequence

import numpy as np
import pandas as pd

from .models import Tick

logger = logging.getLogger(__name__)

_EPOCH_UTC = datetime(1970, 1, 1, tzinfo=timezone.utc)
_MIN_LINE_LENGTH = 16
_ARRAY_COLUMNS: tuple[str, ...] = ("timestamp", "price", "bid", "ask", "volume")


def _to_float(raw: str) -> float:
    text = raw.strip()
    if not text:
        return 0.0
    try:
        return float(text)
    except ValueError:
        return math.nan


def _to_volume(raw: str) -> int:
    value = _to_float(raw)
    if not math.isfinite(value):
        return 0
    return int(value)


def _parse_timestamp_ms(date_part: str, time_part: str, fraction: str = "") -> int | None:
    if not (date_part.isdigit() and time_part.isdigit()):
        return None
    try:
        dt_value = datetime(
            int(date_part[0:4]),
            int(date_part[4:6]),
            int(date_part[6:8]),
            int(time_part[0:2]),
            int(time_part[2:4]),
            int(time_part[4:6]),
            tzinfo=timezone.utc,
        )
    except ValueError:
        return None

    delta = dt_value - _EPOCH_UTC
    millis = ((delta.days * 86400) + delta.seconds) * 1000
    if fraction.isdigit():
        # Sub-second field is a decimal fraction of any width (FFF or FFFFFFF).
        millis += int((fraction + "000")[:3])
    return millis


def parse_tick_line(line: str) -> Tick | None:
    """
    Parse one line of a tick export, returning None for headers or junk.

    Supported layouts:
    - ``YYYYMMDD HHmmss;O;H;L;C;V``: price=C, bid=L, ask=H
    - ``YYYYMMDD HHmmss FFFFFFF;Last;Bid;Ask;V``
    """
    line = line.lstrip("\ufeff").rstrip("\r\n")
    if len(line) < _MIN_LINE_LENGTH or not line[0].isdigit():
        return None

    date_part = line[0:8]
    time_part = line[9:15]
    rest = line[15:]
    separator = rest[0]
    if separator not in (";", " "):
        return None

    fields = rest[1:].split(";")
    if len(fields) < 5:
        return None

    if separator == ";" and len(fields) == 5:
        timestamp = _parse_timestamp_ms(date_part, time_part)
        if timestamp is None:
            return None
        close = _to_float(fields[3])
        if math.isnan(close):
            return None
        return Tick(
            timestamp=timestamp,
            price=close,
            bid=_to_float(fields[2]),
            ask=_to_float(fields[1]),
            volume=_to_volume(fields[4]),
        )

    fraction = fields[0].strip() if separator == " " else ""
    timestamp = _parse_timestamp_ms(date_part, time_part, fraction)
    if timestamp is None:
        return None
    price = _to_float(fields[1])
    if math.isnan(price):
        return None
    return Tick(
        timestamp=timestamp,
        price=price,
        bid=_to_float(fields[2]),
        ask=_to_float(fields[3]),
        volume=_to_volume(fields[4]),
    )


@dataclass(frozen=True)
class TickSeries:
    """Immutable columnar tick container, ascending by timestamp."""

    timestamp: np.ndarray
    price: np.ndarray
    bid: np.ndarray
    ask: np.ndarray
    volume: np.ndarray

    @property
    def rows(self) -> int:
        return int(self.timestamp.size)

    def __len__(self) -> int:
        return self.rows

    def __iter__(self) -> Iterator[Tick]:
        for index in range(self.rows):
            yield self.tick_at(index)

    @property
    def start_time_ms(self) -> int | None:
        if self.rows == 0:
            return None
        return int(self.timestamp[0])

    @property
    def end_time_ms(self) -> int | None:
        if self.rows == 0:
            return None
        return int(self.timestamp[-1])

    def tick_at(self, index: int) -> Tick:
        return Tick(
            timestamp=int(self.timestamp[index]),
            price=float(self.price[index]),
            bid=float(self.bid[index]),
            ask=float(self.ask[index]),
            volume=int(self.volume[index]),
        )

    def slice_by_index(self, start_idx: int, end_idx: int) -> TickSeries:
        start = max(0, int(start_idx))
        end = min(self.rows, int(end_idx))
        if end < start:
            end = start
        return TickSeries(
            timestamp=self.timestamp[start:end],
            price=self.price[start:end],
            bid=self.bid[start:end],
            ask=self.ask[start:end],
            volume=self.volume[start:end],
        )

    def index_at_or_after(self, time_ms: int) -> int:
        """First tick index whose timestamp is >= ``time_ms``."""
        return int(np.searchsorted(self.timestamp, int(time_ms), side="left"))

    def to_ticks(self) -> list[Tick]:
        return list(self)

    def to_dataframe(self) -> pd.DataFrame:
        return pd.DataFrame(
            {
                "time": pd.to_datetime(self.timestamp, unit="ms", utc=True),
                "timestamp": self.timestamp,
                "price": self.price,
                "bid": self.bid,
                "ask": self.ask,
                "volume": self.volume,
            }
        )

    @classmethod
    def from_ticks(cls, ticks: Iterable[Tick]) -> TickSeries:
        items = list(ticks)
        if not items:
            return empty_series()
        series = cls(
            timestamp=np.asarray([item.timestamp for item in items], dtype=np.int64),
            price=np.asarray([item.price for item in items], dtype=np.float64),
            bid=np.asarray([item.bid for item in items], dtype=np.float64),
            ask=np.asarray([item.ask for item in items], dtype=np.float64),
            volume=np.asarray([item.volume for item in items], dtype=np.int64),
        )
        return _stable_sort(series)


def empty_series() -> TickSeries:
    return TickSeries(
        timestamp=np.asarray([], dtype=np.int64),
        price=np.asarray([], dtype=np.float64),
        bid=np.asarray([], dtype=np.float64),
        ask=np.asarray([], dtype=np.float64),
        volume=np.asarray([], dtype=np.int64),
    )


def as_tick_series(value: Any) -> TickSeries:
    """Accept a TickSeries or any sequence of Tick records."""
    if isinstance(value, TickSeries):
        return value
    if value is None:
        return empty_series()
    return TickSeries.from_ticks(value)


def _stable_sort(series: TickSeries) -> TickSeries:
    if series.rows <= 1:
        return series
    if bool(np.all(series.timestamp[:-1] <= series.timestamp[1:])):
        return series

    # Equal timestamps keep file order; duplicates are legitimate trades.
    order = np.argsort(series.timestamp, kind="mergesort")
    return TickSeries(
        timestamp=series.timestamp[order],
        price=series.price[order],
        bid=series.bid[order],
        ask=series.ask[order],
        volume=series.volume[order],
    )


def parse_tick_lines(lines: Iterable[str]) -> TickSeries:
    """Parse raw text lines, dropping anything that is not a tick row."""
    columns: dict[str, list[Any]] = {name: [] for name in _ARRAY_COLUMNS}
    skipped = 0
    for line in lines:
        tick = parse_tick_line(line)
        if tick is None:
            skipped += 1
            continue
        columns["timestamp"].append(tick.timestamp)
        columns["price"].append(tick.price)
        columns["bid"].append(tick.bid)
        columns["ask"].append(tick.ask)
        columns["volume"].append(tick.volume)

    if skipped:
        logger.debug("Skipped %s non-tick lines", skipped)
    if not columns["timestamp"]:
        return empty_series()

    series = TickSeries(
        timestamp=np.asarray(columns["timestamp"], dtype=np.int64),
        price=np.asarray(columns["price"], dtype=np.float64),
        bid=np.asarray(columns["bid"], dtype=np.float64),
        ask=np.asarray(columns["ask"], dtype=np.float64),
        volume=np.asarray(columns["volume"], dtype=np.int64),
    )
    return _stable_sort(series)


def load_ticks(path: str | Path) -> TickSeries:
    """Load a tick export from disk. An unreadable path raises FileNotFoundError."""
    tick_path = Path(path)
    if not tick_path.is_file():
        raise FileNotFoundError(f"Tick file not found: {tick_path}")

    # utf-8-sig drops a leading BOM; universal newlines drop \r.
    with tick_path.open("r", encoding="utf-8-sig", errors="replace") as handle:
        series = parse_tick_lines(handle)

    if series.rows == 0:
        logger.warning("Tick file has no parsable rows: %s", tick_path)
    else:
        logger.info(
            "Loaded %s ticks from %s (%s .. %s)",
            series.rows,
            tick_path.name,
            pd.Timestamp(series.start_time_ms, unit="ms", tz="UTC"),
            pd.Timestamp(series.end_time_ms, unit="ms", tz="UTC"),
        )
    return series


def write_ticks(path: str | Path, ticks: Sequence[Tick] | TickSeries) -> Path:
    """Write ticks in the sub-second layout so they load back without loss."""
    out_path = Path(path)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    lines: list[str] = []
    for tick in as_tick_series(ticks):
        stamp = pd.Timestamp(tick.timestamp, unit="ms", tz="UTC")
        millis = tick.timestamp % 1000
        lines.append(
            f"{stamp:%Y%m%d %H%M%S} {millis:03d}0000;{tick.price};{tick.bid};{tick.ask};{tick.volume}"
        )
    out_path.write_text("\n".join(lines) + ("\n" if lines else ""), encoding="utf-8")
    return out_path
