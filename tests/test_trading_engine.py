import math

import pytest

from core.market_metadata import NQ_CONFIG, InstrumentConfig
from replay.models import ExitReason, OrderSide, PositionSide
from replay.trading import TradingEngine


def test_long_round_trip_pnl_and_stats():
    engine = TradingEngine(NQ_CONFIG)
    opening = engine.buy(100.0, 1, timestamp=0)
    closing = engine.sell(105.0, 1, timestamp=1000, tick_index=1)

    assert opening.pnl is None and not opening.is_closing
    assert closing.side is OrderSide.SELL
    assert closing.pnl == pytest.approx(100.0)
    assert closing.cumulative_pnl == pytest.approx(100.0)
    assert engine.realized_pnl == pytest.approx(100.0)
    assert engine.get_position().is_flat

    stats = engine.get_stats()
    assert stats.total_trades == 1
    assert stats.winners == 1
    assert stats.losers == 0
    assert stats.win_rate == 1.0
    assert math.isinf(stats.profit_factor)
    assert stats.to_dict()["profit_factor"] == "inf"
    assert stats.largest_win == pytest.approx(100.0)


def test_short_round_trip():
    engine = TradingEngine("NQ")
    engine.sell(100.0, 2, timestamp=0)
    position = engine.get_position()
    assert position.side is PositionSide.SHORT
    assert position.size == 2

    trade = engine.buy(90.0, 1, timestamp=5)
    # Closing ignores the requested size and exits the whole position.
    assert trade.size == 2
    assert trade.pnl == pytest.approx(400.0)


def test_adding_moves_entry_to_weighted_average():
    engine = TradingEngine(NQ_CONFIG)
    engine.buy(100.0, 1, timestamp=0)
    engine.buy(110.0, 3, timestamp=1)
    position = engine.get_position()
    assert position.size == 4
    assert position.entry_price == pytest.approx(107.5)

    trade = engine.sell(120.0, 1, timestamp=2)
    assert trade.pnl == pytest.approx((120.0 - 107.5) * 4 * 20)
    assert len(engine.get_trades()) == 3
    assert len(engine.get_round_trips()) == 1


def test_losing_trade_stats_use_negative_values():
    engine = TradingEngine(NQ_CONFIG)
    engine.buy(100.0, 1, timestamp=0)
    engine.sell(99.0, 1, timestamp=120_000, tick_index=2)
    stats = engine.get_stats()
    assert stats.losers == 1
    assert stats.avg_loss == pytest.approx(-20.0)
    assert stats.largest_loss == pytest.approx(-20.0)
    assert stats.profit_factor == 0.0
    assert stats.win_rate == 0.0
    assert stats.max_drawdown == pytest.approx(20.0)


def test_profit_factor_is_gross_wins_over_gross_losses():
    engine = TradingEngine(InstrumentConfig("X", "Test", 1.0, 1.0, 1.0))
    for entry, exit_ in [(100, 110), (100, 95), (100, 102)]:
        engine.buy(entry, 1, timestamp=0)
        engine.sell(exit_, 1, timestamp=1)
    stats = engine.get_stats()
    assert stats.profit_factor == pytest.approx(12.0 / 5.0)
    assert stats.avg_win == pytest.approx(6.0)
    assert stats.total_pnl == pytest.approx(7.0)


def test_max_drawdown_never_decreases():
    engine = TradingEngine(InstrumentConfig("X", "Test", 1.0, 1.0, 1.0))
    drawdowns = []
    for exit_price in [110, 90, 105, 70, 130, 120]:
        engine.buy(100, 1, timestamp=0)
        engine.sell(exit_price, 1, timestamp=1)
        drawdowns.append(engine.get_stats().max_drawdown)
    assert drawdowns == sorted(drawdowns)
    # Cumulative: 10, 0, 5, -25, 5, 25; worst peak-to-trough is 10 -> -25.
    assert drawdowns[-1] == pytest.approx(35.0)


def test_unrealized_pnl_tracks_excursions():
    engine = TradingEngine(NQ_CONFIG)
    assert engine.update_unrealized_pnl(100.0) == 0.0
    engine.buy(100.0, 1, timestamp=0, tick_index=3)
    assert engine.update_unrealized_pnl(105.0) == pytest.approx(100.0)
    assert engine.update_unrealized_pnl(95.0) == pytest.approx(-100.0)
    assert engine.get_position().unrealized_pnl == pytest.approx(-100.0)

    engine.sell(102.0, 1, timestamp=4000, tick_index=8)
    round_trip = engine.get_round_trips()[0]
    assert round_trip.mfe == pytest.approx(100.0)
    assert round_trip.mae == pytest.approx(-100.0)
    assert round_trip.holding_ticks == 5
    assert round_trip.holding_ms == 4000
    assert round_trip.reason is ExitReason.MANUAL
    assert engine.get_stats().avg_holding_ticks == pytest.approx(5.0)


def test_flatten_when_flat_returns_none():
    engine = TradingEngine(NQ_CONFIG)
    assert engine.flatten(100.0, timestamp=0) is None
    assert engine.get_trades() == ()


def test_flatten_records_reason():
    engine = TradingEngine(NQ_CONFIG)
    engine.sell(100.0, 1, timestamp=0)
    trade = engine.flatten(101.0, timestamp=10, reason="end_of_data")
    assert trade.side is OrderSide.BUY
    assert trade.pnl == pytest.approx(-20.0)
    assert engine.get_round_trips()[0].reason is ExitReason.END_OF_DATA


def test_reset_clears_everything():
    engine = TradingEngine(NQ_CONFIG)
    engine.buy(100.0, 1, timestamp=0)
    engine.sell(101.0, 1, timestamp=1)
    engine.buy(100.0, 1, timestamp=2)
    engine.reset()
    assert engine.get_position().is_flat
    assert engine.get_trades() == ()
    assert engine.get_stats().total_trades == 0
    assert engine.realized_pnl == 0.0
    assert engine.sell(100.0, 1, timestamp=3).id == "trade-1"
