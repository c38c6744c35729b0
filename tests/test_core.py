#!/usr/bin/env python
"""
Unit tests for sizing, smoothing, stop-loss and profit helpers
"""
import sys
from collections import deque
from decimal import Decimal
sys.path.insert(0, '.')

import pytest

from analytics.indicators import ema, last_value
from analytics.profit import calculate_profit, closed_trades
from risk.position_sizer import PositionSizer, filter_quantity, step_decimals
from risk.stop_loss import ACTION_ENTER, ACTION_EXIT, ACTION_NONE, ACTION_RATCHET, StopLossBook, StopLossTracker
from strategy.instruments import Instrument
from strategy.transports.base import (
    Balance,
    MalformedPayloadError,
    PriceQuote,
    TradeFill,
    format_decimal,
    parse_float,
)


def _instrument(min_qty="0.001", ask=20000.0, bid=19990.0):
    return Instrument(
        symbol="BTCUSDT",
        base_asset="BTC",
        ask=ask,
        bid=bid,
        min_qty=min_qty,
        tick_size="0.01",
        closes=deque([1.0, 2.0, 3.0], maxlen=100),
    )


def test_filter_quantity_examples():
    assert filter_quantity(0.1234, "0.001") == 0.123
    assert filter_quantity(7, "1") == 7
    assert filter_quantity(0.00999, "0.01") == 0.0
    assert filter_quantity(1.23456789, "0.00001000") == 1.23456
    assert filter_quantity(15.7, "5") == 15


def test_filter_quantity_is_floored_multiple_of_step():
    for qty in (0.1, 0.33333, 1.999999, 12.3456, 1000.0001):
        for step in ("0.001", "0.01", "0.1", "1", "0.00001"):
            result = filter_quantity(qty, step)
            assert result <= qty
            assert Decimal(str(result)) % Decimal(step) == 0
            decimals = step_decimals(step)
            assert round(result, decimals) == result


def test_filter_quantity_rejects_bad_step():
    with pytest.raises(MalformedPayloadError):
        filter_quantity(1.0, "0")
    with pytest.raises(MalformedPayloadError):
        filter_quantity(1.0, "abc")
    assert filter_quantity(-1.0, "0.1") == 0.0


def test_step_decimals():
    assert step_decimals("0.001") == 3
    assert step_decimals("0.00100000") == 3
    assert step_decimals("1") == 0
    assert step_decimals("10") == 0


def test_allocation_reserves_margin():
    sizer = PositionSizer("USDT", instrument_count=2, margin_pct=0.10, excluded_currencies=["BNB"])
    balances = [
        Balance("USDT", 500.0),
        Balance("BTC", 0.01),
        Balance("BNB", 10.0),
        Balance("ETH", 1.0),
    ]
    quotes = {
        "BTCUSDT": PriceQuote("BTCUSDT", ask=20010.0, bid=20000.0),
        "BNBUSDT": PriceQuote("BNBUSDT", ask=300.0, bid=299.0),
    }
    allocation = sizer.compute_allocation(balances, quotes)

    # BNB is excluded and ETH has no price; value = 500 + 0.01 * 20000
    assert allocation.total_value == pytest.approx(700.0)
    assert allocation.amount == pytest.approx(700.0 * 0.9 / 2)
    assert allocation.amount * sizer.instrument_count <= allocation.total_value * 0.9 + 1e-9
    assert [b.asset for b in allocation.balances] == ["BTC"]


def test_allocation_margin_for_twelve_percent_variant():
    sizer = PositionSizer("USD", instrument_count=3, margin_pct=0.12)
    allocation = sizer.compute_allocation([Balance("USD", 300.0)], {})
    assert allocation.amount == pytest.approx(300.0 * 0.88 / 3)


def test_classify_side_flat_and_holding():
    sizer = PositionSizer("USDT", instrument_count=1)
    instrument = _instrument()

    side, qty = sizer.classify_side(instrument, [Balance("BTC", 0.0005)], amount=315.0)
    assert side == "buy"
    assert qty == 0.015

    side, qty = sizer.classify_side(instrument, [Balance("BTC", 0.0123456)], amount=315.0)
    assert side == "sell"
    assert qty == 0.012

    # exactly at the minimum still counts as flat
    side, _ = sizer.classify_side(instrument, [Balance("BTC", 0.001)], amount=315.0)
    assert side == "buy"


def test_ema_shapes():
    closes = [float(i) for i in range(1, 51)]
    fast = ema(closes, 9)
    assert len(fast) == len(closes)
    assert last_value(fast) == pytest.approx(46.0)

    short = ema([1.0, 2.0, 3.0], 34)
    assert len(short) == 3
    assert last_value(short) == pytest.approx(2.0)

    assert ema([5.0], 9) == [5.0]
    assert ema([], 9) == []


def test_last_value_rejects_empty_and_nan():
    with pytest.raises(ValueError):
        last_value([])
    with pytest.raises(ValueError):
        last_value([1.0, float("nan")])


def test_stop_loss_ratchets_then_exits():
    tracker = StopLossTracker("BTCUSDT")
    assert not tracker.armed
    assert tracker.evaluate("sell", 100.0, 10.0) is ACTION_NONE

    assert tracker.arm("sell", ask=100.0, bid=99.0, threshold=10.0) == 100.0
    assert tracker.evaluate("sell", 105.0, 10.0) == ACTION_RATCHET
    assert tracker.anchor == 105.0
    assert tracker.evaluate("sell", 96.0, 10.0) is ACTION_NONE
    assert tracker.evaluate("sell", 95.0, 10.0) == ACTION_EXIT


def test_stop_loss_entry_when_flat():
    tracker = StopLossTracker("BTCUSDT")
    assert tracker.arm("buy", ask=100.0, bid=90.0, threshold=10.0) == 100.0
    assert tracker.evaluate("buy", 89.0, 10.0) is ACTION_NONE
    assert tracker.evaluate("buy", 90.0, 10.0) == ACTION_ENTER
    tracker.disarm()
    assert tracker.evaluate("buy", 200.0, 10.0) is ACTION_NONE


def test_stop_loss_book():
    book = StopLossBook(["A", "B"], threshold=5.0)
    assert not book.any_armed()
    book.tracker("A").arm("sell", 10.0, 9.0, book.threshold)
    assert book.armed_symbols() == ["A"]
    book.disarm_all()
    assert not book.any_armed()


def test_profit_from_closed_trades():
    trades = [
        TradeFill("BTCUSDT", "buy", price=100.0, quantity=1.0, fee=1.0, timestamp_ms=1),
        TradeFill("BTCUSDT", "sell", price=120.0, quantity=1.0, fee=1.0, timestamp_ms=2),
        TradeFill("BTCUSDT", "buy", price=130.0, quantity=1.0, fee=1.0, timestamp_ms=3),
    ]
    # the last buy is still open and does not count
    assert len(closed_trades(trades, 0, 10)) == 2
    assert calculate_profit(trades, 0, 10) == pytest.approx(119.0 - 101.0)
    assert calculate_profit(trades, 3, 10) == 0.0
    assert calculate_profit(list(reversed(trades)), 0, 10) == pytest.approx(18.0)


def test_parse_float_is_strict():
    assert parse_float("1.5", "price") == 1.5
    assert parse_float(2, "qty") == 2.0
    for bad in (None, "", "abc", "nan", "inf", True):
        with pytest.raises(MalformedPayloadError):
            parse_float(bad, "field")


def test_format_decimal_avoids_exponent():
    assert format_decimal(0.00001) == "0.00001"
    assert format_decimal(7.0) == "7"
    assert format_decimal(0.123) == "0.123"
