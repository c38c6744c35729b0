import asyncio
import itertools
import sys
from collections import deque

sys.path.insert(0, '.')

import pytest

from ingest.persister import MemoryStore
from strategy.instruments import Instrument
from strategy.signal_manager import (
    CROSS_DOWN,
    CROSS_UP,
    SignalHistory,
    SignalManager,
    crossover,
    has_crossed_down,
    has_crossed_up,
)


class BrokenStore:
    async def find_latest_averages(self, exchange, symbol):
        raise ConnectionError("db down")

    async def append_averages(self, exchange, symbol, fast, slow):
        raise ConnectionError("db down")


def _instrument(closes):
    return Instrument(
        symbol="BTCUSDT",
        base_asset="BTC",
        ask=101.0,
        bid=100.0,
        min_qty="0.001",
        tick_size="0.01",
        closes=deque(closes, maxlen=100),
    )


def test_history_evicts_oldest_first():
    history = SignalHistory(capacity=10)
    for i in range(15):
        history.append(float(i), float(i) + 0.5)
    assert len(history) == 10
    assert list(history.fast) == [float(i) for i in range(5, 15)]
    assert list(history.slow) == [float(i) + 0.5 for i in range(5, 15)]


def test_history_rejects_unpaired_series():
    with pytest.raises(ValueError):
        SignalHistory(10, [1.0, 2.0], [1.0])


def test_crossovers_need_two_points():
    assert not has_crossed_up(SignalHistory(10))
    assert not has_crossed_down(SignalHistory(10, [5.0], [1.0]))
    assert crossover(SignalHistory(10, [5.0], [1.0])) is None


def test_cross_up_and_down():
    up = SignalHistory(10, [1.0, 2.0, 3.0], [3.0, 3.0, 3.0])
    assert has_crossed_up(up)
    assert crossover(up) == CROSS_UP

    down = SignalHistory(10, [5.0, 4.0], [4.5, 4.0])
    assert has_crossed_down(down)
    assert crossover(down) == CROSS_DOWN

    flat = SignalHistory(10, [1.0, 2.0, 3.0, 4.0, 5.0], [3.0, 3.0, 3.0, 3.0, 4.0])
    assert crossover(flat) is None


def test_crossovers_are_mutually_exclusive():
    values = [1.0, 2.0, 3.0]
    for f1, s1, f2, s2 in itertools.product(values, repeat=4):
        history = SignalHistory(10, [f1, f2], [s1, s2])
        up = has_crossed_up(history)
        down = has_crossed_down(history)
        assert not (up and down)
        assert up == (f2 >= s2 and f1 < s1)
        assert down == (f2 <= s2 and f1 > s1)


def test_seed_keeps_most_recent_points():
    manager = SignalManager("binance", capacity=10, seed_points=4)
    history = manager.seed("BTCUSDT", [1.0, 2.0, 3.0, 4.0, 5.0], [3.0, 3.0, 3.0, 3.0, 4.0])
    assert list(history.fast) == [2.0, 3.0, 4.0, 5.0]
    assert list(history.slow) == [3.0, 3.0, 3.0, 4.0]
    assert manager.history("BTCUSDT") is history


def test_seed_from_store_and_refresh_appends_both_histories():
    async def _run():
        store = MemoryStore()
        for fast, slow in [(1.0, 2.0), (2.0, 2.5), (3.0, 2.8), (4.0, 3.0), (5.0, 3.5)]:
            await store.append_averages("binance", "BTCUSDT", fast, slow)

        manager = SignalManager("binance", store=store, fast_window=3, slow_window=5)
        await manager.seed_from_store(["BTCUSDT", "ETHUSDT"])
        assert len(manager.history("BTCUSDT")) == 4
        assert len(manager.history("ETHUSDT")) == 0

        fast, slow = await manager.refresh(_instrument([float(i) for i in range(1, 21)]))
        assert fast > slow
        assert manager.history("BTCUSDT").fast[-1] == fast
        stored = await store.find_latest_averages("binance", "BTCUSDT")
        assert len(stored["fast"]) == 6
        assert stored["slow"][-1] == slow

    asyncio.run(_run())


def test_store_failures_do_not_stop_signal_refresh():
    async def _run():
        manager = SignalManager("binance", store=BrokenStore(), fast_window=3, slow_window=5)
        await manager.seed_from_store(["BTCUSDT"])
        await manager.refresh(_instrument([1.0, 2.0, 3.0, 4.0, 5.0, 6.0]))
        assert len(manager.history("BTCUSDT")) == 1

    asyncio.run(_run())


def test_compute_requires_closes():
    manager = SignalManager("binance")
    with pytest.raises(ValueError):
        manager.compute([])
