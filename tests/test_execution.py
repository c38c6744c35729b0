import asyncio
import sys
from collections import deque

sys.path.insert(0, '.')

from ingest.persister import MemoryStore
from strategy.execution import ExecutionManager
from strategy.execution_types import (
    STATUS_CANCELED,
    STATUS_FILLED,
    STATUS_NEW,
    STATUS_PARTIALLY_FILLED,
    OrderTicket,
)
from strategy.instruments import Instrument, PriceSnapshot
from strategy.transports.base import AdapterSettings, ExchangeAdapter, ExchangeError, PriceQuote


class DummyAlerts:
    def __init__(self):
        self.failures = []
        self.persistence = []
        self.orders = []

    async def order_failure_alert(self, exchange, symbol, side, reason):
        self.failures.append((exchange, symbol, side, reason))

    async def persistence_alert(self, exchange, order_id, symbol):
        self.persistence.append((exchange, order_id, symbol))

    async def order_alert(self, exchange, symbol, side, quantity, price):
        self.orders.append((exchange, symbol, side, quantity, price))


class FakeAdapter(ExchangeAdapter):
    """Scripted order responses; counts lifecycle calls."""

    def __init__(self, submit=None, poll=None, cancel=None, submit_error=None):
        super().__init__(AdapterSettings(name="fake", quote_currency="USDT", order_type="MARKET"))
        self.submit_response = submit
        self.poll_response = poll
        self.cancel_response = cancel
        self.submit_error = submit_error
        self.submitted = []
        self.polled = []
        self.cancelled = []

    async def get_balances(self):
        return []

    async def get_ticker(self, symbol=None):
        return []

    async def get_candles(self, symbol, period):
        return []

    async def get_symbol_rules(self, symbols):
        return {}

    async def submit_order(self, symbol, side, order_type, quantity, client_order_id=None):
        self.submitted.append((symbol, side, order_type, quantity, client_order_id))
        if self.submit_error is not None:
            raise self.submit_error
        return self.submit_response

    async def get_order(self, symbol, order_id):
        self.polled.append(order_id)
        return self.poll_response

    async def cancel_order(self, symbol, order_id):
        self.cancelled.append(order_id)
        return self.cancel_response

    def subscribe_price_feed(self, symbols):
        raise NotImplementedError

    async def get_my_trades(self, symbol, start_ms, end_ms):
        return []


class NoRecordStore(MemoryStore):
    async def create_order_record(self, order, exchange):
        self.attempts = getattr(self, 'attempts', 0) + 1
        return None


def _ticket(status, executed, fee=0.0, order_id="42"):
    return OrderTicket(
        symbol="BTCUSDT",
        side="buy",
        type="MARKET",
        quantity=1.0,
        status=status,
        executed_qty=executed,
        price=100.0,
        fee=fee,
        client_order_id="xo-1",
        exchange_order_id=order_id,
    )


def _instrument():
    return Instrument(
        symbol="BTCUSDT",
        base_asset="BTC",
        ask=100.0,
        bid=99.0,
        min_qty="0.001",
        tick_size="0.01",
        closes=deque(maxlen=100),
    )


def _manager(adapter, store=None, snapshot=None):
    return ExecutionManager(
        adapter,
        store if store is not None else MemoryStore(),
        snapshot or PriceSnapshot(),
        poll_delay_s=0,
        alerts=DummyAlerts(),
    )


def test_immediate_fill_skips_poll_and_cancel():
    async def _run():
        adapter = FakeAdapter(submit=_ticket(STATUS_FILLED, 1.0, fee=0.1))
        snapshot = PriceSnapshot()
        snapshot.update(PriceQuote("BTCUSDT", ask=101.0, bid=100.5))
        manager = _manager(adapter, snapshot=snapshot)

        result = await manager.execute(_instrument(), "buy", 1.0)

        assert adapter.polled == []
        assert adapter.cancelled == []
        assert result.executed and result.persisted
        record = manager.store.orders[0]
        assert record["status"] == "executed"
        assert record["price"] == 101.0
        assert record["fee"] == 0.1
        assert record["quantity"] == 1.0
        # client order id generated locally and sent with the submission
        assert adapter.submitted[0][4].startswith("xo-")

    asyncio.run(_run())


def test_open_order_polls_once_and_cancels_partial_fill():
    async def _run():
        adapter = FakeAdapter(
            submit=_ticket(STATUS_NEW, 0.0),
            poll=_ticket(STATUS_PARTIALLY_FILLED, 0.4),
            cancel=_ticket(STATUS_CANCELED, 0.4, fee=0.04),
        )
        manager = _manager(adapter)

        result = await manager.execute(_instrument(), "buy", 1.0)

        assert adapter.polled == ["42"]
        assert adapter.cancelled == ["42"]
        assert result.ticket.status == STATUS_CANCELED
        assert result.order.quantity == 0.4
        assert result.order.fee == 0.04
        # no live price yet, so the instrument's REST ask is recorded
        assert result.order.price == 100.0
        assert result.persisted

    asyncio.run(_run())


def test_open_order_filled_on_poll_is_not_cancelled():
    async def _run():
        adapter = FakeAdapter(submit=_ticket(STATUS_NEW, 0.0), poll=_ticket(STATUS_FILLED, 1.0))
        result = await _manager(adapter).execute(_instrument(), "sell", 1.0)
        assert len(adapter.polled) == 1
        assert adapter.cancelled == []
        assert result.order.price == 99.0

    asyncio.run(_run())


def test_unfilled_order_is_not_recorded():
    async def _run():
        adapter = FakeAdapter(
            submit=_ticket(STATUS_NEW, 0.0),
            poll=_ticket(STATUS_NEW, 0.0),
            cancel=_ticket(STATUS_CANCELED, 0.0),
        )
        manager = _manager(adapter)
        result = await manager.execute(_instrument(), "buy", 1.0)
        assert result.error == "unfilled"
        assert not result.executed
        assert manager.store.orders == []

    asyncio.run(_run())


def test_submission_failure_never_reaches_the_store():
    async def _run():
        adapter = FakeAdapter(submit_error=ExchangeError("insufficient balance", status=400, code=-2010))
        store = NoRecordStore()
        manager = _manager(adapter, store=store)

        result = await manager.execute(_instrument(), "buy", 1.0)

        assert result.error == "insufficient balance"
        assert result.ticket is None
        assert not hasattr(store, 'attempts')
        assert adapter.polled == [] and adapter.cancelled == []
        assert len(manager.alerts.failures) == 1
        assert len(adapter.submitted) == 1

    asyncio.run(_run())


def test_persistence_failure_keeps_the_trade():
    async def _run():
        adapter = FakeAdapter(submit=_ticket(STATUS_FILLED, 1.0))
        store = NoRecordStore()
        manager = _manager(adapter, store=store)

        result = await manager.execute(_instrument(), "buy", 1.0)

        assert result.executed
        assert not result.persisted
        assert not result
        assert store.attempts == 1
        assert manager.alerts.persistence == [("fake", "42", "BTCUSDT")]

    asyncio.run(_run())


def test_shutdown_mid_poll_abandons_order():
    async def _run():
        adapter = FakeAdapter(submit=_ticket(STATUS_NEW, 0.0), poll=_ticket(STATUS_FILLED, 1.0))
        manager = _manager(adapter)
        manager.poll_delay_s = 30
        task = asyncio.create_task(manager.execute(_instrument(), "buy", 1.0))
        await asyncio.sleep(0.01)
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        assert task.cancelled()
        assert adapter.polled == []
        assert manager.store.orders == []

    asyncio.run(_run())
