import asyncio
import sys

sys.path.insert(0, '.')

import pytest

from strategy.execution_types import (
    STATUS_CANCELED,
    STATUS_FILLED,
    STATUS_NEW,
    STATUS_PARTIALLY_FILLED,
    normalize_status,
)
from strategy.transports.base import AdapterSettings, MalformedPayloadError
from strategy.transports.binance import BinanceAdapter
from strategy.transports.hitbtc import HitBTCAdapter


class DummyRest:
    """Canned responses keyed by (method, path); records every call."""

    def __init__(self, responses):
        self.responses = responses
        self.calls = []

    async def get(self, path, params=None, signed=False):
        self.calls.append(('GET', path, params, signed))
        return self.responses[('GET', path)]

    async def post(self, path, params=None, signed=False):
        self.calls.append(('POST', path, params, signed))
        return self.responses[('POST', path)]

    async def delete(self, path, params=None, signed=False):
        self.calls.append(('DELETE', path, params, signed))
        return self.responses[('DELETE', path)]

    async def close(self):
        return None


def _binance(responses):
    settings = AdapterSettings(name="binance", quote_currency="USDT", excluded_currencies=["BNB"], order_type="MARKET")
    rest = DummyRest(responses)
    return BinanceAdapter(settings, rest=rest), rest


def _hitbtc(responses):
    settings = AdapterSettings(name="hitbtc", quote_currency="USD", margin_pct=0.12, order_type="market")
    rest = DummyRest(responses)
    return HitBTCAdapter(settings, rest=rest), rest


def test_normalize_status():
    assert normalize_status("FILLED") == STATUS_FILLED
    assert normalize_status("PARTIALLY_FILLED") == STATUS_PARTIALLY_FILLED
    assert normalize_status("partiallyFilled") == STATUS_PARTIALLY_FILLED
    assert normalize_status("canceled") == STATUS_CANCELED
    assert normalize_status("new") == STATUS_NEW
    assert normalize_status(None) == STATUS_NEW


def test_binance_balances_and_malformed_numbers():
    async def _run():
        adapter, _ = _binance({('GET', '/api/v3/account'): {'balances': [
            {'asset': 'BTC', 'free': '0.50000000', 'locked': '0.10000000'},
            {'asset': 'USDT', 'free': '100.5', 'locked': '0'},
        ]}})
        balances = await adapter.get_balances()
        assert [(b.asset, b.free, b.locked) for b in balances] == [('BTC', 0.5, 0.1), ('USDT', 100.5, 0.0)]

        bad, _ = _binance({('GET', '/api/v3/account'): {'balances': [{'asset': 'BTC', 'free': 'n/a'}]}})
        with pytest.raises(MalformedPayloadError):
            await bad.get_balances()

    asyncio.run(_run())


def test_binance_candles_and_rules():
    async def _run():
        adapter, rest = _binance({
            ('GET', '/api/v3/klines'): [
                [1000, '1.0', '2.0', '0.5', '1.5', '10'],
                [2000, '1.5', '2.5', '1.0', '2.25', '12'],
            ],
            ('GET', '/api/v3/exchangeInfo'): {'symbols': [{
                'symbol': 'BTCUSDT',
                'baseAsset': 'BTC',
                'quoteAsset': 'USDT',
                'filters': [
                    {'filterType': 'PRICE_FILTER', 'tickSize': '0.01000000'},
                    {'filterType': 'LOT_SIZE', 'minQty': '0.00000000', 'stepSize': '0.00001000'},
                ],
            }]},
        })
        candles = await adapter.get_candles('BTCUSDT', '1h')
        assert [c.close for c in candles] == [1.5, 2.25]
        assert rest.calls[0][2] == {'symbol': 'BTCUSDT', 'interval': '1h', 'limit': 100}

        rules = await adapter.get_symbol_rules(['btcusdt'])
        assert rules['BTCUSDT'].min_qty == '0.00001000'
        assert rules['BTCUSDT'].tick_size == '0.01000000'
        assert rules['BTCUSDT'].base_asset == 'BTC'
        assert rest.calls[1][2] == {'symbols': '["BTCUSDT"]'}

    asyncio.run(_run())


def test_binance_market_order_roundtrip():
    async def _run():
        adapter, rest = _binance({('POST', '/api/v3/order'): {
            'symbol': 'BTCUSDT',
            'orderId': 28,
            'clientOrderId': 'xo-abc',
            'origQty': '0.00100000',
            'executedQty': '0.00100000',
            'status': 'FILLED',
            'type': 'MARKET',
            'side': 'BUY',
            'fills': [
                {'price': '20000.00', 'qty': '0.0006', 'commission': '0.0000006'},
                {'price': '20001.00', 'qty': '0.0004', 'commission': '0.0000004'},
            ],
        }})
        ticket = await adapter.submit_order('BTCUSDT', 'buy', 'MARKET', 0.001, client_order_id='xo-abc')
        params = rest.calls[0][2]
        assert params['quantity'] == '0.001'
        assert params['side'] == 'BUY'
        assert params['newClientOrderId'] == 'xo-abc'
        assert rest.calls[0][3] is True
        assert ticket.is_filled
        assert ticket.id == '28'
        assert adapter.order_reference(ticket) == '28'
        assert ticket.executed_qty == 0.001
        assert ticket.fee == pytest.approx(0.000001)
        assert ticket.side == 'buy'

    asyncio.run(_run())


def test_binance_ticker_stream_message():
    adapter, _ = _binance({})
    quote = adapter._parse_ticker_message({'stream': 'btcusdt@ticker', 'data': {
        'e': '24hrTicker', 's': 'BTCUSDT', 'a': '20001.5', 'b': '20000.5',
    }})
    assert (quote.symbol, quote.ask, quote.bid) == ('BTCUSDT', 20001.5, 20000.5)
    assert adapter._parse_ticker_message({'data': {'e': 'trade'}}) is None


def test_hitbtc_ticker_skips_illiquid_symbols():
    async def _run():
        adapter, _ = _hitbtc({('GET', 'public/ticker'): [
            {'symbol': 'BTCUSD', 'ask': '20001.1', 'bid': '20000.9'},
            {'symbol': 'XYZUSD', 'ask': None, 'bid': None},
        ]})
        quotes = await adapter.get_ticker()
        assert [q.symbol for q in quotes] == ['BTCUSD']
        assert quotes[0].bid == 20000.9

    asyncio.run(_run())


def test_hitbtc_orders_use_client_order_id():
    async def _run():
        order = {
            'id': 840450210,
            'clientOrderId': 'xo-def',
            'symbol': 'BTCUSD',
            'side': 'sell',
            'status': 'partiallyFilled',
            'type': 'market',
            'quantity': '0.5',
            'cumQuantity': '0.2',
            'tradesReport': [{'price': '20000', 'quantity': '0.2', 'fee': '0.4'}],
        }
        cancelled = dict(order, status='canceled')
        adapter, rest = _hitbtc({
            ('POST', 'order'): order,
            ('DELETE', 'order/xo-def'): cancelled,
        })
        ticket = await adapter.submit_order('BTCUSD', 'sell', 'market', 0.5, client_order_id='xo-def')
        assert rest.calls[0][2]['clientOrderId'] == 'xo-def'
        assert rest.calls[0][2]['quantity'] == '0.5'
        assert ticket.status == STATUS_PARTIALLY_FILLED
        assert ticket.executed_qty == 0.2
        assert ticket.fee == 0.4
        assert adapter.order_reference(ticket) == 'xo-def'

        final = await adapter.cancel_order('BTCUSD', adapter.order_reference(ticket))
        assert final.status == STATUS_CANCELED

    asyncio.run(_run())


def test_hitbtc_candles_parse_iso_timestamps():
    async def _run():
        adapter, _ = _hitbtc({('GET', 'public/candles/BTCUSD'): [
            {'timestamp': '2018-01-01T00:00:00.000Z', 'close': '13000.5'},
            {'timestamp': '2018-01-01T01:00:00.000Z', 'close': '13100'},
        ]})
        candles = await adapter.get_candles('BTCUSD', 'H1')
        assert [c.close for c in candles] == [13000.5, 13100.0]
        assert candles[1].open_time - candles[0].open_time == 3600 * 1000

    asyncio.run(_run())


def test_hitbtc_ticker_stream_message():
    adapter, _ = _hitbtc({})
    quote = adapter._parse_ticker_message({'jsonrpc': '2.0', 'method': 'ticker', 'params': {
        'symbol': 'BTCUSD', 'ask': '20001', 'bid': '20000',
    }})
    assert quote.ask == 20001.0
    assert adapter._parse_ticker_message({'jsonrpc': '2.0', 'result': True, 'id': 1}) is None
