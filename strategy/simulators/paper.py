import asyncio
import time
import uuid
from types import MappingProxyType
from typing import AsyncIterator, Dict, Iterable, List, Mapping, Optional

from strategy.execution_types import (
    STATUS_CANCELED,
    STATUS_FILLED,
    STATUS_NEW,
    STATUS_PARTIALLY_FILLED,
    OrderTicket,
)
from strategy.transports.base import (
    AdapterSettings,
    Balance,
    Candle,
    ExchangeAdapter,
    ExchangeError,
    PriceQuote,
    SymbolRules,
    TradeFill,
)


class PaperAdapter(ExchangeAdapter):
    """Paper-trading adapter: private calls are simulated against in-memory balances.

    Public market data (tickers, candles, symbol rules, price feed) is taken from
    ``market`` when a live adapter is supplied, otherwise from the values loaded
    with ``set_quote`` / ``set_candles`` / ``set_rules``.

    ``fill_ratio`` below 1.0 makes submitted orders rest as partially filled so
    the poll/cancel path can be exercised. ``fee_in_base`` charges buy fees in
    the bought asset, as Binance does when no BNB is held.
    """

    def __init__(
        self,
        settings: AdapterSettings,
        balances: Optional[Dict[str, float]] = None,
        market: Optional[ExchangeAdapter] = None,
        fill_ratio: float = 1.0,
        fee_rate: float = 0.001,
        fee_in_base: bool = False,
    ) -> None:
        super().__init__(settings)
        self.market = market
        self.fill_ratio = fill_ratio
        self.fee_rate = fee_rate
        self.fee_in_base = fee_in_base
        self._balances: Dict[str, float] = {k.upper(): float(v) for k, v in (balances or {}).items()}
        self._quotes: Dict[str, PriceQuote] = {}
        self._candles: Dict[str, List[Candle]] = {}
        self._rules: Dict[str, SymbolRules] = {}
        self._orders: Dict[str, OrderTicket] = {}
        self._trades: List[TradeFill] = []
        self._feed: Optional[asyncio.Queue] = None

    @property
    def orders(self) -> Mapping[str, OrderTicket]:
        return MappingProxyType(self._orders)

    @property
    def trades(self) -> List[TradeFill]:
        return list(self._trades)

    def set_quote(self, symbol: str, ask: float, bid: float) -> None:
        quote = PriceQuote(symbol=symbol, ask=ask, bid=bid)
        self._quotes[symbol] = quote
        if self._feed is not None:
            self._feed.put_nowait(quote)

    def set_candles(self, symbol: str, closes: Iterable[float]) -> None:
        self._candles[symbol] = [Candle(open_time=i, close=float(c)) for i, c in enumerate(closes)]

    def set_rules(self, rules: SymbolRules) -> None:
        self._rules[rules.symbol] = rules

    def balance_of(self, asset: str) -> float:
        return self._balances.get(asset.upper(), 0.0)

    async def get_balances(self) -> List[Balance]:
        return [Balance(asset=asset, free=free) for asset, free in self._balances.items()]

    async def get_ticker(self, symbol: Optional[str] = None) -> List[PriceQuote]:
        if self.market is not None:
            quotes = await self.market.get_ticker(symbol)
            for quote in quotes:
                self._quotes[quote.symbol] = quote
            return quotes
        if symbol:
            quote = self._quotes.get(symbol)
            return [quote] if quote else []
        return list(self._quotes.values())

    async def get_candles(self, symbol: str, period: str) -> List[Candle]:
        if self.market is not None:
            return await self.market.get_candles(symbol, period)
        return list(self._candles.get(symbol, []))

    async def get_symbol_rules(self, symbols: Iterable[str]) -> Dict[str, SymbolRules]:
        if self.market is not None:
            rules = await self.market.get_symbol_rules(symbols)
            self._rules.update(rules)
            return rules
        return {s: self._rules[s] for s in symbols if s in self._rules}

    async def submit_order(
        self,
        symbol: str,
        side: str,
        order_type: str,
        quantity: float,
        client_order_id: Optional[str] = None,
    ) -> OrderTicket:
        if quantity <= 0:
            raise ExchangeError(f"Paper order quantity must be positive, got {quantity}")
        quote = self._quotes.get(symbol)
        rules = self._rules.get(symbol)
        if quote is None or rules is None:
            raise ExchangeError(f"No paper market data for {symbol}")

        side = side.lower()
        price = quote.ask if side == "buy" else quote.bid
        filled = quantity if self.fill_ratio >= 1.0 else round(quantity * self.fill_ratio, 12)
        self._settle(rules, side, filled, price)

        order_id = f"paper-{uuid.uuid4().hex[:8]}"
        ticket = OrderTicket(
            symbol=symbol,
            side=side,
            type=order_type,
            quantity=quantity,
            status=STATUS_FILLED if filled >= quantity else (STATUS_PARTIALLY_FILLED if filled else STATUS_NEW),
            executed_qty=filled,
            price=price,
            fee=filled * price * self.fee_rate,
            client_order_id=client_order_id or order_id,
            exchange_order_id=order_id,
        )
        self._orders[order_id] = ticket
        return ticket

    async def get_order(self, symbol: str, order_id: str) -> OrderTicket:
        try:
            return self._orders[order_id]
        except KeyError as exc:
            raise ExchangeError(f"Unknown paper order {order_id}") from exc

    async def cancel_order(self, symbol: str, order_id: str) -> OrderTicket:
        ticket = await self.get_order(symbol, order_id)
        if not ticket.is_filled:
            ticket.status = STATUS_CANCELED
        return ticket

    async def subscribe_price_feed(self, symbols: Iterable[str]) -> AsyncIterator[PriceQuote]:
        if self.market is not None:
            async for quote in self.market.subscribe_price_feed(symbols):
                self._quotes[quote.symbol] = quote
                yield quote
            return
        wanted = set(symbols)
        self._feed = asyncio.Queue()
        for quote in list(self._quotes.values()):
            self._feed.put_nowait(quote)
        while True:
            quote = await self._feed.get()
            if quote.symbol in wanted:
                yield quote

    async def get_my_trades(self, symbol: str, start_ms: int, end_ms: int) -> List[TradeFill]:
        return [
            t for t in self._trades
            if t.symbol == symbol and start_ms <= t.timestamp_ms <= end_ms
        ]

    async def close(self) -> None:
        if self.market is not None:
            await self.market.close()

    def _settle(self, rules: SymbolRules, side: str, qty: float, price: float) -> None:
        base = rules.base_asset.upper()
        quote_ccy = rules.quote_asset.upper()
        notional = qty * price
        fee = notional * self.fee_rate
        if side == "buy":
            if self.balance_of(quote_ccy) < notional:
                raise ExchangeError(f"Insufficient paper {quote_ccy} balance for {qty} {rules.symbol}")
            self._balances[quote_ccy] = self.balance_of(quote_ccy) - notional
            received = qty - qty * self.fee_rate if self.fee_in_base else qty
            self._balances[base] = self.balance_of(base) + received
        else:
            if self.balance_of(base) < qty:
                raise ExchangeError(f"Insufficient paper {base} balance for {qty} {rules.symbol}")
            self._balances[base] = self.balance_of(base) - qty
            self._balances[quote_ccy] = self.balance_of(quote_ccy) + notional
        self._trades.append(
            TradeFill(
                symbol=rules.symbol,
                side=side,
                price=price,
                quantity=qty,
                fee=fee,
                timestamp_ms=int(time.time() * 1000),
            )
        )
