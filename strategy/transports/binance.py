import json
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional

from ingest.binance_rest import BinanceAPIError, BinanceRESTClient
from ingest.price_feed import PriceFeedClient

from strategy.execution_types import OrderTicket, normalize_status
from strategy.transports.base import (
    AdapterSettings,
    Balance,
    Candle,
    ExchangeAdapter,
    MalformedPayloadError,
    PriceQuote,
    SymbolRules,
    TradeFill,
    format_decimal,
    parse_float,
    parse_optional_float,
)


__all__ = ["BinanceAdapter", "BinanceAPIError"]


class BinanceAdapter(ExchangeAdapter):
    """Spot REST v3 adapter with the combined ``@ticker`` websocket stream."""

    def __init__(
        self,
        settings: AdapterSettings,
        rest: Optional[BinanceRESTClient] = None,
        ws_url: str = "wss://stream.binance.com:9443/stream",
        candle_limit: int = 100,
    ) -> None:
        super().__init__(settings)
        self._rest = rest or BinanceRESTClient()
        self.ws_url = ws_url.rstrip("/")
        self.candle_limit = candle_limit
        self._feed: Optional[PriceFeedClient] = None

    async def get_balances(self) -> List[Balance]:
        data = await self._rest.get("/api/v3/account", signed=True)
        if not isinstance(data, dict) or not isinstance(data.get("balances"), list):
            raise MalformedPayloadError("Binance account payload has no balances")
        return [
            Balance(
                asset=item.get("asset", ""),
                free=parse_float(item.get("free"), "free"),
                locked=parse_float(item.get("locked", 0), "locked"),
            )
            for item in data["balances"]
        ]

    async def get_ticker(self, symbol: Optional[str] = None) -> List[PriceQuote]:
        params = {"symbol": symbol} if symbol else None
        data = await self._rest.get("/api/v3/ticker/bookTicker", params=params)
        items = data if isinstance(data, list) else [data]
        quotes: List[PriceQuote] = []
        for item in items:
            if not isinstance(item, dict):
                raise MalformedPayloadError("Binance ticker entry is not an object")
            quotes.append(self._parse_quote(item.get("symbol"), item.get("askPrice"), item.get("bidPrice")))
        return quotes

    async def get_candles(self, symbol: str, period: str) -> List[Candle]:
        data = await self._rest.get(
            "/api/v3/klines",
            params={"symbol": symbol, "interval": period, "limit": self.candle_limit},
        )
        if not isinstance(data, list):
            raise MalformedPayloadError("Binance klines payload is not a list")
        candles: List[Candle] = []
        for row in data:
            if not isinstance(row, list) or len(row) < 5:
                raise MalformedPayloadError(f"Unexpected kline row: {row!r}")
            candles.append(Candle(open_time=int(row[0]), close=parse_float(row[4], "close")))
        return candles

    async def get_symbol_rules(self, symbols: Iterable[str]) -> Dict[str, SymbolRules]:
        wanted = [s.upper() for s in symbols]
        data = await self._rest.get(
            "/api/v3/exchangeInfo",
            params={"symbols": json.dumps(wanted, separators=(",", ":"))},
        )
        if not isinstance(data, dict):
            raise MalformedPayloadError("Binance exchangeInfo payload is not an object")
        rules: Dict[str, SymbolRules] = {}
        for payload in data.get("symbols") or []:
            parsed = self._parse_symbol_rules(payload)
            rules[parsed.symbol] = parsed
        return rules

    async def submit_order(
        self,
        symbol: str,
        side: str,
        order_type: str,
        quantity: float,
        client_order_id: Optional[str] = None,
    ) -> OrderTicket:
        params: Dict[str, Any] = {
            "symbol": symbol,
            "side": side.upper(),
            "type": order_type.upper(),
            "quantity": format_decimal(quantity),
            "newOrderRespType": "FULL",
        }
        if client_order_id:
            params["newClientOrderId"] = client_order_id
        data = await self._rest.post("/api/v3/order", params=params, signed=True)
        return self._parse_order(data)

    async def get_order(self, symbol: str, order_id: str) -> OrderTicket:
        data = await self._rest.get(
            "/api/v3/order",
            params={"symbol": symbol, "orderId": order_id},
            signed=True,
        )
        return self._parse_order(data)

    async def cancel_order(self, symbol: str, order_id: str) -> OrderTicket:
        data = await self._rest.delete(
            "/api/v3/order",
            params={"symbol": symbol, "orderId": order_id},
            signed=True,
        )
        return self._parse_order(data)

    def subscribe_price_feed(self, symbols: Iterable[str]) -> AsyncIterator[PriceQuote]:
        streams = "/".join(f"{s.lower()}@ticker" for s in symbols)
        self._feed = PriceFeedClient(
            self.name,
            f"{self.ws_url}?streams={streams}",
            self._parse_ticker_message,
        )
        return self._feed.stream()

    async def get_my_trades(self, symbol: str, start_ms: int, end_ms: int) -> List[TradeFill]:
        data = await self._rest.get(
            "/api/v3/myTrades",
            params={"symbol": symbol, "startTime": start_ms, "endTime": end_ms},
            signed=True,
        )
        if not isinstance(data, list):
            raise MalformedPayloadError("Binance myTrades payload is not a list")
        return [
            TradeFill(
                symbol=symbol,
                side="buy" if item.get("isBuyer") else "sell",
                price=parse_float(item.get("price"), "price"),
                quantity=parse_float(item.get("qty"), "qty"),
                fee=parse_float(item.get("commission", 0), "commission"),
                timestamp_ms=int(item.get("time") or 0),
            )
            for item in data
        ]

    async def close(self) -> None:
        if self._feed is not None:
            self._feed.stop()
        await self._rest.close()

    def _parse_ticker_message(self, message: dict) -> Optional[PriceQuote]:
        data = message.get("data") if isinstance(message, dict) else None
        if not isinstance(data, dict) or data.get("e") != "24hrTicker":
            return None
        return self._parse_quote(data.get("s"), data.get("a"), data.get("b"))

    @staticmethod
    def _parse_quote(symbol: Any, ask: Any, bid: Any) -> PriceQuote:
        if not symbol:
            raise MalformedPayloadError("Ticker entry without symbol")
        return PriceQuote(
            symbol=str(symbol),
            ask=parse_float(ask, "askPrice"),
            bid=parse_float(bid, "bidPrice"),
        )

    @staticmethod
    def _parse_symbol_rules(payload: Dict[str, Any]) -> SymbolRules:
        min_qty = None
        step_size = None
        tick_size = None
        for filt in payload.get("filters", []):
            ftype = filt.get("filterType")
            if ftype == "PRICE_FILTER" and tick_size is None:
                tick_size = filt.get("tickSize")
            elif ftype == "LOT_SIZE" and min_qty is None:
                min_qty = filt.get("minQty")
                step_size = filt.get("stepSize")
        if min_qty is None or parse_float(min_qty, "minQty") <= 0:
            min_qty = step_size
        if min_qty is None or tick_size is None:
            raise MalformedPayloadError(f"Symbol {payload.get('symbol')} has no LOT_SIZE/PRICE_FILTER")
        parse_float(min_qty, "minQty")
        parse_float(tick_size, "tickSize")
        return SymbolRules(
            symbol=payload.get("symbol", ""),
            base_asset=payload.get("baseAsset", ""),
            quote_asset=payload.get("quoteAsset", ""),
            min_qty=str(min_qty),
            tick_size=str(tick_size),
        )

    def _parse_order(self, payload: Any) -> OrderTicket:
        if not isinstance(payload, dict):
            raise MalformedPayloadError("Binance order payload is not an object")
        fills = payload.get("fills") or []
        fee = sum(parse_float(f.get("commission", 0), "commission") for f in fills)
        price = None
        if fills:
            price = parse_float(fills[0].get("price"), "fill price")
        else:
            price = parse_optional_float(payload.get("price"), "price") or None
        order_id = payload.get("orderId")
        return OrderTicket(
            symbol=payload.get("symbol", ""),
            side=(payload.get("side") or "").lower(),
            type=payload.get("type") or self.settings.order_type,
            quantity=parse_float(payload.get("origQty", 0), "origQty"),
            status=normalize_status(payload.get("status")),
            executed_qty=parse_float(payload.get("executedQty", 0), "executedQty"),
            price=price,
            fee=fee,
            client_order_id=payload.get("origClientOrderId") or payload.get("clientOrderId"),
            exchange_order_id=str(order_id) if order_id is not None else None,
            raw=payload,
        )
