from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional

from ingest.hitbtc_rest import HitBTCAPIError, HitBTCRESTClient
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


__all__ = ["HitBTCAdapter", "HitBTCAPIError"]


def _iso_to_ms(value: Any) -> int:
    if not value:
        raise MalformedPayloadError("Missing timestamp")
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError as exc:
        raise MalformedPayloadError(f"Bad timestamp {value!r}") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return int(parsed.timestamp() * 1000)


def _ms_to_iso(value: int) -> str:
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


class HitBTCAdapter(ExchangeAdapter):
    """REST v2 adapter; orders are addressed by ``clientOrderId``."""

    def __init__(
        self,
        settings: AdapterSettings,
        rest: Optional[HitBTCRESTClient] = None,
        ws_url: str = "wss://api.hitbtc.com/api/2/ws",
        candle_limit: int = 100,
    ) -> None:
        super().__init__(settings)
        self._rest = rest or HitBTCRESTClient()
        self.ws_url = ws_url
        self.candle_limit = candle_limit
        self._feed: Optional[PriceFeedClient] = None

    async def get_balances(self) -> List[Balance]:
        data = await self._rest.get("trading/balance", signed=True)
        if not isinstance(data, list):
            raise MalformedPayloadError("HitBTC balance payload is not a list")
        return [
            Balance(
                asset=item.get("currency", ""),
                free=parse_float(item.get("available"), "available"),
                locked=parse_float(item.get("reserved", 0), "reserved"),
            )
            for item in data
        ]

    async def get_ticker(self, symbol: Optional[str] = None) -> List[PriceQuote]:
        path = f"public/ticker/{symbol}" if symbol else "public/ticker"
        data = await self._rest.get(path)
        items = data if isinstance(data, list) else [data]
        quotes: List[PriceQuote] = []
        for item in items:
            if not isinstance(item, dict):
                raise MalformedPayloadError("HitBTC ticker entry is not an object")
            # illiquid symbols report null ask/bid
            if item.get("ask") is None or item.get("bid") is None:
                continue
            quotes.append(self._parse_quote(item))
        return quotes

    async def get_candles(self, symbol: str, period: str) -> List[Candle]:
        data = await self._rest.get(
            f"public/candles/{symbol}",
            params={"period": period, "limit": self.candle_limit},
        )
        if not isinstance(data, list):
            raise MalformedPayloadError("HitBTC candles payload is not a list")
        return [
            Candle(open_time=_iso_to_ms(row.get("timestamp")), close=parse_float(row.get("close"), "close"))
            for row in data
        ]

    async def get_symbol_rules(self, symbols: Iterable[str]) -> Dict[str, SymbolRules]:
        rules: Dict[str, SymbolRules] = {}
        for symbol in symbols:
            payload = await self._rest.get(f"public/symbol/{symbol}")
            if not isinstance(payload, dict):
                raise MalformedPayloadError(f"HitBTC symbol payload for {symbol} is not an object")
            min_qty = payload.get("quantityIncrement")
            tick_size = payload.get("tickSize")
            parse_float(min_qty, "quantityIncrement")
            parse_float(tick_size, "tickSize")
            rules[symbol] = SymbolRules(
                symbol=payload.get("id", symbol),
                base_asset=payload.get("baseCurrency", ""),
                quote_asset=payload.get("quoteCurrency", ""),
                min_qty=str(min_qty),
                tick_size=str(tick_size),
            )
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
            "side": side.lower(),
            "type": order_type.lower(),
            "quantity": format_decimal(quantity),
            "strictValidate": "true",
        }
        if client_order_id:
            params["clientOrderId"] = client_order_id
        data = await self._rest.post("order", params=params, signed=True)
        return self._parse_order(data)

    def order_reference(self, ticket: OrderTicket) -> str:
        return ticket.client_order_id or ticket.id

    async def get_order(self, symbol: str, order_id: str) -> OrderTicket:
        data = await self._rest.get(f"order/{order_id}", signed=True)
        if isinstance(data, list):
            # history/order style payloads come back as a one-element list
            data = data[0] if data else None
        return self._parse_order(data)

    async def cancel_order(self, symbol: str, order_id: str) -> OrderTicket:
        data = await self._rest.delete(f"order/{order_id}", signed=True)
        return self._parse_order(data)

    def subscribe_price_feed(self, symbols: Iterable[str]) -> AsyncIterator[PriceQuote]:
        messages = [
            {"method": "subscribeTicker", "params": {"symbol": symbol}, "id": index + 1}
            for index, symbol in enumerate(symbols)
        ]
        self._feed = PriceFeedClient(self.name, self.ws_url, self._parse_ticker_message, messages)
        return self._feed.stream()

    async def get_my_trades(self, symbol: str, start_ms: int, end_ms: int) -> List[TradeFill]:
        data = await self._rest.get(
            "history/trades",
            params={
                "symbol": symbol,
                "from": _ms_to_iso(start_ms),
                "till": _ms_to_iso(end_ms),
                "limit": 1000,
                "sort": "ASC",
            },
            signed=True,
        )
        if not isinstance(data, list):
            raise MalformedPayloadError("HitBTC trades payload is not a list")
        return [
            TradeFill(
                symbol=item.get("symbol", symbol),
                side=str(item.get("side", "")).lower(),
                price=parse_float(item.get("price"), "price"),
                quantity=parse_float(item.get("quantity"), "quantity"),
                fee=parse_float(item.get("fee", 0), "fee"),
                timestamp_ms=_iso_to_ms(item.get("timestamp")),
            )
            for item in data
        ]

    async def close(self) -> None:
        if self._feed is not None:
            self._feed.stop()
        await self._rest.close()

    def _parse_ticker_message(self, message: dict) -> Optional[PriceQuote]:
        if not isinstance(message, dict) or message.get("method") != "ticker":
            return None
        params = message.get("params")
        if not isinstance(params, dict) or params.get("ask") is None or params.get("bid") is None:
            return None
        return self._parse_quote(params)

    @staticmethod
    def _parse_quote(item: Dict[str, Any]) -> PriceQuote:
        symbol = item.get("symbol")
        if not symbol:
            raise MalformedPayloadError("Ticker entry without symbol")
        return PriceQuote(
            symbol=str(symbol),
            ask=parse_float(item.get("ask"), "ask"),
            bid=parse_float(item.get("bid"), "bid"),
        )

    def _parse_order(self, payload: Any) -> OrderTicket:
        if not isinstance(payload, dict):
            raise MalformedPayloadError("HitBTC order payload is not an object")
        trades = payload.get("tradesReport") or []
        fee = sum(parse_float(t.get("fee", 0), "fee") for t in trades)
        if trades:
            price = parse_float(trades[0].get("price"), "trade price")
        else:
            price = parse_optional_float(payload.get("price"), "price")
        order_id = payload.get("id")
        return OrderTicket(
            symbol=payload.get("symbol", ""),
            side=str(payload.get("side") or "").lower(),
            type=payload.get("type") or self.settings.order_type,
            quantity=parse_float(payload.get("quantity", 0), "quantity"),
            status=normalize_status(payload.get("status")),
            executed_qty=parse_float(payload.get("cumQuantity", 0), "cumQuantity"),
            price=price,
            fee=fee,
            client_order_id=payload.get("clientOrderId"),
            exchange_order_id=str(order_id) if order_id is not None else None,
            raw=payload,
        )
