import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation, ROUND_FLOOR
from typing import Dict, Iterable, List, Mapping, Optional, Tuple, Union

from strategy.instruments import SIDE_BUY, SIDE_SELL, Instrument
from strategy.transports.base import (
    Balance,
    BalanceUnavailableError,
    ExchangeAdapter,
    ExchangeError,
    MalformedPayloadError,
    PriceQuote,
)
from monitoring.async_utils import run_after


logger = logging.getLogger(__name__)


def step_decimals(step: Union[str, float]) -> int:
    """Decimal places implied by a quantity step; 0 when the step is >= 1."""
    try:
        d = Decimal(str(step))
    except InvalidOperation as exc:
        raise MalformedPayloadError(f"Invalid quantity step {step!r}") from exc
    if d >= 1:
        return 0
    exponent = d.normalize().as_tuple().exponent
    return max(0, -int(exponent))


def filter_quantity(qty: float, step: Union[str, float]) -> float:
    """Floor ``qty`` to an exact multiple of ``step``.

    ``filter_quantity(0.1234, "0.001") == 0.123``; ``filter_quantity(7, "1") == 7``.
    """
    try:
        value = Decimal(str(qty))
        sd = Decimal(str(step))
    except InvalidOperation as exc:
        raise MalformedPayloadError(f"Cannot floor {qty!r} to step {step!r}") from exc
    if sd <= 0:
        raise MalformedPayloadError(f"Quantity step must be positive, got {step!r}")
    if value <= 0:
        return 0.0

    remainder = value % sd
    floored = value - remainder
    decimals = step_decimals(step)
    floored = floored.quantize(Decimal(1).scaleb(-decimals), rounding=ROUND_FLOOR)
    return float(floored)


@dataclass
class Allocation:
    amount: float
    balances: List[Balance] = field(default_factory=list)
    total_value: float = 0.0


class PositionSizer:
    """Turn raw balances into a per-instrument trade amount and position side."""

    def __init__(
        self,
        quote_currency: str,
        instrument_count: int,
        margin_pct: float = 0.10,
        excluded_currencies: Iterable[str] = (),
    ):
        if instrument_count <= 0:
            raise ValueError("instrument_count must be positive")
        if not 0.0 <= margin_pct < 1.0:
            raise ValueError("margin_pct must be in [0, 1)")
        self.quote_currency = quote_currency.upper()
        self.instrument_count = instrument_count
        self.margin_pct = margin_pct
        self.excluded = {c.upper() for c in excluded_currencies}

    def pair_symbol(self, asset: str) -> str:
        return f"{asset.upper()}{self.quote_currency}"

    def eligible_balances(self, balances: Iterable[Balance], quotes: Mapping[str, PriceQuote]) -> List[Balance]:
        return [
            b for b in balances
            if b.asset.upper() != self.quote_currency
            and b.asset.upper() not in self.excluded
            and b.free > 0
            and self.pair_symbol(b.asset) in quotes
        ]

    def compute_allocation(self, balances: List[Balance], quotes: Mapping[str, PriceQuote]) -> Allocation:
        eligible = self.eligible_balances(balances, quotes)
        held_value = sum(b.free * quotes[self.pair_symbol(b.asset)].bid for b in eligible)
        quote_free = sum(b.free for b in balances if b.asset.upper() == self.quote_currency)
        total = held_value + quote_free
        amount = total * (1.0 - self.margin_pct) / self.instrument_count
        return Allocation(amount=amount, balances=eligible, total_value=total)

    @staticmethod
    def held_quantity(instrument: Instrument, balances: Iterable[Balance]) -> float:
        for balance in balances:
            if balance.asset.upper() == instrument.base_asset.upper():
                return balance.free
        return 0.0

    def classify_side(
        self,
        instrument: Instrument,
        balances: Iterable[Balance],
        amount: float,
        ask: Optional[float] = None,
    ) -> Tuple[str, float]:
        held = self.held_quantity(instrument, balances)
        min_qty = float(instrument.min_qty)
        if held <= min_qty:
            price = ask if ask is not None else instrument.ask
            if price <= 0:
                return SIDE_BUY, 0.0
            return SIDE_BUY, filter_quantity(amount / price, instrument.min_qty)
        return SIDE_SELL, filter_quantity(held, instrument.min_qty)


class BalanceReader:
    """Adapter reads for a refresh cycle, staggered to stay under rate limits."""

    def __init__(self, adapter: ExchangeAdapter, sizer: PositionSizer):
        self.adapter = adapter
        self.sizer = sizer

    async def read_allocation(self) -> Tuple[Allocation, Dict[str, PriceQuote]]:
        try:
            balances = await self.adapter.get_balances()
            tickers = await run_after(
                self.adapter.settings.stagger_delay_s,
                self.adapter.get_ticker,
            )
        except (ExchangeError, asyncio.TimeoutError, OSError, RuntimeError) as exc:
            raise BalanceUnavailableError(f"{self.adapter.name} balance unavailable: {exc}") from exc
        quotes = {q.symbol: q for q in tickers}
        return self.sizer.compute_allocation(balances, quotes), quotes

    async def read_held_quantity(self, instrument: Instrument) -> float:
        """Free base-asset balance floored to the instrument's step."""
        try:
            balances = await self.adapter.get_balances()
        except (ExchangeError, asyncio.TimeoutError, OSError, RuntimeError) as exc:
            raise BalanceUnavailableError(f"{self.adapter.name} balance unavailable: {exc}") from exc
        held = self.sizer.held_quantity(instrument, balances)
        return filter_quantity(held, instrument.min_qty)

    async def build_instruments(
        self,
        symbols: List[str],
        allocation: Allocation,
        quotes: Dict[str, PriceQuote],
        candle_window: int,
    ) -> Dict[str, Instrument]:
        try:
            rules = await self.adapter.get_symbol_rules(symbols)
        except (ExchangeError, asyncio.TimeoutError, OSError, RuntimeError) as exc:
            raise BalanceUnavailableError(f"{self.adapter.name} symbol rules unavailable: {exc}") from exc

        async def _build(symbol: str, index: int) -> Instrument:
            async def _fetch():
                return await self.adapter.get_candles(symbol, self.adapter.settings.candle_period)

            candles = await run_after(index * self.adapter.settings.stagger_delay_s, _fetch)
            rule = rules.get(symbol)
            quote = quotes.get(symbol)
            if rule is None or quote is None:
                raise MalformedPayloadError(f"{self.adapter.name} has no rules or ticker for {symbol}")
            instrument = Instrument(
                symbol=symbol,
                base_asset=rule.base_asset,
                ask=quote.ask,
                bid=quote.bid,
                min_qty=rule.min_qty,
                tick_size=rule.tick_size,
                closes=deque((c.close for c in candles), maxlen=candle_window),
            )
            instrument.side, instrument.quantity = self.sizer.classify_side(
                instrument, allocation.balances, allocation.amount
            )
            return instrument

        try:
            built = await asyncio.gather(*(_build(s, i) for i, s in enumerate(symbols)))
        except (ExchangeError, asyncio.TimeoutError, OSError, RuntimeError) as exc:
            raise BalanceUnavailableError(f"{self.adapter.name} instrument refresh failed: {exc}") from exc
        return {instrument.symbol: instrument for instrument in built}
