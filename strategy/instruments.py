from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, Optional

from strategy.transports.base import PriceQuote


SIDE_BUY = "buy"
SIDE_SELL = "sell"


@dataclass
class Instrument:
    """One tradable symbol on one exchange, rebuilt on every full refresh."""

    symbol: str
    base_asset: str
    ask: float
    bid: float
    min_qty: str
    tick_size: str
    closes: Deque[float] = field(default_factory=deque)
    side: str = SIDE_BUY
    quantity: float = 0.0

    def price_for(self, side: str) -> float:
        return self.bid if side == SIDE_SELL else self.ask


class PriceSnapshot:
    """Latest ask/bid per symbol; written by the price feed, read without locking."""

    def __init__(self):
        self._quotes: Dict[str, PriceQuote] = {}

    def update(self, quote: PriceQuote) -> None:
        self._quotes[quote.symbol] = quote

    def get(self, symbol: str) -> Optional[PriceQuote]:
        return self._quotes.get(symbol)

    def __contains__(self, symbol: str) -> bool:
        return symbol in self._quotes
