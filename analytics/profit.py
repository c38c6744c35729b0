from typing import Iterable, List

from strategy.instruments import SIDE_SELL
from strategy.transports.base import TradeFill


def closed_trades(trades: Iterable[TradeFill], start_ms: int, end_ms: int) -> List[TradeFill]:
    """Trades inside the window, minus the buys made after the last sell (still-open position)."""
    window = sorted(
        (t for t in trades if start_ms <= t.timestamp_ms <= end_ms),
        key=lambda t: t.timestamp_ms,
    )
    last_sell = None
    for index, trade in enumerate(window):
        if trade.side == SIDE_SELL:
            last_sell = index
    if last_sell is None:
        return []
    return window[:last_sell + 1]


def calculate_profit(trades: Iterable[TradeFill], start_ms: int, end_ms: int) -> float:
    """Realized quote-currency profit: sell proceeds minus buy costs, both net of fees."""
    proceeds = 0.0
    costs = 0.0
    for trade in closed_trades(trades, start_ms, end_ms):
        notional = trade.price * trade.quantity
        if trade.side == SIDE_SELL:
            proceeds += notional - trade.fee
        else:
            costs += notional + trade.fee
    return proceeds - costs
