import numpy as np
import talib
from typing import Callable, List, Sequence


Smoother = Callable[[Sequence[float], int], Sequence[float]]


def ema(closes: Sequence[float], window: int) -> List[float]:
    """Exponential moving average of ``closes``, same length as the input.

    Leading points that TA-Lib cannot smooth yet are NaN. When fewer closes than
    ``window`` are available the window shrinks to the available points so the
    last value is always defined.
    """
    prices = np.asarray(list(closes), dtype=float)
    if prices.size == 0:
        return []
    period = min(int(window), int(prices.size))
    if period < 2:
        return prices.tolist()
    return talib.EMA(prices, timeperiod=period).tolist()


def last_value(series: Sequence[float]) -> float:
    if len(series) == 0:
        raise ValueError("Cannot take the last value of an empty series")
    value = float(series[-1])
    if np.isnan(value):
        raise ValueError("Smoothed series ends in NaN")
    return value
