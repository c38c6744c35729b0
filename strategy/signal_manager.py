import logging
from collections import deque
from typing import Deque, Dict, Iterable, Optional, Sequence, Tuple

from analytics.indicators import Smoother, ema, last_value
from strategy.instruments import Instrument


logger = logging.getLogger(__name__)

CROSS_UP = 'up'
CROSS_DOWN = 'down'


class SignalHistory:
    """Paired fast/slow average points with FIFO eviction at ``capacity``."""

    def __init__(self, capacity: int = 10, fast: Iterable[float] = (), slow: Iterable[float] = ()):
        if capacity < 2:
            raise ValueError("capacity must allow at least two points")
        self.capacity = capacity
        self.fast: Deque[float] = deque(maxlen=capacity)
        self.slow: Deque[float] = deque(maxlen=capacity)
        fast = list(fast)
        slow = list(slow)
        if len(fast) != len(slow):
            raise ValueError("fast and slow series must have equal length")
        for f, s in zip(fast, slow):
            self.append(f, s)

    def append(self, fast: float, slow: float) -> None:
        # deque(maxlen) drops the oldest point before the new one lands
        self.fast.append(float(fast))
        self.slow.append(float(slow))

    def __len__(self) -> int:
        return len(self.fast)


def _tail(history: SignalHistory) -> Optional[Tuple[float, float, float, float]]:
    if len(history) < 2:
        return None
    return history.fast[-1], history.slow[-1], history.fast[-2], history.slow[-2]


def has_crossed_up(history: SignalHistory) -> bool:
    tail = _tail(history)
    if tail is None:
        return False
    fast_now, slow_now, fast_prev, slow_prev = tail
    return fast_now >= slow_now and fast_prev < slow_prev


def has_crossed_down(history: SignalHistory) -> bool:
    tail = _tail(history)
    if tail is None:
        return False
    fast_now, slow_now, fast_prev, slow_prev = tail
    return fast_now <= slow_now and fast_prev > slow_prev


def crossover(history: SignalHistory) -> Optional[str]:
    if has_crossed_up(history):
        return CROSS_UP
    if has_crossed_down(history):
        return CROSS_DOWN
    return None


class SignalManager:
    """Rolling fast/slow EMA history per instrument for one exchange."""

    def __init__(
        self,
        exchange: str,
        store=None,
        smoother: Smoother = ema,
        fast_window: int = 9,
        slow_window: int = 34,
        capacity: int = 10,
        seed_points: int = 4,
    ):
        self.exchange = exchange
        self.store = store
        self.smoother = smoother
        self.fast_window = fast_window
        self.slow_window = slow_window
        self.capacity = capacity
        self.seed_points = seed_points
        self.histories: Dict[str, SignalHistory] = {}

    def history(self, symbol: str) -> SignalHistory:
        if symbol not in self.histories:
            self.histories[symbol] = SignalHistory(self.capacity)
        return self.histories[symbol]

    def seed(self, symbol: str, fast: Sequence[float], slow: Sequence[float]) -> SignalHistory:
        count = min(len(fast), len(slow), self.seed_points)
        fast_tail = list(fast)[-count:] if count else []
        slow_tail = list(slow)[-count:] if count else []
        history = SignalHistory(self.capacity, fast_tail, slow_tail)
        self.histories[symbol] = history
        return history

    async def seed_from_store(self, symbols: Iterable[str]) -> None:
        if self.store is None:
            return
        for symbol in symbols:
            try:
                stored = await self.store.find_latest_averages(self.exchange, symbol)
            except Exception as exc:
                logger.warning("%s %s: could not load stored averages: %s", self.exchange, symbol, exc)
                continue
            if not stored:
                continue
            history = self.seed(symbol, stored.get('fast') or [], stored.get('slow') or [])
            logger.info("%s %s: seeded %s stored average points", self.exchange, symbol, len(history))

    def compute(self, closes: Sequence[float]) -> Tuple[float, float]:
        closes = list(closes)
        if not closes:
            raise ValueError("No candle closes to average")
        fast_series = self.smoother(closes, self.fast_window)
        slow_series = self.smoother(closes, self.slow_window)
        return last_value(fast_series), last_value(slow_series)

    async def refresh(self, instrument: Instrument) -> Tuple[float, float]:
        fast, slow = self.compute(instrument.closes)
        self.history(instrument.symbol).append(fast, slow)
        if self.store is not None:
            try:
                ok = await self.store.append_averages(self.exchange, instrument.symbol, fast, slow)
                if not ok:
                    logger.warning("%s %s: averages not persisted", self.exchange, instrument.symbol)
            except Exception as exc:
                logger.warning("%s %s: averages persistence failed: %s", self.exchange, instrument.symbol, exc)
        return fast, slow
