from dataclasses import dataclass
from typing import Dict, Iterable, Optional

from strategy.instruments import SIDE_BUY, SIDE_SELL


ACTION_NONE = None
ACTION_RATCHET = "ratchet"
ACTION_EXIT = "exit"
ACTION_ENTER = "enter"


@dataclass
class StopLossTracker:
    """Ratcheting anchor price for one instrument; ``None`` means disarmed."""

    symbol: str
    anchor: Optional[float] = None

    @property
    def armed(self) -> bool:
        return self.anchor is not None

    def arm(self, side: str, ask: float, bid: float, threshold: float) -> float:
        # held position anchors at the ask; flat position waits for the price to recover past the bid
        self.anchor = ask if side == SIDE_SELL else bid + threshold
        return self.anchor

    def disarm(self) -> None:
        self.anchor = None

    def evaluate(self, side: str, ask: float, threshold: float) -> Optional[str]:
        if self.anchor is None:
            return ACTION_NONE
        if side == SIDE_SELL:
            if ask > self.anchor:
                self.anchor = ask
                return ACTION_RATCHET
            if ask <= self.anchor - threshold:
                return ACTION_EXIT
            return ACTION_NONE
        if side == SIDE_BUY and ask >= self.anchor - threshold:
            return ACTION_ENTER
        return ACTION_NONE


class StopLossBook:
    def __init__(self, symbols: Iterable[str], threshold: float = 100.0):
        self.threshold = threshold
        self.trackers: Dict[str, StopLossTracker] = {s: StopLossTracker(s) for s in symbols}

    def tracker(self, symbol: str) -> StopLossTracker:
        if symbol not in self.trackers:
            self.trackers[symbol] = StopLossTracker(symbol)
        return self.trackers[symbol]

    def armed_symbols(self):
        return [s for s, t in self.trackers.items() if t.armed]

    def any_armed(self) -> bool:
        return any(t.armed for t in self.trackers.values())

    def disarm_all(self) -> None:
        for t in self.trackers.values():
            t.disarm()
