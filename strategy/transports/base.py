"""Exchange adapter capability set shared by every exchange transport."""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional


__all__ = [
    "AdapterSettings",
    "Balance",
    "BalanceUnavailableError",
    "Candle",
    "ExchangeAdapter",
    "ExchangeError",
    "MalformedPayloadError",
    "PriceQuote",
    "SymbolRules",
    "TradeFill",
    "format_decimal",
    "parse_float",
    "parse_optional_float",
]


class ExchangeError(Exception):
    def __init__(self, message: str, status: Optional[int] = None, code: Any = None, msg: Optional[str] = None):
        self.status = status
        self.code = code
        self.msg = msg
        super().__init__(message)


class MalformedPayloadError(ExchangeError):
    """A numeric or structural field from the exchange could not be parsed."""


class BalanceUnavailableError(ExchangeError):
    pass


def parse_float(value: Any, field_name: str) -> float:
    if value is None or isinstance(value, bool):
        raise MalformedPayloadError(f"Missing numeric field '{field_name}'")
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise MalformedPayloadError(f"Field '{field_name}' is not numeric: {value!r}") from exc
    if number != number or number in (float('inf'), float('-inf')):
        raise MalformedPayloadError(f"Field '{field_name}' is not finite: {value!r}")
    return number


def parse_optional_float(value: Any, field_name: str) -> Optional[float]:
    if value is None or value == '':
        return None
    return parse_float(value, field_name)


@dataclass(frozen=True)
class Balance:
    asset: str
    free: float
    locked: float = 0.0


@dataclass(frozen=True)
class PriceQuote:
    symbol: str
    ask: float
    bid: float


@dataclass(frozen=True)
class Candle:
    open_time: int
    close: float


@dataclass(frozen=True)
class SymbolRules:
    symbol: str
    base_asset: str
    quote_asset: str
    # kept as text so the decimal precision of the step survives
    min_qty: str
    tick_size: str


@dataclass(frozen=True)
class TradeFill:
    symbol: str
    side: str
    price: float
    quantity: float
    fee: float
    timestamp_ms: int


@dataclass
class AdapterSettings:
    name: str
    quote_currency: str
    excluded_currencies: List[str] = field(default_factory=list)
    margin_pct: float = 0.10
    candle_period: str = "1h"
    stagger_delay_s: float = 1.0
    order_type: str = "market"

    @classmethod
    def from_section(cls, name: str, section: Dict[str, Any], **defaults: Any) -> "AdapterSettings":
        values = dict(defaults)
        for key in ("quote_currency", "excluded_currencies", "margin_pct", "candle_period",
                    "stagger_delay_s", "order_type"):
            if section.get(key) is not None:
                values[key] = section[key]
        return cls(
            name=name,
            quote_currency=str(values["quote_currency"]).upper(),
            excluded_currencies=[str(c).upper() for c in values.get("excluded_currencies") or []],
            margin_pct=float(values.get("margin_pct", 0.10)),
            candle_period=str(values.get("candle_period", "1h")),
            stagger_delay_s=float(values.get("stagger_delay_s", 1.0)),
            order_type=str(values.get("order_type", "market")),
        )


class ExchangeAdapter(ABC):
    """Uniform async read/write operations against one exchange."""

    def __init__(self, settings: AdapterSettings):
        self.settings = settings

    @property
    def name(self) -> str:
        return self.settings.name

    def pair_symbol(self, asset: str) -> str:
        return f"{asset.upper()}{self.settings.quote_currency}"

    @abstractmethod
    async def get_balances(self) -> List[Balance]:
        ...

    @abstractmethod
    async def get_ticker(self, symbol: Optional[str] = None) -> List[PriceQuote]:
        ...

    @abstractmethod
    async def get_candles(self, symbol: str, period: str) -> List[Candle]:
        ...

    @abstractmethod
    async def get_symbol_rules(self, symbols: Iterable[str]) -> Dict[str, SymbolRules]:
        ...

    @abstractmethod
    async def submit_order(
        self,
        symbol: str,
        side: str,
        order_type: str,
        quantity: float,
        client_order_id: Optional[str] = None,
    ):
        """Return an ``OrderTicket`` for the acknowledged order."""

    def order_reference(self, ticket) -> str:
        """Identifier that ``get_order``/``cancel_order`` accept for ``ticket``."""
        return ticket.id

    @abstractmethod
    async def get_order(self, symbol: str, order_id: str):
        ...

    @abstractmethod
    async def cancel_order(self, symbol: str, order_id: str):
        ...

    @abstractmethod
    def subscribe_price_feed(self, symbols: Iterable[str]) -> AsyncIterator[PriceQuote]:
        ...

    @abstractmethod
    async def get_my_trades(self, symbol: str, start_ms: int, end_ms: int) -> List[TradeFill]:
        ...

    async def close(self) -> None:
        return None


def format_decimal(value: float, max_decimals: int = 8) -> str:
    """Render a quantity without exponent notation, e.g. ``1e-05`` -> ``0.00001``."""
    text = f"{value:.{max_decimals}f}".rstrip("0").rstrip(".")
    return text or "0"
