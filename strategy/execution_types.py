import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional


STATUS_NEW = "new"
STATUS_PARTIALLY_FILLED = "partially_filled"
STATUS_FILLED = "filled"
STATUS_CANCELED = "canceled"
STATUS_REJECTED = "rejected"
STATUS_EXPIRED = "expired"

PERSISTED_STATUS = "executed"

_STATUS_ALIASES = {
    "NEW": STATUS_NEW,
    "PARTIALLY_FILLED": STATUS_PARTIALLY_FILLED,
    "PARTIALLYFILLED": STATUS_PARTIALLY_FILLED,
    "FILLED": STATUS_FILLED,
    "CANCELED": STATUS_CANCELED,
    "CANCELLED": STATUS_CANCELED,
    "PENDING_CANCEL": STATUS_CANCELED,
    "REJECTED": STATUS_REJECTED,
    "EXPIRED": STATUS_EXPIRED,
    "SUSPENDED": STATUS_NEW,
}


def normalize_status(raw_status: Optional[str]) -> str:
    if not raw_status:
        return STATUS_NEW
    key = str(raw_status).replace("-", "_").upper()
    return _STATUS_ALIASES.get(key, _STATUS_ALIASES.get(key.replace("_", ""), STATUS_NEW))


@dataclass
class OrderTicket:
    """Normalized view of an order acknowledgement across live and paper flows."""

    symbol: str
    side: str
    type: str
    quantity: float
    status: str = STATUS_NEW
    executed_qty: float = 0.0
    price: Optional[float] = None
    fee: float = 0.0
    client_order_id: Optional[str] = None
    exchange_order_id: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def id(self) -> str:
        if self.exchange_order_id is not None:
            return str(self.exchange_order_id)
        if self.client_order_id:
            return self.client_order_id
        fallback = self.raw.get("id")
        if fallback is not None:
            return str(fallback)
        return "order"

    @property
    def is_filled(self) -> bool:
        return self.status == STATUS_FILLED

    @property
    def is_terminal(self) -> bool:
        return self.status in (STATUS_FILLED, STATUS_CANCELED, STATUS_REJECTED, STATUS_EXPIRED)


@dataclass
class PersistedOrder:
    exchange: str
    order_id: str
    client_order_id: Optional[str]
    symbol: str
    side: str
    type: str
    quantity: float
    price: Optional[float]
    fee: float = 0.0
    status: str = PERSISTED_STATUS
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "exchange": self.exchange,
            "order_id": self.order_id,
            "client_order_id": self.client_order_id,
            "symbol": self.symbol,
            "side": self.side,
            "type": self.type,
            "status": self.status,
            "quantity": self.quantity,
            "price": self.price,
            "fee": self.fee,
            "created_at": self.created_at,
        }


@dataclass
class ExecutionResult:
    symbol: str
    side: str
    ticket: Optional[OrderTicket] = None
    order: Optional[PersistedOrder] = None
    persisted: bool = False
    error: Optional[str] = None

    @property
    def executed(self) -> bool:
        return self.order is not None

    @property
    def filled_qty(self) -> float:
        if self.ticket is None:
            return 0.0
        return self.ticket.executed_qty

    def __bool__(self) -> bool:
        return self.executed and self.persisted
