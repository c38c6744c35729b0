import asyncio
import logging
import time
import uuid
from typing import Optional

from api.alerts import alert_webhook
from api.metrics import metrics
from strategy.execution_types import (
    STATUS_CANCELED,
    ExecutionResult,
    OrderTicket,
    PersistedOrder,
)
from strategy.instruments import SIDE_SELL, Instrument, PriceSnapshot
from strategy.transports.base import ExchangeAdapter, ExchangeError


logger = logging.getLogger(__name__)


def new_client_order_id(prefix: str = "xo") -> str:
    return f"{prefix}-{uuid.uuid4().hex[:20]}"


class ExecutionManager:
    """Submit a market order, give it one poll to fill, cancel the rest, record the result."""

    def __init__(
        self,
        adapter: ExchangeAdapter,
        store,
        snapshot: PriceSnapshot,
        poll_delay_s: float = 1.0,
        order_type: Optional[str] = None,
        alerts=alert_webhook,
    ):
        self.adapter = adapter
        self.store = store
        self.snapshot = snapshot
        self.poll_delay_s = poll_delay_s
        self.order_type = order_type or adapter.settings.order_type
        self.alerts = alerts

    @property
    def exchange(self) -> str:
        return self.adapter.name

    async def execute(self, instrument: Instrument, side: str, quantity: float) -> ExecutionResult:
        symbol = instrument.symbol
        result = ExecutionResult(symbol=symbol, side=side)
        client_order_id = new_client_order_id()

        sent_at = time.perf_counter()
        try:
            ticket = await self.adapter.submit_order(
                symbol, side, self.order_type, quantity, client_order_id=client_order_id
            )
        except (ExchangeError, asyncio.TimeoutError, OSError) as exc:
            logger.critical(
                "%s %s order for %s (qty %s) was not submitted: %s",
                self.exchange,
                side,
                symbol,
                quantity,
                exc,
            )
            metrics.record_order_failure(self.exchange)
            await self.alerts.order_failure_alert(self.exchange, symbol, side, str(exc))
            result.error = str(exc)
            return result
        metrics.record_order_send_latency(time.perf_counter() - sent_at)
        metrics.record_order_placed(self.exchange, side)
        logger.info(
            "%s placed %s %s %s (client id %s, status %s)",
            self.exchange,
            side,
            quantity,
            symbol,
            client_order_id,
            ticket.status,
        )

        try:
            ticket = await self._settle(ticket)
        except asyncio.CancelledError:
            logger.warning(
                "%s order %s for %s abandoned while awaiting fill",
                self.exchange,
                ticket.id,
                symbol,
            )
            raise
        except (ExchangeError, asyncio.TimeoutError, OSError) as exc:
            logger.error("%s order %s for %s could not be settled: %s", self.exchange, ticket.id, symbol, exc)
            metrics.record_order_failure(self.exchange)
            await self.alerts.order_failure_alert(self.exchange, symbol, side, f"settle failed: {exc}")
            result.ticket = ticket
            result.error = str(exc)
            return result

        result.ticket = ticket
        if ticket.executed_qty <= 0:
            logger.warning("%s order %s for %s ended unfilled (%s)", self.exchange, ticket.id, symbol, ticket.status)
            result.error = "unfilled"
            return result
        if ticket.is_filled:
            metrics.record_order_filled(self.exchange)

        order = PersistedOrder(
            exchange=self.exchange,
            order_id=ticket.id,
            client_order_id=ticket.client_order_id or client_order_id,
            symbol=symbol,
            side=side,
            type=self.order_type,
            quantity=ticket.executed_qty,
            price=self._record_price(instrument, side),
            fee=ticket.fee,
        )
        result.order = order
        result.persisted = await self._persist(order)
        await self.alerts.order_alert(self.exchange, symbol, side, order.quantity, order.price)
        return result

    async def _settle(self, ticket: OrderTicket) -> OrderTicket:
        if ticket.is_filled:
            return ticket
        await asyncio.sleep(self.poll_delay_s)
        reference = self.adapter.order_reference(ticket)
        polled = await self.adapter.get_order(ticket.symbol, reference)
        if polled.is_filled:
            return polled
        cancelled = await self.adapter.cancel_order(ticket.symbol, reference)
        metrics.record_order_cancelled(self.exchange)
        logger.info(
            "%s cancelled order %s for %s with %s of %s executed",
            self.exchange,
            reference,
            ticket.symbol,
            cancelled.executed_qty,
            ticket.quantity,
        )
        if cancelled.status != STATUS_CANCELED and not cancelled.is_terminal:
            logger.warning("%s cancel of %s returned status %s", self.exchange, reference, cancelled.status)
        return cancelled

    def _record_price(self, instrument: Instrument, side: str) -> float:
        quote = self.snapshot.get(instrument.symbol)
        if quote is None:
            return instrument.price_for(side)
        return quote.bid if side == SIDE_SELL else quote.ask

    async def _persist(self, order: PersistedOrder) -> bool:
        try:
            record = await self.store.create_order_record(order, self.exchange)
        except Exception as exc:
            logger.warning("%s order %s persistence raised: %s", self.exchange, order.order_id, exc)
            record = None
        if record is None:
            logger.warning(
                "Data integrity: executed %s order %s (%s %s %s) has no persisted record",
                self.exchange,
                order.order_id,
                order.side,
                order.quantity,
                order.symbol,
            )
            metrics.record_persistence_failure(self.exchange)
            await self.alerts.persistence_alert(self.exchange, order.order_id, order.symbol)
            return False
        return True
