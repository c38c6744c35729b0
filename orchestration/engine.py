import asyncio
import logging
import time
from functools import partial
from typing import Any, Dict, List, Optional, Set

from analytics.indicators import Smoother, ema
from analytics.profit import calculate_profit
from api.alerts import alert_webhook
from api.metrics import metrics
from config import config
from config.utils import as_bool, get_config_section
from monitoring.async_utils import cancel_task, run_after
from risk.position_sizer import Allocation, BalanceReader, PositionSizer, filter_quantity
from risk.stop_loss import ACTION_ENTER, ACTION_EXIT, ACTION_RATCHET, StopLossBook
from strategy.execution import ExecutionManager
from strategy.execution_types import ExecutionResult
from strategy.instruments import SIDE_BUY, SIDE_SELL, Instrument, PriceSnapshot
from strategy.signal_manager import CROSS_DOWN, CROSS_UP, SignalManager, crossover
from strategy.transports.base import BalanceUnavailableError, ExchangeAdapter, ExchangeError


logger = logging.getLogger(__name__)

STATE_IDLE = "idle"
STATE_INITIALIZED = "initialized"
STATE_RUNNING = "running"

STRATEGY_DEFAULTS: Dict[str, Any] = {
    'loop_interval_s': 3600,
    'fast_window': 9,
    'slow_window': 34,
    'candle_window': 100,
    'live_history_capacity': 10,
    'seed_points': 4,
    'poll_delay_s': 1.0,
}


class StrategyEngine:
    """EMA crossover strategy for one exchange adapter.

    Owns three tasks: the periodic tick, the price feed listener and the optional
    stop-loss sub-loop. Every mutation of an instrument's side, quantity or
    stop-loss anchor happens under that instrument's lock.
    """

    def __init__(
        self,
        adapter: ExchangeAdapter,
        store,
        symbols: List[str],
        strategy_cfg: Optional[Dict[str, Any]] = None,
        smoother: Smoother = ema,
        alerts=alert_webhook,
    ):
        if not symbols:
            raise ValueError("StrategyEngine needs at least one symbol")
        cfg = dict(STRATEGY_DEFAULTS)
        cfg.update(strategy_cfg if strategy_cfg is not None else get_config_section(config, 'strategy'))
        stop_cfg = cfg.get('stop_loss') or {}

        self.adapter = adapter
        self.store = store
        self.symbols = list(symbols)
        self.loop_interval_s = float(cfg['loop_interval_s'])
        self.candle_window = int(cfg['candle_window'])
        self.stop_loss_enabled = as_bool(stop_cfg.get('enabled'), False)
        self.stop_loss_interval_s = float(stop_cfg.get('interval_s', 420))

        settings = adapter.settings
        self.sizer = PositionSizer(
            settings.quote_currency,
            len(self.symbols),
            margin_pct=settings.margin_pct,
            excluded_currencies=settings.excluded_currencies,
        )
        self.reader = BalanceReader(adapter, self.sizer)
        self.snapshot = PriceSnapshot()
        self.signals = SignalManager(
            settings.name,
            store=store,
            smoother=smoother,
            fast_window=int(cfg['fast_window']),
            slow_window=int(cfg['slow_window']),
            capacity=int(cfg['live_history_capacity']),
            seed_points=int(cfg['seed_points']),
        )
        self.executor = ExecutionManager(
            adapter,
            store,
            self.snapshot,
            poll_delay_s=float(cfg['poll_delay_s']),
            alerts=alerts,
        )
        self.stop_losses = StopLossBook(self.symbols, threshold=float(stop_cfg.get('threshold', 100.0)))

        self.instruments: Dict[str, Instrument] = {}
        self.allocation: Optional[Allocation] = None
        self.state = STATE_IDLE

        self._locks: Dict[str, asyncio.Lock] = {s: asyncio.Lock() for s in self.symbols}
        self._in_flight: Set[str] = set()
        self._order_completed_at: Dict[str, float] = {}
        self._periodic_task: Optional[asyncio.Task] = None
        self._stop_loss_task: Optional[asyncio.Task] = None
        self._feed_task: Optional[asyncio.Task] = None

    @property
    def exchange(self) -> str:
        return self.adapter.name

    @property
    def running(self) -> bool:
        return self._periodic_task is not None and not self._periodic_task.done()

    async def initialize(self):
        if self.state != STATE_IDLE:
            return
        if not await self.refresh():
            logger.warning("%s: starting without instruments; the next tick will retry", self.exchange)
        await self.signals.seed_from_store(self.symbols)
        self._feed_task = asyncio.create_task(self._run_price_feed())
        self.state = STATE_INITIALIZED
        await self.toggle(True)

    async def refresh(self) -> bool:
        """Re-read balances and rebuild every instrument; keeps the old ones on failure."""
        started = time.monotonic()
        try:
            allocation, quotes = await self.reader.read_allocation()
            rebuilt = await self.reader.build_instruments(
                self.symbols, allocation, quotes, self.candle_window
            )
        except BalanceUnavailableError as exc:
            logger.warning("%s refresh aborted, keeping previous instruments: %s", self.exchange, exc)
            metrics.record_refresh_failure(self.exchange)
            return False

        for symbol, instrument in rebuilt.items():
            previous = self.instruments.get(symbol)
            touched = self._order_completed_at.get(symbol, 0.0) > started
            if previous is not None and (symbol in self._in_flight or touched):
                # balances were read before this symbol's latest order settled; keep its side
                previous.ask = instrument.ask
                previous.bid = instrument.bid
                previous.min_qty = instrument.min_qty
                previous.tick_size = instrument.tick_size
                previous.closes = instrument.closes
                rebuilt[symbol] = previous
        self.instruments.update(rebuilt)
        self.allocation = allocation
        metrics.update_allocation(self.exchange, allocation.amount, allocation.total_value)
        logger.info(
            "%s refreshed %s instruments, %.8f %s per instrument",
            self.exchange,
            len(rebuilt),
            allocation.amount,
            self.sizer.quote_currency,
        )
        return True

    async def tick(self):
        metrics.record_tick(self.exchange)
        if not await self.refresh():
            return

        instruments = [self.instruments[s] for s in self.symbols if s in self.instruments]
        for instrument in instruments:
            try:
                fast, slow = await self.signals.refresh(instrument)
            except ValueError as exc:
                logger.warning("%s %s: averages not computed: %s", self.exchange, instrument.symbol, exc)
                continue
            metrics.update_averages(self.exchange, instrument.symbol, fast, slow)

        stagger = self.adapter.settings.stagger_delay_s
        results = await asyncio.gather(
            *(
                run_after(index * stagger, partial(self.evaluate, instrument.symbol))
                for index, instrument in enumerate(instruments)
            ),
            return_exceptions=True,
        )
        for instrument, outcome in zip(instruments, results):
            if isinstance(outcome, Exception):
                logger.error("%s %s evaluation failed: %s", self.exchange, instrument.symbol, outcome)
                metrics.record_evaluation_error(self.exchange, instrument.symbol)

    async def evaluate(self, symbol: str) -> Optional[ExecutionResult]:
        """Trade ``symbol`` when its latest averages crossed in the direction its side is waiting for."""
        async with self._locks[symbol]:
            instrument = self.instruments.get(symbol)
            if instrument is None or symbol in self._in_flight:
                return None
            direction = crossover(self.signals.history(symbol))
            if direction is None:
                return None
            metrics.record_crossover(self.exchange, symbol, direction)
            wanted = CROSS_UP if instrument.side == SIDE_BUY else CROSS_DOWN
            if direction != wanted:
                logger.debug("%s %s: cross %s ignored while side is %s", self.exchange, symbol, direction, instrument.side)
                return None

            logger.info("%s %s: cross %s, placing %s", self.exchange, symbol, direction, instrument.side)
            result = await self._execute(instrument)
            if result is not None and result.executed:
                if instrument.side == SIDE_SELL and self.stop_loss_enabled:
                    self._arm(instrument)
                elif instrument.side == SIDE_BUY:
                    # trackers only follow held positions
                    self._disarm(symbol)
            return result

    async def check_stop_loss(self, symbol: str) -> Optional[ExecutionResult]:
        async with self._locks[symbol]:
            instrument = self.instruments.get(symbol)
            tracker = self.stop_losses.tracker(symbol)
            if instrument is None or not tracker.armed or symbol in self._in_flight:
                return None
            quote = await self._current_quote(symbol)
            if quote is None:
                logger.warning("%s %s: no price for stop-loss check", self.exchange, symbol)
                return None

            action = tracker.evaluate(instrument.side, quote.ask, self.stop_losses.threshold)
            if action == ACTION_RATCHET:
                logger.info("%s %s: stop-loss anchor raised to %s", self.exchange, symbol, tracker.anchor)
                return None
            if action not in (ACTION_EXIT, ACTION_ENTER):
                return None

            logger.info(
                "%s %s: stop-loss %s at ask %s (anchor %s)",
                self.exchange,
                symbol,
                action,
                quote.ask,
                tracker.anchor,
            )
            if action == ACTION_EXIT:
                # fees charged in the base asset leave less than the filled quantity
                try:
                    held = await self.reader.read_held_quantity(instrument)
                except BalanceUnavailableError as exc:
                    logger.warning("%s %s: stop-loss exit postponed: %s", self.exchange, symbol, exc)
                    return None
                if held <= 0:
                    logger.warning("%s %s: stop-loss exit found no %s to sell", self.exchange, symbol, instrument.base_asset)
                    self._disarm(symbol)
                    return None
                instrument.quantity = held

            metrics.record_stop_loss_trigger(self.exchange, instrument.side)
            result = await self._execute(instrument)
            if result is not None and result.executed:
                self._disarm(symbol)
            return result

    async def arm_stop_loss(self, symbol: str) -> Optional[float]:
        async with self._locks[symbol]:
            instrument = self.instruments.get(symbol)
            if instrument is None:
                return None
            return self._arm(instrument)

    async def disarm_stop_loss(self, symbol: Optional[str] = None):
        if symbol is None:
            self.stop_losses.disarm_all()
            await cancel_task(self._stop_loss_task)
            self._stop_loss_task = None
            metrics.update_stop_loss_armed(self.exchange, 0)
        else:
            async with self._locks[symbol]:
                self._disarm(symbol)

    async def toggle(self, enabled: bool) -> bool:
        if enabled:
            if not self.running:
                self._periodic_task = asyncio.create_task(self._periodic_loop())
                self.state = STATE_RUNNING
                logger.info("%s periodic tick every %ss", self.exchange, self.loop_interval_s)
        elif self._periodic_task is not None:
            await cancel_task(self._periodic_task)
            self._periodic_task = None
            if self.state == STATE_RUNNING:
                self.state = STATE_INITIALIZED
            logger.info("%s periodic tick paused", self.exchange)
        return self.running

    async def stop(self):
        await cancel_task(self._periodic_task)
        await cancel_task(self._stop_loss_task)
        await cancel_task(self._feed_task)
        self._periodic_task = None
        self._stop_loss_task = None
        self._feed_task = None
        await self.adapter.close()
        self.state = STATE_IDLE
        logger.info("%s engine stopped", self.exchange)

    async def profit(self, start_ms: int, end_ms: int) -> float:
        total = 0.0
        stagger = self.adapter.settings.stagger_delay_s
        for index, symbol in enumerate(self.symbols):
            trades = await run_after(
                index * stagger,
                partial(self.adapter.get_my_trades, symbol, start_ms, end_ms),
            )
            total += calculate_profit(trades, start_ms, end_ms)
        return total

    async def _execute(self, instrument: Instrument) -> Optional[ExecutionResult]:
        """Run one order for the instrument's current side; caller holds its lock."""
        symbol = instrument.symbol
        side = instrument.side
        quantity = instrument.quantity
        if quantity <= 0:
            logger.warning("%s %s: %s skipped, quantity is zero", self.exchange, symbol, side)
            return None

        self._in_flight.add(symbol)
        try:
            result = await self.executor.execute(instrument, side, quantity)
        finally:
            self._in_flight.discard(symbol)
            self._order_completed_at[symbol] = time.monotonic()

        if result.executed:
            self._flip(instrument, result)
            if not result.persisted:
                logger.warning("%s %s: %s executed without a persisted record", self.exchange, symbol, side)
        return result

    def _flip(self, instrument: Instrument, result: ExecutionResult):
        if instrument.side == SIDE_BUY:
            instrument.side = SIDE_SELL
            instrument.quantity = filter_quantity(result.filled_qty, instrument.min_qty)
        else:
            instrument.side = SIDE_BUY
            instrument.quantity = self._buy_quantity(instrument)
        logger.info("%s %s: side now %s (qty %s)", self.exchange, instrument.symbol, instrument.side, instrument.quantity)

    def _buy_quantity(self, instrument: Instrument) -> float:
        if self.allocation is None:
            return 0.0
        quote = self.snapshot.get(instrument.symbol)
        ask = quote.ask if quote is not None else instrument.ask
        if ask <= 0:
            return 0.0
        return filter_quantity(self.allocation.amount / ask, instrument.min_qty)

    def _arm(self, instrument: Instrument) -> float:
        quote = self.snapshot.get(instrument.symbol)
        ask = quote.ask if quote is not None else instrument.ask
        bid = quote.bid if quote is not None else instrument.bid
        tracker = self.stop_losses.tracker(instrument.symbol)
        anchor = tracker.arm(instrument.side, ask, bid, self.stop_losses.threshold)
        logger.info("%s %s: stop-loss armed at %s for %s", self.exchange, instrument.symbol, anchor, instrument.side)
        metrics.update_stop_loss_armed(self.exchange, len(self.stop_losses.armed_symbols()))
        if self._stop_loss_task is None or self._stop_loss_task.done():
            self._stop_loss_task = asyncio.create_task(self._stop_loss_loop())
        return anchor

    def _disarm(self, symbol: str):
        self.stop_losses.tracker(symbol).disarm()
        metrics.update_stop_loss_armed(self.exchange, len(self.stop_losses.armed_symbols()))

    async def _current_quote(self, symbol: str):
        quote = self.snapshot.get(symbol)
        if quote is not None:
            return quote
        try:
            quotes = await self.adapter.get_ticker(symbol)
        except (ExchangeError, asyncio.TimeoutError, OSError) as exc:
            logger.warning("%s %s: ticker read failed: %s", self.exchange, symbol, exc)
            return None
        for quote in quotes:
            if quote.symbol == symbol:
                return quote
        return None

    async def _periodic_loop(self):
        while True:
            await asyncio.sleep(self.loop_interval_s)
            try:
                await self.tick()
            except Exception as exc:
                logger.error("%s tick failed: %s", self.exchange, exc)

    async def _stop_loss_loop(self):
        while self.stop_losses.any_armed():
            await asyncio.sleep(self.stop_loss_interval_s)
            armed = self.stop_losses.armed_symbols()
            results = await asyncio.gather(
                *(self.check_stop_loss(symbol) for symbol in armed),
                return_exceptions=True,
            )
            for symbol, outcome in zip(armed, results):
                if isinstance(outcome, Exception):
                    logger.error("%s %s stop-loss check failed: %s", self.exchange, symbol, outcome)
        logger.info("%s stop-loss loop idle, nothing armed", self.exchange)

    async def _run_price_feed(self):
        try:
            async for quote in self.adapter.subscribe_price_feed(self.symbols):
                self.snapshot.update(quote)
                metrics.update_price(self.exchange, quote.symbol, quote.ask)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("%s price feed stopped: %s", self.exchange, exc)
