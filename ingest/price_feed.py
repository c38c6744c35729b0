import asyncio
import json
import logging
import random
import time
from typing import AsyncIterator, Callable, Iterable, List, Optional

import websockets

from api.metrics import metrics
from config import config
from config.utils import get_config_section
from strategy.transports.base import MalformedPayloadError, PriceQuote


logger = logging.getLogger(__name__)

MessageParser = Callable[[dict], Optional[PriceQuote]]


class PriceFeedClient:
    """Reconnecting websocket ticker stream yielding ``PriceQuote`` updates."""

    def __init__(
        self,
        exchange: str,
        url: str,
        parser: MessageParser,
        subscribe_messages: Optional[Iterable[dict]] = None,
    ):
        ws_cfg = get_config_section(config, 'websocket')
        self.exchange = exchange
        self.url = url
        self.parser = parser
        self.subscribe_messages: List[dict] = list(subscribe_messages or [])
        self.reconnect_backoff = list(ws_cfg.get('reconnect_backoff') or [1, 2, 5, 10, 30])
        self.max_reconnects = int(ws_cfg.get('max_reconnects_per_minute', 10))
        self.stream_timeout = float(ws_cfg.get('stream_stale_s', 60))

        self.running = False
        self.reconnect_count = 0
        self.last_reconnect_window = time.time()
        self.gap_start_ts: Optional[float] = None
        self.last_seen = time.monotonic()

    async def _handle_reconnect(self, backoff_index: int = 0):
        if backoff_index >= len(self.reconnect_backoff):
            backoff_index = len(self.reconnect_backoff) - 1

        now = time.time()
        if now - self.last_reconnect_window > 60:
            self.reconnect_count = 0
            self.last_reconnect_window = now

        self.reconnect_count += 1
        metrics.record_reconnect(self.exchange)

        if self.reconnect_count > self.max_reconnects:
            logger.warning(
                "%s price feed: %s reconnects in 60s; entering degraded reconnect mode",
                self.exchange,
                self.reconnect_count,
            )
            self.reconnect_count = 0
            self.last_reconnect_window = now
            delay = self.reconnect_backoff[-1] + random.uniform(0, 0.5)
        else:
            delay = self.reconnect_backoff[backoff_index] + random.uniform(0, 0.5)
        logger.info("%s price feed reconnecting in %.1fs", self.exchange, delay)
        await asyncio.sleep(delay)

    async def stream(self) -> AsyncIterator[PriceQuote]:
        self.running = True
        backoff_index = 0
        while self.running:
            try:
                async with websockets.connect(self.url, ping_interval=20) as ws:
                    for message in self.subscribe_messages:
                        await ws.send(json.dumps(message))
                    logger.info("%s socket for price watching is running", self.exchange)

                    while self.running:
                        try:
                            raw = await asyncio.wait_for(ws.recv(), timeout=self.stream_timeout)
                        except asyncio.TimeoutError:
                            logger.warning("%s ticker stream stale; reconnecting", self.exchange)
                            self.gap_start_ts = time.time()
                            raise

                        self.last_seen = time.monotonic()
                        if self.gap_start_ts is not None:
                            logger.info(
                                "%s ticker stream reconnected after %.1fs gap",
                                self.exchange,
                                time.time() - self.gap_start_ts,
                            )
                            self.gap_start_ts = None
                            backoff_index = 0

                        try:
                            quote = self.parser(json.loads(raw))
                        except (ValueError, MalformedPayloadError) as exc:
                            logger.warning("%s dropped malformed ticker message: %s", self.exchange, exc)
                            continue
                        if quote is not None:
                            yield quote

            except asyncio.CancelledError:
                raise
            except Exception as e:
                if not self.running:
                    break
                logger.error("%s ticker stream error: %s", self.exchange, e)
                if self.gap_start_ts is None:
                    self.gap_start_ts = time.time()
                await self._handle_reconnect(backoff_index)
                backoff_index = min(backoff_index + 1, len(self.reconnect_backoff) - 1)

    def stop(self):
        self.running = False
