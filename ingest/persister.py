import asyncio
import logging
from collections import deque
from datetime import datetime, timezone
from typing import Any, Deque, Dict, List, Optional, Tuple

import asyncpg

from config import config
from config.utils import get_config_section
from strategy.execution_types import PersistedOrder


logger = logging.getLogger(__name__)

DURABLE_CAPACITY = 100

SCHEMA = """
CREATE TABLE IF NOT EXISTS averages (
    exchange TEXT NOT NULL,
    symbol TEXT NOT NULL,
    fast DOUBLE PRECISION[] NOT NULL DEFAULT '{}',
    slow DOUBLE PRECISION[] NOT NULL DEFAULT '{}',
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    PRIMARY KEY (exchange, symbol)
);
CREATE TABLE IF NOT EXISTS orders (
    id BIGSERIAL PRIMARY KEY,
    exchange TEXT NOT NULL,
    order_id TEXT NOT NULL,
    client_order_id TEXT,
    symbol TEXT NOT NULL,
    side TEXT NOT NULL,
    type TEXT NOT NULL,
    status TEXT NOT NULL,
    quantity DOUBLE PRECISION NOT NULL,
    price DOUBLE PRECISION,
    fee DOUBLE PRECISION NOT NULL DEFAULT 0,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    UNIQUE (exchange, order_id)
);
"""

APPEND_AVERAGES = """
INSERT INTO averages AS a (exchange, symbol, fast, slow)
VALUES ($1, $2, ARRAY[$3::float8], ARRAY[$4::float8])
ON CONFLICT (exchange, symbol) DO UPDATE SET
    fast = (a.fast || EXCLUDED.fast)[GREATEST(cardinality(a.fast) + 2 - $5, 1):],
    slow = (a.slow || EXCLUDED.slow)[GREATEST(cardinality(a.slow) + 2 - $5, 1):],
    updated_at = now()
"""

INSERT_ORDER = """
INSERT INTO orders (exchange, order_id, client_order_id, symbol, side, type, status,
                    quantity, price, fee, created_at)
VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
ON CONFLICT (exchange, order_id) DO NOTHING
RETURNING id, exchange, order_id, client_order_id, symbol, side, type, status,
          quantity, price, fee, created_at
"""


class PostgresStore:
    """Durable averages and executed orders on PostgreSQL."""

    def __init__(self, db_config: Optional[Dict[str, Any]] = None, capacity: int = DURABLE_CAPACITY):
        self.db_config = db_config or get_config_section(config, 'database')
        self.capacity = capacity
        self.pool: Optional[asyncpg.Pool] = None
        self._lock = asyncio.Lock()

    async def initialize(self):
        async with self._lock:
            if self.pool is not None:
                return
            db_config = self.db_config
            self.pool = await asyncpg.create_pool(
                host=db_config['host'],
                port=int(db_config.get('port', 5432)),
                database=db_config['database'],
                user=db_config['user'],
                password=db_config['password'],
                min_size=int(db_config.get('min_pool_size', 1)),
                max_size=int(db_config.get('max_pool_size', 5)),
            )
            async with self.pool.acquire() as conn:
                await conn.execute(SCHEMA)
            logger.info("Connected to PostgreSQL at %s:%s", db_config['host'], db_config.get('port', 5432))

    async def close(self):
        async with self._lock:
            if self.pool:
                await self.pool.close()
                self.pool = None

    async def find_latest_averages(self, exchange: str, symbol: str) -> Optional[Dict[str, List[float]]]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT fast, slow FROM averages WHERE exchange = $1 AND symbol = $2",
                exchange,
                symbol,
            )
        if row is None:
            return None
        return {'fast': list(row['fast'] or []), 'slow': list(row['slow'] or [])}

    async def append_averages(self, exchange: str, symbol: str, fast: float, slow: float) -> bool:
        try:
            async with self.pool.acquire() as conn:
                await conn.execute(APPEND_AVERAGES, exchange, symbol, fast, slow, self.capacity)
            return True
        except (asyncpg.PostgresError, OSError) as exc:
            logger.error("Averages append failed for %s %s: %s", exchange, symbol, exc)
            return False

    async def create_order_record(self, order: PersistedOrder, exchange: str) -> Optional[Dict[str, Any]]:
        try:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(
                    INSERT_ORDER,
                    exchange,
                    order.order_id,
                    order.client_order_id,
                    order.symbol,
                    order.side,
                    order.type,
                    order.status,
                    order.quantity,
                    order.price,
                    order.fee,
                    datetime.fromtimestamp(order.created_at, tz=timezone.utc),
                )
        except (asyncpg.PostgresError, OSError) as exc:
            logger.error("Order insert failed for %s %s: %s", exchange, order.order_id, exc)
            return None
        if row is None:
            logger.warning("Order %s on %s already recorded", order.order_id, exchange)
            return None
        return dict(row)


class MemoryStore:
    """In-process store with the same contract, for paper mode and tests."""

    def __init__(self, capacity: int = DURABLE_CAPACITY):
        self.capacity = capacity
        self.averages: Dict[Tuple[str, str], Tuple[Deque[float], Deque[float]]] = {}
        self.orders: List[Dict[str, Any]] = []

    async def initialize(self):
        return None

    async def close(self):
        return None

    async def find_latest_averages(self, exchange: str, symbol: str) -> Optional[Dict[str, List[float]]]:
        entry = self.averages.get((exchange, symbol))
        if entry is None:
            return None
        fast, slow = entry
        return {'fast': list(fast), 'slow': list(slow)}

    async def append_averages(self, exchange: str, symbol: str, fast: float, slow: float) -> bool:
        key = (exchange, symbol)
        if key not in self.averages:
            self.averages[key] = (deque(maxlen=self.capacity), deque(maxlen=self.capacity))
        fast_series, slow_series = self.averages[key]
        fast_series.append(fast)
        slow_series.append(slow)
        return True

    async def create_order_record(self, order: PersistedOrder, exchange: str) -> Optional[Dict[str, Any]]:
        if any(o['exchange'] == exchange and o['order_id'] == order.order_id for o in self.orders):
            return None
        record = {**order.to_dict(), 'exchange': exchange, 'id': len(self.orders) + 1}
        self.orders.append(record)
        return record
