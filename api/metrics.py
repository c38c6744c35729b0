import errno
import logging
from pathlib import Path
from prometheus_client import Counter, Gauge, Histogram, start_http_server
from typing import Optional

from config import config


logger = logging.getLogger(__name__)

_METRICS_SERVER_STARTED = False
_METRICS_PORT: Optional[int] = None


def _get_port_scan_limit() -> int:
    try:
        return int(config.monitoring.get('prometheus_port_scan', 0))
    except Exception:
        return 0


def _get_port_file() -> Optional[Path]:
    path_value = config.monitoring.get('metrics_port_file') if config.get('monitoring') else None
    if not path_value:
        return None
    return Path(path_value)


def _write_port_file(port: int) -> None:
    port_file = _get_port_file()
    if not port_file:
        return
    try:
        port_file.parent.mkdir(parents=True, exist_ok=True)
        port_file.write_text(str(port))
    except OSError as exc:
        logger.warning("Failed to persist metrics port file %s: %s", port_file, exc)


class MetricsCollector:
    def __init__(self):
        self.ticks = Counter('strategy_ticks_total', 'Periodic strategy ticks run', ['exchange'])
        self.refresh_failures = Counter(
            'refresh_failures_total', 'Refresh cycles aborted on read failures', ['exchange']
        )
        self.evaluation_errors = Counter(
            'instrument_evaluation_errors_total', 'Unexpected errors while evaluating an instrument',
            ['exchange', 'symbol']
        )

        self.fast_average = Gauge('ema_fast', 'Latest fast EMA value', ['exchange', 'symbol'])
        self.slow_average = Gauge('ema_slow', 'Latest slow EMA value', ['exchange', 'symbol'])
        self.crossovers = Counter('crossovers_total', 'Detected crossovers', ['exchange', 'symbol', 'direction'])

        self.orders_placed = Counter('orders_placed_total', 'Total orders submitted', ['exchange', 'side'])
        self.orders_filled = Counter('orders_filled_total', 'Orders filled without cancellation', ['exchange'])
        self.orders_cancelled = Counter('orders_cancelled_total', 'Orders cancelled after partial fill', ['exchange'])
        self.order_failures = Counter('order_failures_total', 'Order submissions that failed', ['exchange'])
        self.persistence_failures = Counter(
            'persistence_failures_total', 'Executed orders that could not be persisted', ['exchange']
        )
        self.order_send_latency = Histogram('order_send_latency_seconds', 'Latency from order send to ACK')

        self.allocation = Gauge('allocation_per_instrument', 'Quote amount allocated per instrument', ['exchange'])
        self.equity = Gauge('account_equity', 'Total valued balance in quote currency', ['exchange'])
        self.current_price = Gauge('current_price', 'Last observed ask price', ['exchange', 'symbol'])

        self.stop_loss_armed = Gauge('stop_loss_armed', 'Armed stop-loss trackers', ['exchange'])
        self.stop_loss_triggers = Counter(
            'stop_loss_triggers_total', 'Reactive stop-loss orders triggered', ['exchange', 'side']
        )
        self.reconnect_count = Counter('websocket_reconnects_total', 'Total WebSocket reconnects', ['exchange'])

    def record_tick(self, exchange: str):
        self.ticks.labels(exchange=exchange).inc()

    def record_refresh_failure(self, exchange: str):
        self.refresh_failures.labels(exchange=exchange).inc()

    def record_evaluation_error(self, exchange: str, symbol: str):
        self.evaluation_errors.labels(exchange=exchange, symbol=symbol).inc()

    def update_averages(self, exchange: str, symbol: str, fast: float, slow: float):
        self.fast_average.labels(exchange=exchange, symbol=symbol).set(fast)
        self.slow_average.labels(exchange=exchange, symbol=symbol).set(slow)

    def record_crossover(self, exchange: str, symbol: str, direction: str):
        self.crossovers.labels(exchange=exchange, symbol=symbol, direction=direction).inc()

    def record_order_placed(self, exchange: str, side: str):
        self.orders_placed.labels(exchange=exchange, side=side).inc()

    def record_order_filled(self, exchange: str):
        self.orders_filled.labels(exchange=exchange).inc()

    def record_order_cancelled(self, exchange: str):
        self.orders_cancelled.labels(exchange=exchange).inc()

    def record_order_failure(self, exchange: str):
        self.order_failures.labels(exchange=exchange).inc()

    def record_persistence_failure(self, exchange: str):
        self.persistence_failures.labels(exchange=exchange).inc()

    def record_order_send_latency(self, latency_seconds: float):
        self.order_send_latency.observe(latency_seconds)

    def update_allocation(self, exchange: str, amount: float, total_value: float):
        self.allocation.labels(exchange=exchange).set(amount)
        self.equity.labels(exchange=exchange).set(total_value)

    def update_price(self, exchange: str, symbol: str, price: float):
        self.current_price.labels(exchange=exchange, symbol=symbol).set(price)

    def update_stop_loss_armed(self, exchange: str, count: int):
        self.stop_loss_armed.labels(exchange=exchange).set(count)

    def record_stop_loss_trigger(self, exchange: str, side: str):
        self.stop_loss_triggers.labels(exchange=exchange, side=side).inc()

    def record_reconnect(self, exchange: str):
        self.reconnect_count.labels(exchange=exchange).inc()


def start_metrics_server(port: int = 9108):
    global _METRICS_SERVER_STARTED, _METRICS_PORT
    if _METRICS_SERVER_STARTED:
        return
    port_scan_limit = max(0, _get_port_scan_limit())
    last_error: Optional[OSError] = None
    for offset in range(port_scan_limit + 1):
        candidate = port + offset
        try:
            start_http_server(candidate)
        except OSError as exc:
            last_error = exc
            if exc.errno == errno.EADDRINUSE:
                logger.warning(
                    "Prometheus metrics server port %s already in use; trying next candidate",
                    candidate,
                )
                continue
            raise
        _METRICS_SERVER_STARTED = True
        _METRICS_PORT = candidate
        _write_port_file(candidate)
        logger.info("Prometheus metrics server started on port %s", candidate)
        return
    if last_error and last_error.errno == errno.EADDRINUSE:
        raise RuntimeError(
            f"Unable to bind Prometheus metrics server on ports {port}-{port + port_scan_limit}"
        ) from last_error
    if last_error:
        raise last_error

metrics = MetricsCollector()
