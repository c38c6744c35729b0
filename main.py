import asyncio
import logging
import signal
from typing import List, Optional

from api.metrics import start_metrics_server
from config import config
from config.utils import get_config_section
from monitoring.async_utils import run_tasks_with_cleanup
from monitoring.logging_utils import setup_logging
from orchestration.engine import StrategyEngine
from orchestration.factory import build_engines


logger = logging.getLogger(__name__)


class TradingSystem:
    """Run one crossover engine per enabled exchange until a shutdown signal arrives."""

    def __init__(self, config_obj=None):
        self.config = config_obj or config
        self.monitoring_cfg = get_config_section(self.config, 'monitoring')
        self.engines: List[StrategyEngine] = []
        self.store = None
        self._shutdown: Optional[asyncio.Event] = None

    async def start(self):
        self._shutdown = asyncio.Event()
        self._install_signal_handlers()

        start_metrics_server(int(self.monitoring_cfg.get('prometheus_port', 9108)))

        self.engines, self.store = build_engines(self.config)
        if not self.engines:
            logger.error("No exchange enabled; nothing to run")
            return
        await self.store.initialize()

        results = await asyncio.gather(
            *(engine.initialize() for engine in self.engines),
            return_exceptions=True,
        )
        for engine, outcome in zip(self.engines, results):
            if isinstance(outcome, Exception):
                logger.error("%s failed to initialize: %s", engine.exchange, outcome)

        tasks = [asyncio.create_task(self._shutdown.wait())]

        async def _cleanup():
            await self.stop()

        await run_tasks_with_cleanup(tasks, cleanup=_cleanup)

    async def stop(self):
        await asyncio.gather(*(engine.stop() for engine in self.engines), return_exceptions=True)
        if self.store is not None:
            await self.store.close()
        logger.info("Trading system stopped")

    def request_shutdown(self):
        if self._shutdown is not None and not self._shutdown.is_set():
            logger.info("Shutdown requested")
            self._shutdown.set()

    def _install_signal_handlers(self):
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_shutdown)
            except NotImplementedError:
                logger.debug("Signal handler for %s not supported on this platform", sig)


async def main():
    system = TradingSystem(config)
    try:
        await system.start()
    except (KeyboardInterrupt, asyncio.CancelledError):
        logger.info("System shutting down on interrupt")
        await system.stop()


if __name__ == "__main__":
    setup_logging(get_config_section(config, 'logging').get('level', 'INFO'))
    asyncio.run(main())
