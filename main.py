import asyncio
import logging
from typing import List, Optional

from api.alerts import Notifier, notifier as default_notifier
from api.metrics import start_metrics_server
from config import config
from exchange.broker_pool import BrokerPool
from exchange.reconciler import StopFillReconciler
from exchange.user_stream import UserDataStream
from monitoring.async_utils import cancel_tasks, run_tasks_with_cleanup
from monitoring.logging_utils import setup_logging
from orchestration.persistence import OrderStore, PostgresOrderStore
from strategy.guards import InFlightGuard, RecentlySeen
from strategy.order_lifecycle import OrderLifecycle
from strategy.price_watch import PriceWatchScheduler
from strategy.strategy_runner import StrategyRunner
from strategy.target_index import TargetIndex


logger = logging.getLogger(__name__)


class TradingEngine:
    """Own the index, broker pool, price watches and push stream for one process."""

    def __init__(
        self,
        store: Optional[OrderStore] = None,
        pool: Optional[BrokerPool] = None,
        notifier: Optional[Notifier] = None,
    ):
        self.store = store or PostgresOrderStore()
        self.pool = pool or BrokerPool(self.store)
        self.notifier = notifier or default_notifier
        self.index = TargetIndex(int(config.exchange.get("recently_seen_capacity", 1000)))
        self.in_flight = InFlightGuard()
        self.seen_stops = RecentlySeen(int(config.exchange.get("recently_seen_capacity", 1000)))

        self.lifecycle = OrderLifecycle(
            self.store,
            self.pool,
            self.index,
            self.notifier,
            in_flight=self.in_flight,
            seen_stops=self.seen_stops,
        )
        self.scheduler = PriceWatchScheduler(
            self.index,
            price_fn=lambda symbol: self.pool.dummy.price(symbol),
            on_target_hit=self.lifecycle.on_target_hit,
            in_flight=self.in_flight,
        )
        self.lifecycle.attach_scheduler(self.scheduler)
        self.runner = StrategyRunner(self.store, self.pool, self.lifecycle)
        self.stream = UserDataStream(
            self.pool,
            on_stop_executed=self.lifecycle.on_stop_executed,
            on_manual_close=self.lifecycle.on_manual_close,
        )
        self.reconciler = StopFillReconciler(
            self.pool,
            self.index,
            self.seen_stops,
            on_stop_executed=self.lifecycle.on_stop_executed,
        )
        self.running = False
        self._tasks: List[asyncio.Task] = []

    async def initialize(self):
        await self.store.initialize()
        await self.pool.load()
        restored = await self.lifecycle.reload()
        logger.info("Engine initialized with %s ACTIVE orders", restored)

    async def start(self):
        await self.initialize()
        self.running = True
        try:
            start_metrics_server(int(config.monitoring.get("prometheus_port", 9108)))
        except OSError as exc:
            logger.warning("Metrics server not started: %s", exc)

        self._tasks = [
            asyncio.create_task(self.stream.start(), name="user-stream"),
            asyncio.create_task(self.reconciler.run(), name="stop-reconciler"),
            asyncio.create_task(self.pool.run_refresh_loop(), name="broker-pool-refresh"),
            asyncio.create_task(self.runner.run_daily_loop(), name="daily-strategy-check"),
        ]

        async def _cleanup():
            await self.stop()

        await run_tasks_with_cleanup(self._tasks, cleanup=_cleanup)

    async def stop(self):
        if not self.running:
            return
        self.running = False
        await self.scheduler.stop_all()
        await self.stream.stop()
        await self.reconciler.stop()
        await self.lifecycle.cancel_pending()
        await cancel_tasks(self._tasks)
        self._tasks = []
        await self.pool.close()
        await self.store.close()
        await self.notifier.drain()
        logger.info("Engine stopped")


async def main():
    engine = TradingEngine()
    try:
        await engine.start()
    except (KeyboardInterrupt, asyncio.CancelledError):
        logger.info("Engine shutting down on interrupt")
        await engine.stop()


def run():
    """Console entry point."""
    setup_logging()
    asyncio.run(main())


if __name__ == "__main__":
    run()
