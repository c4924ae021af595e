import asyncio
import logging
from typing import Awaitable, Callable, Dict, Set, Tuple

from config import config
from strategy.guards import RecentlySeen
from strategy.target_index import TargetIndex
from .broker_pool import BrokerPool


logger = logging.getLogger(__name__)

StopHandler = Callable[[str, float, str], Awaitable[None]]


class StopFillReconciler:
    """
    Poll fallback for stop executions missed by the push stream.

    Every interval, each (user, symbol) pair that has orders in the index is
    checked for filled stop/take-profit orders; ids already handled are
    skipped and the rest are matched by stop id to index entries, including
    stops replaced by a ladder advance shortly before they filled.
    """

    def __init__(
        self,
        pool: BrokerPool,
        index: TargetIndex,
        seen: RecentlySeen,
        on_stop_executed: StopHandler,
    ):
        self.pool = pool
        self.index = index
        self.seen = seen
        self.on_stop_executed = on_stop_executed
        self.interval = float(config.exchange.get("poll_interval_s", 30))
        self.running = False
        self.fail_count = 0

    def _accounts(self) -> Set[Tuple[int, str]]:
        pairs: Set[Tuple[int, str]] = set()
        for orders in self.index.all().values():
            for entry in orders.values():
                pairs.add((entry.user_id, entry.symbol))
        return pairs

    async def reconcile_once(self) -> int:
        handled = 0
        stop_ids: Dict[str, float] = {}
        for user_id, symbol in sorted(self._accounts()):
            broker = self.pool.get(user_id)
            if broker is None:
                logger.warning("No broker for user %s while reconciling %s", user_id, symbol)
                continue
            for fill in await broker.recent_stop_fills(symbol):
                if fill.stop_order_id in self.seen:
                    continue
                if self.index.order_for_stop(fill.stop_order_id) is None:
                    continue
                stop_ids[fill.stop_order_id] = fill.avg_price

        for stop_order_id, avg_price in stop_ids.items():
            logger.info("Poll found executed stop %s @ %s", stop_order_id, avg_price)
            await self.on_stop_executed(stop_order_id, avg_price, "poll")
            handled += 1
        return handled

    async def run(self) -> None:
        self.running = True
        while self.running:
            try:
                await asyncio.sleep(self.interval)
                await self.reconcile_once()
                self.fail_count = 0
            except asyncio.CancelledError:
                break
            except Exception as exc:
                self.fail_count += 1
                logger.warning("Stop reconciliation failed (%s in a row): %s", self.fail_count, exc)

    async def stop(self) -> None:
        self.running = False
