import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Optional, Set

from api.metrics import metrics
from config import config
from monitoring.async_utils import cancel_tasks
from .guards import InFlightGuard
from .ladder import is_crossed
from .target_index import IndexEntry, TargetIndex


logger = logging.getLogger(__name__)

PriceFn = Callable[[str], Awaitable[Optional[float]]]
TargetHitFn = Callable[[IndexEntry, float], Awaitable[None]]


class PriceWatchScheduler:
    """
    One recurring price check per token that has ACTIVE orders.

    Each tick reads the mark price and hands every index entry whose trigger
    was crossed to the target-hit handler as its own task, so a slow exchange
    round trip for one order never delays the next tick. Entries whose order
    is in flight are skipped for that tick.
    """

    def __init__(
        self,
        index: TargetIndex,
        price_fn: PriceFn,
        on_target_hit: TargetHitFn,
        in_flight: InFlightGuard,
        interval_s: Optional[float] = None,
    ):
        self.index = index
        self.price_fn = price_fn
        self.on_target_hit = on_target_hit
        self.in_flight = in_flight
        if interval_s is None:
            interval_s = config.lifecycle.get("price_watch_interval_s", 5)
        self.interval_s = float(interval_s)
        self._watches: Dict[int, asyncio.Task] = {}
        self._symbols: Dict[int, str] = {}
        self._dispatched: Set[asyncio.Task] = set()

    def is_watching(self, token_id: int) -> bool:
        task = self._watches.get(token_id)
        return task is not None and not task.done()

    def watched_tokens(self) -> List[int]:
        return [token_id for token_id in self._watches if self.is_watching(token_id)]

    def ensure(self, token_id: int, symbol: str) -> bool:
        """Start watching ``token_id`` unless already watched; returns True when a watch was created."""
        if self.is_watching(token_id):
            return False
        self._symbols[token_id] = symbol
        self._watches[token_id] = asyncio.create_task(self._watch(token_id), name=f"price-watch-{symbol}")
        metrics.set_watched_tokens(len(self._watches))
        logger.info("Price watch started for %s", symbol)
        return True

    async def remove(self, token_id: int) -> None:
        task = self._watches.pop(token_id, None)
        symbol = self._symbols.pop(token_id, None)
        metrics.set_watched_tokens(len(self._watches))
        if task is None:
            return
        if task is asyncio.current_task():
            # removal requested from inside the watch itself; let it finish its tick
            task.cancel()
            return
        await cancel_tasks([task])
        logger.info("Price watch stopped for %s", symbol)

    async def stop_all(self) -> None:
        tasks = list(self._watches.values()) + list(self._dispatched)
        self._watches.clear()
        self._symbols.clear()
        metrics.set_watched_tokens(0)
        await cancel_tasks(tasks)

    async def tick(self, token_id: int) -> List[asyncio.Task]:
        symbol = self._symbols.get(token_id)
        entries = self.index.entries_for(token_id)
        if not entries or symbol is None:
            return []
        price = await self.price_fn(symbol)
        if price is None:
            logger.warning("No price for %s this tick", symbol)
            return []

        dispatched: List[asyncio.Task] = []
        for entry in entries:
            if entry.order_id in self.in_flight:
                continue
            if not is_crossed(price, entry.trigger_price, entry.side):
                continue
            task = asyncio.create_task(self.on_target_hit(entry, price))
            self._dispatched.add(task)
            task.add_done_callback(self._dispatched.discard)
            dispatched.append(task)
        return dispatched

    async def _watch(self, token_id: int) -> None:
        while True:
            try:
                await self.tick(token_id)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Price watch tick failed for token %s", token_id)
            await asyncio.sleep(self.interval_s)
