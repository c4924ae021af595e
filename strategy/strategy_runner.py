import asyncio
import logging
from datetime import datetime, time, timedelta, timezone
from typing import TYPE_CHECKING, List, Optional

from config import config
from exchange.broker_pool import BrokerPool
from .models import Order, Strategy, Token
from .order_lifecycle import OrderLifecycle
from .triggers import side_from_candle

if TYPE_CHECKING:
    from orchestration.persistence import OrderStore


logger = logging.getLogger(__name__)

MIN_LADDER_RUNGS = 2


def _parse_check_time(value: str) -> time:
    parts = [int(p) for p in str(value).split(":")]
    while len(parts) < 3:
        parts.append(0)
    return time(parts[0], parts[1], parts[2], tzinfo=timezone.utc)


class StrategyRunner:
    """Opens root strategies at every daily candle boundary."""

    def __init__(
        self,
        store: "OrderStore",
        pool: BrokerPool,
        lifecycle: OrderLifecycle,
        check_at: Optional[str] = None,
    ):
        self.store = store
        self.pool = pool
        self.lifecycle = lifecycle
        if check_at is None:
            check_at = config.lifecycle.get("daily_check_at", "00:00:05")
        self.check_at = _parse_check_time(check_at)

    async def check_token(self, token: Token) -> List[Order]:
        if not token.is_active:
            return []
        candles = await self.pool.dummy.daily_candles(token.symbol, 1)
        if not candles:
            logger.warning("No previous daily candle for %s; skipping", token.symbol)
            return []
        previous = candles[-1]

        opened: List[Order] = []
        for strategy in await self.store.root_strategies_for_token(token.id):
            if not strategy.is_active:
                continue
            ladder = await self.store.get_ladder(token.id, strategy.id)
            if len(ladder) < MIN_LADDER_RUNGS:
                logger.debug("Strategy %s on %s has fewer than %s targets", strategy.id, token.symbol, MIN_LADDER_RUNGS)
                continue
            side = side_from_candle(previous, strategy.direction)
            opened.extend(await self._run_strategy(token, strategy, side))
        return opened

    async def _run_strategy(self, token: Token, strategy: Strategy, side) -> List[Order]:
        family = [strategy.id] + [child.id for child in await self.store.child_strategies(strategy.id)]

        if strategy.close_before_new_candle:
            closed = await self.lifecycle.close_all_for_token(token, family)
            if closed:
                logger.info("Closed %s %s orders before new candle", closed, token.symbol)
            return await self.lifecycle.open_for_strategy(token, strategy, side)

        active = await self.store.find_active_orders(token_id=token.id, strategy_ids=family)
        if not active:
            return await self.lifecycle.open_for_strategy(token, strategy, side)

        busy_users = {order.user_id for order in active}
        opened: List[Order] = []
        for user in await self.store.eligible_users(token.id):
            if user.id in busy_users:
                continue
            opened.extend(await self.lifecycle.open_for_strategy(token, strategy, side, user_id=user.id))
        return opened

    async def check_all(self) -> int:
        opened = 0
        for token in await self.store.list_tokens():
            try:
                opened += len(await self.check_token(token))
            except Exception:
                logger.exception("Daily check failed for %s", token.symbol)
                self.lifecycle.notifier.anomaly(f"Daily strategy check failed for {token.symbol}")
        logger.info("Daily check opened %s orders", opened)
        return opened

    def seconds_until_next_check(self, now: datetime) -> float:
        target = datetime.combine(now.date(), self.check_at)
        if target <= now:
            target += timedelta(days=1)
        return (target - now).total_seconds()

    async def run_daily_loop(self) -> None:
        while True:
            delay = self.seconds_until_next_check(datetime.now(timezone.utc))
            logger.info("Next daily strategy check in %.0fs", delay)
            await asyncio.sleep(delay)
            await self.check_all()
