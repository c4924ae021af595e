import asyncio
import logging
from typing import TYPE_CHECKING, Iterable, List, Optional, Set

from api.alerts import Notifier
from api.metrics import metrics
from config import config
from exchange.broker import Broker, OpenResult
from exchange.broker_pool import BrokerPool
from risk.position_sizer import PositionSizer, SizingError, truncate_qty
from .guards import InFlightGuard, RecentlySeen
from .ladder import is_crossed, rung_stop, rung_trigger, sort_ladder
from .models import CloseReason, Order, OrderStatus, Side, Strategy, Target, Token, User
from .target_index import IndexEntry, TargetIndex
from .triggers import apply_direction, candle_trend, select_trigger_strategy

if TYPE_CHECKING:
    from orchestration.persistence import OrderStore
    from .price_watch import PriceWatchScheduler


logger = logging.getLogger(__name__)

IN_FLIGHT_POLL_S = 0.05


class OrderLifecycle:
    """
    Order state machine: open, ladder advance, close, stop executed, manual close, reload.

    Every exchange side effect goes through the user's broker and every state
    change is written to the store before the in-memory index is updated.
    Work on one order is serialized through ``in_flight``; executed stops are
    additionally deduplicated by stop id through ``seen_stops`` so the push
    stream and the poll fallback can deliver the same event safely.
    """

    def __init__(
        self,
        store: "OrderStore",
        pool: BrokerPool,
        index: TargetIndex,
        notifier: Notifier,
        sizer: Optional[PositionSizer] = None,
        in_flight: Optional[InFlightGuard] = None,
        seen_stops: Optional[RecentlySeen] = None,
    ):
        cfg = config.lifecycle
        self.store = store
        self.pool = pool
        self.index = index
        self.notifier = notifier
        self.sizer = sizer or PositionSizer()
        self.in_flight = in_flight or InFlightGuard()
        self.seen_stops = seen_stops or RecentlySeen(int(config.exchange.get("recently_seen_capacity", 1000)))
        self.scheduler: Optional["PriceWatchScheduler"] = None

        self.open_attempts = int(cfg.get("open_attempts", 2))
        self.open_retry_delay = float(cfg.get("open_retry_delay_s", 0.8))
        self.open_qty_step_down = float(cfg.get("open_qty_step_down", 0.1))
        self.stop_place_retries = int(cfg.get("stop_place_retries", 3))
        self.stop_place_delay = float(cfg.get("stop_place_delay_s", 3))
        self.stop_cancel_retries = int(cfg.get("stop_cancel_retries", 3))
        self.stop_cancel_delay = float(cfg.get("stop_cancel_delay_s", 3))
        self.trigger_delay = float(cfg.get("trigger_delay_s", 5))
        self.trigger_lookback_days = int(cfg.get("trigger_lookback_days", 5))
        self.chain_per_user = bool(cfg.get("chain_per_user", True))
        self.in_flight_wait = float(cfg.get("in_flight_wait_s", 30))

        self._chains: Set[asyncio.Task] = set()

    def attach_scheduler(self, scheduler: "PriceWatchScheduler") -> None:
        self.scheduler = scheduler

    async def open_for_strategy(
        self,
        token: Token,
        strategy: Strategy,
        side: Side,
        user_id: Optional[int] = None,
    ) -> List[Order]:
        """Open one order per eligible user; users are sized and submitted independently."""
        price = await self.pool.dummy.price(token.symbol)
        if price is None:
            self.notifier.anomaly(f"No price for {token.symbol}; strategy {strategy.id} not opened")
            metrics.record_anomaly("no_price")
            return []

        ladder = sort_ladder(await self.store.get_ladder(token.id, strategy.id))
        if not ladder:
            self.notifier.anomaly(f"Strategy {strategy.id} has no targets for {token.symbol}")
            metrics.record_anomaly("no_ladder")
            return []

        opened: List[Order] = []
        for user in await self.store.eligible_users(token.id, user_id):
            order = await self.open_for_user(user, token, strategy, side, price, ladder)
            if order is not None:
                opened.append(order)
        return opened

    async def open_for_user(
        self,
        user: User,
        token: Token,
        strategy: Strategy,
        side: Side,
        price: float,
        ladder: List[Target],
    ) -> Optional[Order]:
        broker = self.pool.get(user.id)
        if broker is None:
            logger.warning("No broker for user %s; skipping %s", user.id, token.symbol)
            return None

        strategy_count = await self.store.count_user_token_strategies(user.id, token.id)
        try:
            allocation = self.sizer.allocate(user, strategy, token, price, max(strategy_count, 1))
        except SizingError as exc:
            logger.info("Skipping user %s on %s: %s", user.id, token.symbol, exc)
            self.notifier.not_enough_balance(user.telegram_chat_id, token.symbol, str(exc))
            metrics.record_open_failure("sizing")
            return None

        await broker.adjust_leverage(token.symbol, token.leverage)
        result = await self._submit_open(broker, token, side, allocation.qty)
        if not result.success:
            self.notifier.anomaly(
                f"Can't open {side.value} {token.symbol} qty={allocation.qty} for user {user.id}: {result.error}"
            )
            metrics.record_open_failure("exchange")
            return None

        first = ladder[0]
        qty = result.qty or allocation.qty
        entry_price = result.entry_price
        order = Order(
            order_id=result.order_id,
            user_id=user.id,
            token_id=token.id,
            strategy_id=strategy.id,
            side=result.side or side,
            entry_price=entry_price,
            qty=qty,
            budget=allocation.budget,
            fee=self.sizer.fee(qty, entry_price),
            leverage=token.leverage,
            current_target_id=first.id,
            timestamp=result.timestamp or 0,
        )

        self.in_flight.acquire(order.order_id)
        try:
            await self.store.create_order(order)
            if not await self._place_stop(broker, token, order, first):
                self.notifier.anomaly(
                    f"Stop placement failed for new order {order.order_id} on {token.symbol}; force closing"
                )
                if not await self._close(order, token, broker, CloseReason.UNPROTECTED, allow_trigger=False):
                    # still ACTIVE on the exchange: keep it indexed and watched without a stop
                    self._track(order, token, first)
                    self.notifier.anomaly(
                        f"Order {order.order_id} on {token.symbol} is open without a stop; manual action needed"
                    )
                    metrics.record_anomaly("unprotected_open")
                return None

            trigger = self._track(order, token, first)
        finally:
            self.in_flight.release(order.order_id)

        metrics.record_order_opened(strategy.id)
        logger.info(
            "Opened %s %s order %s for user %s qty=%s @ %s",
            order.side.value,
            token.symbol,
            order.order_id,
            user.id,
            order.qty,
            order.entry_price,
        )
        self.notifier.order_opened(
            user.telegram_chat_id,
            order.order_id,
            order.side.value,
            order.entry_price,
            trigger,
            rung_stop(first, order.entry_price, order.side),
        )
        return order

    def _track(self, order: Order, token: Token, rung: Target) -> float:
        """Index ``order`` at ``rung`` and make sure its token is watched; returns the trigger price."""
        trigger = rung_trigger(rung, order.entry_price, order.side)
        self.index.add(
            IndexEntry(
                token_id=token.id,
                order_id=order.order_id,
                user_id=order.user_id,
                symbol=token.symbol,
                side=order.side,
                target_id=rung.id,
                trigger_price=trigger,
                stop_order_id=order.stop_order_id,
            )
        )
        metrics.set_active_orders(len(self.index))
        if self.scheduler is not None:
            self.scheduler.ensure(token.id, token.symbol)
        return trigger

    async def _submit_open(self, broker: Broker, token: Token, side: Side, qty: float) -> OpenResult:
        result = OpenResult(success=False, error="no attempt made")
        for attempt in range(self.open_attempts):
            attempt_qty = self.sizer.stepped_qty(qty, attempt, self.open_qty_step_down, token.min_qty)
            if attempt_qty < token.min_qty:
                break
            if attempt:
                await asyncio.sleep(self.open_retry_delay)
            result = await broker.open_market_order(token.symbol, side, attempt_qty)
            if result.success:
                return result
            recovered = await self._recover_open(broker, token, side)
            if recovered is not None:
                logger.warning("Recovered open order %s on %s after rejection", recovered.order_id, token.symbol)
                return recovered
            logger.warning(
                "Open %s %s attempt %s/%s failed: %s",
                side.value,
                token.symbol,
                attempt + 1,
                self.open_attempts,
                result.error,
            )
        return result

    async def _recover_open(self, broker: Broker, token: Token, side: Side) -> Optional[OpenResult]:
        """Reconcile an ambiguous rejection against live position and trade history."""
        if not await broker.has_open_position(token.symbol):
            return None
        order_id = await broker.recent_filled_order(token.symbol, side)
        if order_id is None:
            return None
        if await self.store.get_order(order_id) is not None:
            return None
        detail = await broker.verify_order(token.symbol, order_id)
        if not detail.filled:
            return None
        return OpenResult(
            success=True,
            order_id=detail.order_id,
            entry_price=detail.avg_price,
            qty=detail.executed_qty,
            side=detail.side or side,
            timestamp=detail.update_time,
        )

    async def _place_stop(self, broker: Broker, token: Token, order: Order, rung: Target) -> bool:
        stop_price = rung_stop(rung, order.entry_price, order.side)
        qty = truncate_qty(order.qty, token.min_qty)
        for attempt in range(self.stop_place_retries):
            result = await broker.place_stop(token.symbol, order.side.opposite, stop_price, qty)
            if result.success:
                order.stop_order_id = result.stop_order_id
                await self.store.update_stop_order_id(order.order_id, result.stop_order_id)
                return True
            logger.warning(
                "Stop for order %s failed (attempt %s/%s): %s",
                order.order_id,
                attempt + 1,
                self.stop_place_retries,
                result.error,
            )
            if attempt + 1 < self.stop_place_retries:
                await asyncio.sleep(self.stop_place_delay)
        metrics.record_stop_failure()
        return False

    async def _cancel_stop(self, broker: Broker, token: Token, order: Order) -> bool:
        if not order.stop_order_id:
            return True
        for attempt in range(self.stop_cancel_retries):
            if await broker.cancel_stops(token.symbol, [order.stop_order_id]):
                self.index.retire_stop(order.stop_order_id, order.order_id)
                order.stop_order_id = None
                await self.store.update_stop_order_id(order.order_id, None)
                self.index.update(order.token_id, order.order_id, stop_order_id=None)
                return True
            if attempt + 1 < self.stop_cancel_retries:
                await asyncio.sleep(self.stop_cancel_delay)
        return False

    async def _stop_fill_price(self, broker: Broker, token: Token, stop_order_id: Optional[str]) -> Optional[float]:
        """Average price of ``stop_order_id`` when the exchange reports it filled."""
        if not stop_order_id:
            return None
        detail = await broker.verify_order(token.symbol, stop_order_id)
        return detail.avg_price if detail.filled else None

    async def _finalize_stop_fill(
        self,
        order: Order,
        token: Token,
        stop_order_id: str,
        avg_price: float,
        source: str,
    ) -> None:
        self.seen_stops.add(stop_order_id)
        logger.warning("Stop %s of order %s filled @ %s before it was replaced", stop_order_id, order.order_id, avg_price)
        await self._finalize(order, token, avg_price, CloseReason.STOPLOSS)
        metrics.record_stop_event(source, "closed")

    async def on_target_hit(self, entry: IndexEntry, price: float) -> None:
        """Advance the ladder for an order whose trigger price was crossed."""
        with self.in_flight.hold(entry.order_id) as acquired:
            if not acquired:
                return
            current = self.index.get(entry.token_id, entry.order_id)
            if current is None or not is_crossed(price, current.trigger_price, current.side):
                return
            try:
                await self._advance(current)
            except Exception:
                logger.exception("Ladder advance failed for order %s", entry.order_id)
                self.notifier.anomaly(f"Ladder advance failed for order {entry.order_id}; left ACTIVE")
                metrics.record_anomaly("advance_error")

    async def _advance(self, entry: IndexEntry) -> None:
        order = await self.store.get_order(entry.order_id)
        if order is None or not order.is_active:
            logger.warning("Index entry %s has no ACTIVE order; dropping", entry.order_id)
            self.index.remove(entry.token_id, entry.order_id)
            await self._teardown_watch(entry.token_id)
            return
        token = await self.store.get_token(order.token_id)
        broker = self.pool.get(order.user_id)
        current = await self.store.get_target(order.current_target_id) if order.current_target_id else None
        if token is None or broker is None or current is None:
            self.notifier.anomaly(
                f"Order {order.order_id}: cannot resolve token, broker or current target; left ACTIVE"
            )
            metrics.record_anomaly("unresolvable_rung")
            return

        nxt = await self.store.next_target_above(token.id, order.strategy_id, current.target_percent)
        if nxt is None:
            logger.info("Order %s reached its final target; closing", order.order_id)
            await self._close(order, token, broker, CloseReason.TAKE_PROFIT, allow_trigger=True)
            return

        old_stop = order.stop_order_id
        if not await self._cancel_stop(broker, token, order):
            self.notifier.anomaly(f"Can't cancel stop for order {order.order_id}; ladder not advanced")
            metrics.record_anomaly("stop_cancel")
            return
        # a stop that triggered while being cancelled is reported gone, not cancelled
        filled_at = await self._stop_fill_price(broker, token, old_stop)
        if filled_at is not None:
            await self._finalize_stop_fill(order, token, old_stop, filled_at, "cancel")
            return

        if not await self._place_stop(broker, token, order, nxt):
            self.notifier.anomaly(f"Can't place stop for order {order.order_id} after advance; force closing")
            await self._close(order, token, broker, CloseReason.UNPROTECTED, allow_trigger=False)
            return

        await self.store.update_current_target(order.order_id, nxt.id)
        order.current_target_id = nxt.id
        trigger = rung_trigger(nxt, order.entry_price, order.side)
        self.index.update(
            token.id,
            order.order_id,
            target_id=nxt.id,
            trigger_price=trigger,
            stop_order_id=order.stop_order_id,
        )
        metrics.record_ladder_advance()
        logger.info("Order %s advanced to target %s (next trigger %.4f)", order.order_id, nxt.id, trigger)
        user = await self.store.get_user(order.user_id)
        self.notifier.target_moved(
            user.telegram_chat_id if user else None,
            order.order_id,
            order.side.value,
            trigger,
            rung_stop(nxt, order.entry_price, order.side),
        )

    async def _close(
        self,
        order: Order,
        token: Token,
        broker: Broker,
        reason: CloseReason,
        allow_trigger: bool,
        mark_price: Optional[float] = None,
    ) -> bool:
        """Close ``order``; the caller holds the order's in-flight claim."""
        if mark_price is None:
            old_stop = order.stop_order_id
            if not await self._cancel_stop(broker, token, order):
                self.notifier.anomaly(f"Can't cancel stop {order.stop_order_id} while closing {order.order_id}")
                metrics.record_anomaly("stop_cancel")
            filled_at = await self._stop_fill_price(broker, token, old_stop)
            if filled_at is not None:
                await self._finalize_stop_fill(order, token, old_stop, filled_at, "cancel")
                return True
            result = await broker.close_position(
                token.symbol,
                order.side.opposite,
                truncate_qty(order.qty, token.min_qty),
            )
            if not result.success:
                self.notifier.anomaly(f"Can't close order {order.order_id} on {token.symbol}: {result.error}")
                metrics.record_anomaly("close_failed")
                return False
            mark_price = result.mark_price

        await self._finalize(order, token, mark_price, reason)
        if allow_trigger:
            await self._chain(order, token)
        return True

    async def _finalize(self, order: Order, token: Token, mark_price: float, reason: CloseReason) -> None:
        net_profit = self.sizer.net_profit(order.side, order.entry_price, mark_price, order.qty, order.fee)
        fee = order.fee + self.sizer.fee(order.qty, mark_price)
        status = OrderStatus.EXPIRED if reason is CloseReason.EXPIRED else OrderStatus.FINISHED

        await self.store.finish_order(order.order_id, status, mark_price, net_profit, fee)
        await self.store.adjust_trade_balance(order.user_id, net_profit)
        order.status = status
        order.mark_price = mark_price
        order.net_profit = net_profit
        order.fee = fee
        order.stop_order_id = None

        self.index.remove(token.id, order.order_id)
        metrics.set_active_orders(len(self.index))
        metrics.record_order_closed(reason.value, net_profit)
        await self._teardown_watch(token.id)

        logger.info(
            "Order %s closed (%s) @ %s net=%.4f",
            order.order_id,
            reason.value,
            mark_price,
            net_profit,
        )
        user = await self.store.get_user(order.user_id)
        chat_id = user.telegram_chat_id if user else None
        if reason is CloseReason.STOPLOSS:
            self.notifier.stop_hit(
                chat_id, order.order_id, order.side.value, order.entry_price, mark_price, net_profit
            )
        else:
            self.notifier.order_closed(
                chat_id, order.order_id, order.side.value, reason.value, mark_price, net_profit
            )

    async def _teardown_watch(self, token_id: int) -> None:
        if self.scheduler is not None and not self.index.has_token(token_id):
            await self.scheduler.remove(token_id)

    async def _chain(self, order: Order, token: Token) -> None:
        strategy = await self.store.get_strategy(order.strategy_id)
        if strategy is None or not strategy.is_root:
            return
        candles = await self.pool.dummy.daily_candles(token.symbol, self.trigger_lookback_days)
        if candles is None:
            logger.warning("No daily candles for %s; trigger strategy skipped", token.symbol)
            return
        trend = candle_trend(candles)
        child = select_trigger_strategy(await self.store.child_strategies(strategy.id), trend)
        if child is None:
            return
        side = apply_direction(order.side, child.direction)
        user_id = order.user_id if self.chain_per_user else None
        logger.info(
            "Chaining strategy %s (%s, %s) after order %s",
            child.id,
            trend.value,
            side.value,
            order.order_id,
        )
        task = asyncio.create_task(self._delayed_open(token, child, side, user_id))
        self._chains.add(task)
        task.add_done_callback(self._chains.discard)

    async def _delayed_open(self, token: Token, strategy: Strategy, side: Side, user_id: Optional[int]) -> None:
        await asyncio.sleep(self.trigger_delay)
        try:
            await self.open_for_strategy(token, strategy, side, user_id=user_id)
        except Exception:
            logger.exception("Chained open of strategy %s failed", strategy.id)
            self.notifier.anomaly(f"Chained open of strategy {strategy.id} on {token.symbol} failed")

    async def drain(self) -> None:
        """Wait for pending chained opens."""
        while self._chains:
            await asyncio.gather(*list(self._chains), return_exceptions=True)

    async def cancel_pending(self) -> None:
        tasks = list(self._chains)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    async def on_stop_executed(self, stop_order_id: str, avg_price: float, source: str = "stream") -> None:
        """Finalize the order owning an executed stop; repeated deliveries of one stop id are no-ops."""
        if stop_order_id in self.seen_stops:
            metrics.record_stop_event(source, "duplicate")
            return
        with self.in_flight.hold(("stop", stop_order_id)) as acquired:
            if not acquired or stop_order_id in self.seen_stops:
                metrics.record_stop_event(source, "duplicate")
                return

            owner = self.index.order_for_stop(stop_order_id)
            if owner is not None:
                order = await self.store.get_order(owner)
            else:
                order = await self.store.find_order_by_stop_id(stop_order_id)
            self.seen_stops.add(stop_order_id)
            if order is None or not order.is_active:
                metrics.record_stop_event(source, "unknown")
                logger.debug("Executed stop %s matches no ACTIVE order", stop_order_id)
                return

            order_id = order.order_id
            if not await self._claim(order_id):
                self.seen_stops.discard(stop_order_id)
                self.notifier.anomaly(f"Order {order_id} busy while its stop {stop_order_id} executed")
                metrics.record_anomaly("stop_deferred")
                return
            try:
                order = await self.store.get_order(order_id)
                if order is None or not order.is_active:
                    metrics.record_stop_event(source, "already_closed")
                    return
                token = await self.store.get_token(order.token_id)
                if token is None:
                    self.notifier.anomaly(f"Order {order.order_id} references unknown token {order.token_id}")
                    return
                if order.stop_order_id and order.stop_order_id != stop_order_id:
                    # a replaced stop filled; the position is gone, so its successor must go too
                    broker = self.pool.get(order.user_id)
                    if broker is None or not await self._cancel_stop(broker, token, order):
                        self.notifier.anomaly(
                            f"Can't cancel stop {order.stop_order_id} of order {order.order_id} "
                            f"after replaced stop {stop_order_id} filled"
                        )
                        metrics.record_anomaly("stop_cancel")
                await self._finalize(order, token, avg_price, CloseReason.STOPLOSS)
                metrics.record_stop_event(source, "closed")
            finally:
                self.in_flight.release(order_id)

    async def _claim(self, order_id: str) -> bool:
        """Wait for the order's in-flight claim, bounded by the configured wait."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.in_flight_wait
        while not self.in_flight.acquire(order_id):
            if loop.time() >= deadline:
                return False
            await asyncio.sleep(IN_FLIGHT_POLL_S)
        return True

    async def on_manual_close(self, symbol: str, avg_price: float, user_id: Optional[int] = None) -> int:
        """Finalize ACTIVE orders of a token that was closed outside the engine."""
        token = await self.store.find_token_by_name(symbol)
        if token is None:
            logger.warning("Manual close for unknown symbol %s", symbol)
            return 0
        closed = 0
        for order in await self.store.find_active_orders(token_id=token.id, user_id=user_id):
            if not await self._claim(order.order_id):
                self.notifier.anomaly(f"Order {order.order_id} busy during manual close of {symbol}")
                continue
            try:
                broker = self.pool.get(order.user_id)
                if broker is not None and not await self._cancel_stop(broker, token, order):
                    self.notifier.anomaly(f"Can't cancel stop for manually closed order {order.order_id}")
                await self._finalize(order, token, avg_price, CloseReason.MANUAL)
                closed += 1
            finally:
                self.in_flight.release(order.order_id)
        return closed

    async def close_all_for_token(
        self,
        token: Token,
        strategy_ids: Optional[Iterable[int]] = None,
        reason: CloseReason = CloseReason.EXPIRED,
    ) -> int:
        """Close every ACTIVE order of the token (optionally per strategy family) without chaining."""
        closed = 0
        orders = await self.store.find_active_orders(
            token_id=token.id,
            strategy_ids=list(strategy_ids) if strategy_ids is not None else None,
        )
        for order in orders:
            if not await self._claim(order.order_id):
                self.notifier.anomaly(f"Order {order.order_id} busy; not closed before new candle")
                continue
            try:
                broker = self.pool.get(order.user_id)
                if broker is None:
                    self.notifier.anomaly(f"No broker for user {order.user_id}; order {order.order_id} left open")
                    continue
                if await self._close(order, token, broker, reason, allow_trigger=False):
                    closed += 1
            finally:
                self.in_flight.release(order.order_id)
        return closed

    async def reload(self) -> int:
        """Rebuild the index from persisted ACTIVE orders and start their price watches."""
        self.index.clear()
        tokens = {}
        for order in await self.store.find_active_orders():
            token = tokens.get(order.token_id) or await self.store.get_token(order.token_id)
            target = await self.store.get_target(order.current_target_id) if order.current_target_id else None
            if token is None or target is None:
                self.notifier.anomaly(
                    f"Order {order.order_id} has no resolvable target; left ACTIVE for manual review"
                )
                metrics.record_anomaly("reload_unresolved")
                continue
            tokens[token.id] = token
            if not order.stop_order_id:
                self.notifier.anomaly(f"Order {order.order_id} reloaded without a stop order")
            self._track(order, token, target)

        metrics.set_active_orders(len(self.index))
        logger.info("Reloaded %s ACTIVE orders across %s tokens", len(self.index), len(self.index.tokens()))
        return len(self.index)
