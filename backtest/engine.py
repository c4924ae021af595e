import hashlib
import logging
import math
import random
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable, Dict, List, Optional

import numpy as np
import pandas as pd

from api.metrics import metrics
from config import config
from risk.position_sizer import realized_profit, truncate_qty
from strategy.ladder import rung_stop, rung_trigger, sort_ladder
from strategy.models import Candle, CandleTrend, CloseReason, Side, Strategy, Target, Token
from strategy.triggers import TREND_WINDOW, apply_direction, candle_trend, select_trigger_strategy, side_from_candle
from .candles import (
    CandleSource,
    aggregate_candles,
    bucket_key,
    is_bucket_open,
    parse_date,
    sort_candles,
    source_interval_minutes,
)

if TYPE_CHECKING:
    from orchestration.persistence import OrderStore


logger = logging.getLogger(__name__)

RESOLUTION_MINUTES = {"1h": 60, "4h": 240, "1d": 1440}


class BacktestError(Exception):
    """Request cannot be replayed (unknown token or strategy, no candles)."""


@dataclass
class BacktestRequest:
    token: str
    year: int
    strategy_id: int
    budget: float


@dataclass
class SimOrder:
    id: int
    strategy_id: int
    side: Side
    entry_time: str
    entry_price: float
    qty: float
    fee: float
    ladder: List[Target]
    is_trigger: bool
    trend: CandleTrend
    rung: int = 0

    @property
    def stop_price(self) -> float:
        return rung_stop(self.ladder[self.rung], self.entry_price, self.side)

    @property
    def target_price(self) -> float:
        return rung_trigger(self.ladder[self.rung], self.entry_price, self.side)

    @property
    def is_last_rung(self) -> bool:
        return self.rung + 1 >= len(self.ladder)


@dataclass
class BacktestResult:
    chart: Dict[str, dict] = field(default_factory=dict)
    trades: List[dict] = field(default_factory=list)
    final_wallet: float = 0.0


def random_id_generator(seed: Optional[int] = None) -> Callable[[], int]:
    rng = random.Random(seed)
    return lambda: rng.randint(100000000, 999999999)


def request_seed(request: "BacktestRequest") -> int:
    """Stable seed for synthetic order ids, so repeating a request repeats its ids."""
    key = f"{request.token}|{int(request.year)}|{int(request.strategy_id)}|{float(request.budget)}"
    return int(hashlib.sha256(key.encode("utf-8")).hexdigest()[:16], 16)


class BacktestSimulator:
    """
    Deterministic replay of one root strategy and its trigger children over source candles.

    Synthetic orders follow the live ladder: an order at rung k has its stop at
    rung k's stoploss and its trigger at rung k's target. Each source candle is
    checked for stoploss breaches first, then target hits. On the first candle
    of an evaluation bucket a new order is opened when nothing is open, or, for
    strategies that close before a new candle, every open order is closed at
    the candle open and a fresh one replaces it before the same candle is
    checked again.
    """

    def __init__(
        self,
        token: Token,
        strategy: Strategy,
        ladder: List[Target],
        children: Optional[List[Strategy]] = None,
        child_ladders: Optional[Dict[int, List[Target]]] = None,
        budget: float = 1000.0,
        fee_rate: Optional[float] = None,
        commission_rate: Optional[float] = None,
        timeframe: Optional[str] = None,
        warmup: Optional[int] = None,
        trend_window: int = TREND_WINDOW,
        id_generator: Optional[Callable[[], int]] = None,
    ):
        cfg = config.backtest
        self.token = token
        self.strategy = strategy
        self.ladder = sort_ladder(ladder)
        self.children = list(children or [])
        self.child_ladders = {sid: sort_ladder(rungs) for sid, rungs in (child_ladders or {}).items()}
        self.budget = float(budget)
        self.fee_rate = float(fee_rate if fee_rate is not None else config.exchange.get("maker_fee", 0.0002))
        self.commission_rate = float(
            commission_rate if commission_rate is not None else cfg.get("commission_rate", 0.15)
        )
        self.timeframe = timeframe or cfg.get("timeframe", "1d")
        self.warmup = int(warmup if warmup is not None else cfg.get("warmup_candles", 0))
        self.trend_window = trend_window
        self.id_generator = id_generator or random_id_generator()

        self.wallet = self.budget
        self.open_orders: Dict[int, SimOrder] = {}
        self.result = BacktestResult()
        self._buckets: List[Candle] = []
        self._bucket_pos: Dict[str, int] = {}

    def run(self, candles: List[Candle]) -> BacktestResult:
        source = sort_candles(candles)
        self._buckets = aggregate_candles(source, self.timeframe)
        self._bucket_pos = {bucket.date: i for i, bucket in enumerate(self._buckets)}
        self.wallet = self.budget
        self.open_orders = {}
        self.result = BacktestResult()

        for candle in source[self.warmup:]:
            self.result.chart[candle.date] = {"candle": candle.to_dict()}
            self._check_stoploss(candle)
            self._check_targets(candle)

            if not is_bucket_open(candle.date, self.timeframe):
                continue
            if self.open_orders:
                if not self.strategy.close_before_new_candle:
                    continue
                for order in list(self.open_orders.values()):
                    self._close(order, candle.open, candle, CloseReason.EXPIRED)
            self._open_bucket_order(candle)
            self._check_stoploss(candle)
            self._check_targets(candle)

        self.result.final_wallet = self.wallet
        logger.info(
            "Backtest %s strategy %s: %s trades, wallet %.2f -> %.2f",
            self.token.name,
            self.strategy.id,
            len(self.result.trades),
            self.budget,
            self.wallet,
        )
        return self.result

    def _previous_bucket(self, candle: Candle) -> Optional[Candle]:
        idx = self._bucket_pos.get(bucket_key(candle.date, self.timeframe))
        if not idx:
            return None
        return self._buckets[idx - 1]

    def _trend(self, candle: Candle) -> CandleTrend:
        idx = self._bucket_pos.get(bucket_key(candle.date, self.timeframe))
        if idx is None or idx < self.trend_window:
            return CandleTrend.MIXED
        return candle_trend(self._buckets[idx - self.trend_window:idx], self.trend_window)

    def _check_stoploss(self, candle: Candle) -> None:
        for order in list(self.open_orders.values()):
            stop = order.stop_price
            if order.side is Side.BUY:
                breached = candle.low <= stop
            else:
                breached = candle.high >= stop
            if breached:
                self._close(order, stop, candle, CloseReason.STOPLOSS)

    def _check_targets(self, candle: Candle) -> None:
        for order in list(self.open_orders.values()):
            if order.id not in self.open_orders:
                continue
            target = order.target_price
            if order.side is Side.BUY:
                hit = candle.high >= target
            else:
                hit = candle.low <= target
            if not hit:
                continue
            if not order.is_last_rung:
                order.rung += 1
                continue
            self._close(order, target, candle, CloseReason.TAKE_PROFIT)
            if not order.is_trigger:
                self._open_trigger_order(order, target, candle)

    def _open_bucket_order(self, candle: Candle) -> None:
        previous = self._previous_bucket(candle)
        if previous is None:
            return
        side = side_from_candle(previous, self.strategy.direction)
        self._open(candle, candle.open, side, self.strategy.id, self.ladder, is_trigger=False)

    def _open_trigger_order(self, parent: SimOrder, entry_price: float, candle: Candle) -> None:
        trend = self._trend(candle)
        child = select_trigger_strategy(self.children, trend)
        if child is None:
            return
        ladder = self.child_ladders.get(child.id) or []
        if not ladder:
            return
        side = apply_direction(parent.side, child.direction)
        self._open(candle, entry_price, side, child.id, ladder, is_trigger=True, trend=trend)

    def _open(
        self,
        candle: Candle,
        entry_price: float,
        side: Side,
        strategy_id: int,
        ladder: List[Target],
        is_trigger: bool,
        trend: Optional[CandleTrend] = None,
    ) -> Optional[SimOrder]:
        if entry_price <= 0 or self.wallet <= 0:
            return None
        qty = truncate_qty(self.wallet / entry_price * self.token.leverage, self.token.min_qty)
        if qty < self.token.min_qty:
            logger.debug("Wallet %.2f too small for %s at %s", self.wallet, self.token.name, entry_price)
            return None

        order_id = self.id_generator()
        while order_id in self.open_orders:
            order_id = self.id_generator()
        order = SimOrder(
            id=order_id,
            strategy_id=strategy_id,
            side=side,
            entry_time=candle.date,
            entry_price=entry_price,
            qty=qty,
            fee=self.fee_rate * qty * entry_price,
            ladder=ladder,
            is_trigger=is_trigger,
            trend=trend if trend is not None else self._trend(candle),
        )
        self.open_orders[order_id] = order
        self.result.chart[candle.date]["opened_side"] = side.value
        return order

    def _close(self, order: SimOrder, mark_price: float, candle: Candle, reason: CloseReason) -> None:
        if self.open_orders.pop(order.id, None) is None:
            return
        profit = realized_profit(order.side, order.entry_price, mark_price, order.qty)
        fee = order.fee + self.fee_rate * order.qty * mark_price
        gross = profit - fee
        # commission is only charged on gains
        net_profit = gross - max(gross, 0.0) * self.commission_rate
        self.wallet += net_profit

        trade = {
            "id": order.id,
            "strategy_id": order.strategy_id,
            "is_trigger": order.is_trigger,
            "side": order.side.value,
            "trend": order.trend.value,
            "entry_time": order.entry_time,
            "entry_price": order.entry_price,
            "qty": order.qty,
            "rung": order.rung,
            "exit_time": candle.date,
            "mark_price": mark_price,
            "reason": reason.value,
            "profit": profit,
            "fee": fee,
            "net_profit": net_profit,
            "wallet_after": self.wallet,
        }
        self.result.trades.append(trade)
        self.result.chart[candle.date].setdefault("closed_orders", []).append(trade)


def to_display_resolution(chart: Dict[str, dict], resolution: str = "1h", source_minutes: int = 5) -> Dict[str, dict]:
    """Re-aggregate a source-resolution chart, keeping only buckets with every source candle present."""
    if source_minutes >= RESOLUTION_MINUTES[resolution]:
        # source candles are already as coarse as the display
        return dict(chart)
    expected = RESOLUTION_MINUTES[resolution] // source_minutes
    groups: Dict[str, List[dict]] = {}
    for date in sorted(chart, key=parse_date):
        groups.setdefault(bucket_key(date, resolution), []).append(chart[date])

    display: Dict[str, dict] = {}
    for key, group in groups.items():
        if len(group) != expected:
            continue
        candles = [item["candle"] for item in group]
        entry = {
            "candle": {
                "date": key,
                "open": candles[0]["open"],
                "high": max(c["high"] for c in candles),
                "low": min(c["low"] for c in candles),
                "close": candles[-1]["close"],
                "volume": sum(c["volume"] for c in candles),
            }
        }
        opened = next((item["opened_side"] for item in group if item.get("opened_side")), None)
        if opened:
            entry["opened_side"] = opened
        closed = [trade for item in group for trade in item.get("closed_orders", [])]
        if closed:
            entry["closed_orders"] = closed
        display[key] = entry
    return display


def equity_curve(trades: List[dict], budget: float) -> List[dict]:
    curve = [{"time": None, "equity": float(budget)}]
    equity = float(budget)
    for trade in trades:
        equity += trade["net_profit"]
        curve.append({"time": trade["exit_time"], "equity": equity})
    return curve


def summarize(trades: List[dict], budget: float) -> Dict:
    if not trades:
        return {"total_trades": 0, "final_equity": float(budget), "total_return": 0.0}

    trades_df = pd.DataFrame(trades)
    net = trades_df["net_profit"]

    total_trades = len(trades_df)
    winning_trades = int((net > 0).sum())
    losing_trades = int((net < 0).sum())
    gross_profit = float(net[net > 0].sum())
    gross_loss = float(abs(net[net < 0].sum()))
    profit_factor = gross_profit / gross_loss if gross_loss > 0 else 0.0

    equity_series = pd.Series([float(budget)] + list(budget + net.cumsum()))
    returns = equity_series.pct_change().dropna()
    sharpe = 0.0
    if len(returns) > 1 and returns.std() > 0:
        sharpe = float((returns.mean() / returns.std()) * np.sqrt(len(returns)))

    running_max = equity_series.expanding().max()
    drawdown = (equity_series - running_max) / running_max
    final_equity = float(equity_series.iloc[-1])

    return {
        "total_trades": total_trades,
        "winning_trades": winning_trades,
        "losing_trades": losing_trades,
        "win_rate": winning_trades / total_trades,
        "profit_factor": profit_factor,
        "sharpe_ratio": sharpe,
        "max_drawdown": float(abs(drawdown.min())),
        "total_return": (final_equity - budget) / budget if budget else 0.0,
        "avg_trade": float(net.mean()),
        "best_trade": float(net.max()),
        "worst_trade": float(net.min()),
        "total_fees": float(trades_df["fee"].sum()),
        "final_equity": final_equity,
    }


async def run_backtest(
    request: BacktestRequest,
    store: "OrderStore",
    source: CandleSource,
    id_generator: Optional[Callable[[], int]] = None,
) -> Dict:
    token = await store.find_token_by_name(request.token)
    if token is None:
        raise BacktestError(f"unknown token {request.token}")
    strategy = await store.get_strategy(request.strategy_id)
    if strategy is None or not strategy.is_root:
        raise BacktestError(f"strategy {request.strategy_id} is not a root strategy")
    if request.budget <= 0:
        raise BacktestError("budget must be positive")

    candles = await source.get(token.name, request.year)
    if not candles:
        raise BacktestError(f"no candles for {token.name} {request.year}")

    cfg = config.backtest
    configured_minutes = int(cfg.get("source_minutes", 5))
    source_minutes = source_interval_minutes(candles) or configured_minutes
    timeframe = cfg.get("timeframe", "1d")
    if source_minutes > RESOLUTION_MINUTES[timeframe]:
        raise BacktestError(f"{source_minutes} minute candles are coarser than the {timeframe} timeframe")
    # warmup is configured in source candles; keep the same span of time for other intervals
    warmup = math.ceil(int(cfg.get("warmup_candles", 0)) * configured_minutes / source_minutes)
    if warmup >= len(candles):
        raise BacktestError(f"{len(candles)} candles do not cover the {warmup} candle warmup")

    children = await store.child_strategies(strategy.id)
    child_ladders = {child.id: await store.get_ladder(token.id, child.id) for child in children}
    simulator = BacktestSimulator(
        token=token,
        strategy=strategy,
        ladder=await store.get_ladder(token.id, strategy.id),
        children=children,
        child_ladders=child_ladders,
        budget=request.budget,
        timeframe=timeframe,
        warmup=warmup,
        id_generator=id_generator or random_id_generator(request_seed(request)),
    )
    result = simulator.run(candles)
    metrics.record_backtest()

    chart = to_display_resolution(result.chart, cfg.get("display_resolution", "1h"), source_minutes)
    return {
        "chart": chart,
        "trades": result.trades,
        "equity_curve": equity_curve(result.trades, request.budget),
        "summary": summarize(result.trades, request.budget),
    }
