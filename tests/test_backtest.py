import asyncio
import json
import math
import sys
from datetime import datetime, timedelta, timezone

sys.path.insert(0, '.')

import pytest

from backtest.candles import (
    CandleSource,
    aggregate_candles,
    bucket_key,
    candles_from_payload,
    is_bucket_open,
    source_interval_minutes,
)
from backtest.engine import (
    BacktestError,
    BacktestRequest,
    BacktestSimulator,
    equity_curve,
    random_id_generator,
    request_seed,
    run_backtest,
    summarize,
    to_display_resolution,
)
from strategy.models import Candle, Direction, Strategy, Target, Token, TriggerRule
from tests.fakes import seed_ladder_store

TOKEN = Token(id=1, name="BTC", min_qty=0.001, leverage=3)
START = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _at(minutes):
    return (START + timedelta(minutes=minutes)).strftime("%Y-%m-%dT%H:%M:%S.000Z")


def _hour(day, hour, o, h, l, c):
    return Candle(f"2024-01-{day:02d}T{hour:02d}:00:00.000Z", o, h, l, c, 1.0)


def _ladder(strategy_id, *rungs):
    return [
        Target(id=strategy_id * 10 + i, token_id=1, strategy_id=strategy_id, target_percent=t, stoploss_percent=s)
        for i, (t, s) in enumerate(rungs)
    ]


def _counter():
    ids = iter(range(1, 10000))
    return lambda: next(ids)


def _scenario_candles():
    candles = [_hour(1, h, 100, 100.6, 99.9, 100.5) for h in range(24)]
    candles += [
        _hour(2, 0, 100, 100.5, 99.5, 100.2),
        _hour(2, 1, 100.2, 106, 100, 105.5),
        _hour(2, 2, 105.5, 111, 105, 105),
        _hour(2, 3, 105, 105.2, 104.9, 105),
        _hour(2, 4, 105, 105.2, 104.9, 105),
    ]
    return candles


def _simulator(strategy, ladder, children=None, child_ladders=None, id_generator=None, budget=1000):
    return BacktestSimulator(
        TOKEN,
        strategy,
        ladder,
        children=children,
        child_ladders=child_ladders,
        budget=budget,
        fee_rate=0.0002,
        commission_rate=0.15,
        timeframe="1d",
        warmup=0,
        id_generator=id_generator or _counter(),
    )


def test_bucket_keys_and_boundaries():
    assert bucket_key("2024-01-01T05:30:00.000Z", "1h") == "2024-01-01T05:00:00.000Z"
    assert bucket_key("2024-01-01T05:30:00.000Z", "4h") == "2024-01-01T04:00:00.000Z"
    assert bucket_key("2024-01-01T05:30:00.000Z", "1d") == "2024-01-01T00:00:00.000Z"
    assert is_bucket_open("2024-01-02T00:00:00.000Z", "1d")
    assert not is_bucket_open("2024-01-02T00:05:00.000Z", "1d")
    assert is_bucket_open("2024-01-02T08:00:00.000Z", "4h")
    with pytest.raises(ValueError):
        bucket_key("2024-01-01T05:30:00.000Z", "15m")


def test_aggregate_candles_rolls_up_unsorted_input():
    candles = [
        Candle(_at(10), 101, 104, 100, 103, 2),
        Candle(_at(0), 100, 102, 99, 101, 1),
        Candle(_at(65), 103, 103, 98, 99, 4),
        Candle(_at(5), 101, 105, 100, 101, 3),
    ]
    hourly = aggregate_candles(candles, "1h")
    assert [c.date for c in hourly] == ["2024-01-01T00:00:00.000Z", "2024-01-01T01:00:00.000Z"]
    first = hourly[0]
    assert (first.open, first.high, first.low, first.close, first.volume) == (100, 105, 99, 103, 6)
    assert hourly[1].close == 99


def test_candles_from_payload_sorts_by_date():
    payload = {
        "b": {"Date": _at(5), "Open": "2", "High": "3", "Low": "1", "Close": "2.5", "Volume": "10"},
        "a": {"Date": _at(0), "Open": "1", "High": "2", "Low": "0.5", "Close": "2", "Volume": None},
    }
    candles = candles_from_payload(payload)
    assert [c.open for c in candles] == [1.0, 2.0]
    assert candles[0].volume == 0.0


def test_ladder_advance_then_final_target_close():
    strategy = Strategy(id=1, description="root", contribution=100)
    result = _simulator(strategy, _ladder(1, (5, -2), (10, 3))).run(_scenario_candles())

    assert len(result.trades) == 1
    trade = result.trades[0]
    assert trade["side"] == "BUY"
    assert trade["entry_time"] == "2024-01-02T00:00:00.000Z"
    assert trade["entry_price"] == 100
    assert trade["qty"] == 30.0
    assert trade["reason"] == "take_profit"
    assert trade["mark_price"] == pytest.approx(110)
    assert trade["rung"] == 1
    assert trade["fee"] == pytest.approx(0.0002 * 30 * 100 + 0.0002 * 30 * 110)
    assert trade["net_profit"] == pytest.approx((300 - trade["fee"]) * 0.85)
    assert result.final_wallet == pytest.approx(1000 + trade["net_profit"])
    assert result.chart["2024-01-02T00:00:00.000Z"]["opened_side"] == "BUY"
    assert result.chart["2024-01-02T02:00:00.000Z"]["closed_orders"][0]["id"] == trade["id"]


def test_stoploss_is_checked_before_target():
    strategy = Strategy(id=1, description="root", contribution=100)
    candles = _scenario_candles()[:26] + [_hour(2, 2, 105.5, 111, 102.9, 103)]
    result = _simulator(strategy, _ladder(1, (5, -2), (10, 3))).run(candles)

    assert [t["reason"] for t in result.trades] == ["stoploss"]
    assert result.trades[0]["mark_price"] == pytest.approx(103)
    # commission only applies to gains
    gross = result.trades[0]["profit"] - result.trades[0]["fee"]
    assert result.trades[0]["net_profit"] == pytest.approx(gross * 0.85)


def test_final_target_chains_trigger_order_once():
    strategy = Strategy(id=1, description="root", contribution=100)
    children = [
        Strategy(id=2, description="default", contribution=100, parent_id=1, direction=Direction.OPPOSITE),
        Strategy(id=3, description="five", contribution=100, parent_id=1, trigger_rule=TriggerRule.FIVE_SAME_COLOR),
    ]
    child_ladders = {2: _ladder(2, (2, -1)), 3: _ladder(3, (4, -2))}
    result = _simulator(strategy, _ladder(1, (5, -2), (10, 3)), children, child_ladders).run(_scenario_candles())

    assert [(t["strategy_id"], t["side"], t["is_trigger"], t["reason"]) for t in result.trades] == [
        (1, "BUY", False, "take_profit"),
        (2, "SELL", True, "take_profit"),
    ]
    chained = result.trades[1]
    assert chained["entry_price"] == pytest.approx(110)
    assert chained["mark_price"] == pytest.approx(107.8)
    assert chained["trend"] == "MIXED"


def test_close_before_new_candle_replaces_position_at_open():
    strategy = Strategy(id=1, description="root", contribution=100, close_before_new_candle=True)
    candles = [_hour(1, h, 100, 100.6, 99.9, 100.5) for h in range(24)]
    candles += [_hour(2, h, 100, 100.6, 99.9, 99.8) for h in range(24)]
    candles += [_hour(3, 0, 99, 99.5, 98.8, 99.2)]
    result = _simulator(strategy, _ladder(1, (50, -50), (60, -40))).run(candles)

    assert len(result.trades) == 1
    assert result.trades[0]["reason"] == "expired"
    assert result.trades[0]["mark_price"] == 99
    day3 = result.chart["2024-01-03T00:00:00.000Z"]
    # day 2 closed red, so the replacement follows it short
    assert day3["opened_side"] == "SELL"
    assert day3["closed_orders"][0]["side"] == "BUY"


def _wave(days):
    candles = []
    for i in range(days * 24):
        base = 100 + 6 * math.sin(i / 7) + 0.03 * i
        candles.append(Candle(_at(i * 60), base, base + 1.5, base - 1.5, base + math.cos(i / 3), 1.0))
    return candles


def test_backtest_is_deterministic():
    strategy = Strategy(id=1, description="root", contribution=100, close_before_new_candle=True)
    children = [Strategy(id=2, description="default", contribution=100, parent_id=1)]
    ladders = {2: _ladder(2, (1, -1), (2, 0.5))}
    ladder = _ladder(1, (1, -1), (2, 0.5), (3, 1.5))
    candles = _wave(20)

    first = _simulator(strategy, ladder, children, ladders, random_id_generator(7)).run(candles)
    second = _simulator(strategy, ladder, children, ladders, random_id_generator(7)).run(list(reversed(candles)))
    other_ids = _simulator(strategy, ladder, children, ladders, random_id_generator(99)).run(candles)

    assert first.trades
    assert json.dumps(first.chart, sort_keys=True) == json.dumps(second.chart, sort_keys=True)
    assert first.trades == second.trades

    def _without_ids(trades):
        return [{k: v for k, v in t.items() if k != "id"} for t in trades]

    assert _without_ids(first.trades) == _without_ids(other_ids.trades)


def test_display_resolution_keeps_complete_hours_only():
    chart = {}
    for minute in range(0, 12 * 5, 5):
        chart[_at(600 + minute)] = {"candle": Candle(_at(600 + minute), 100 + minute, 101 + minute, 99, 100.5 + minute, 1).to_dict()}
    for minute in range(0, 11 * 5, 5):
        chart[_at(660 + minute)] = {"candle": Candle(_at(660 + minute), 100, 101, 99, 100, 1).to_dict()}
    chart[_at(610)]["opened_side"] = "BUY"
    chart[_at(640)]["closed_orders"] = [{"id": 1}]

    display = to_display_resolution(chart, "1h", 5)

    assert list(display) == ["2024-01-01T10:00:00.000Z"]
    hour = display["2024-01-01T10:00:00.000Z"]
    assert hour["candle"]["open"] == 100
    assert hour["candle"]["high"] == 101 + 55
    assert hour["candle"]["close"] == 100.5 + 55
    assert hour["candle"]["volume"] == 12
    assert hour["opened_side"] == "BUY"
    assert hour["closed_orders"] == [{"id": 1}]


def test_summary_metrics():
    trades = [
        {"net_profit": 100.0, "fee": 1.0, "exit_time": "t1"},
        {"net_profit": -50.0, "fee": 1.0, "exit_time": "t2"},
        {"net_profit": 25.0, "fee": 1.0, "exit_time": "t3"},
    ]
    summary = summarize(trades, 1000)

    assert summary["total_trades"] == 3
    assert summary["winning_trades"] == 2
    assert summary["losing_trades"] == 1
    assert summary["profit_factor"] == pytest.approx(2.5)
    assert summary["final_equity"] == pytest.approx(1075)
    assert summary["total_return"] == pytest.approx(0.075)
    assert summary["max_drawdown"] == pytest.approx(50 / 1100)
    assert summary["best_trade"] == 100.0
    assert summary["total_fees"] == 3.0
    assert [p["equity"] for p in equity_curve(trades, 1000)] == [1000, 1100, 1050, 1075]
    assert summarize([], 1000)["total_trades"] == 0


def test_run_backtest_end_to_end():
    store = seed_ladder_store(rungs=((1, -1), (2, 0.5)))
    source = CandleSource(url="https://example.invalid", cache_ttl_s=3600)
    candles = [
        Candle(_at(i * 5), 100 + math.sin(i / 20), 100.4 + math.sin(i / 20), 99.6 + math.sin(i / 20), 100 + math.sin((i + 1) / 20), 1.0)
        for i in range(3 * 288)
    ]
    source.put("BTC", 2024, candles)

    async def _run():
        result = await run_backtest(BacktestRequest("BTC", 2024, 1, 1000), store, source, id_generator=_counter())
        try:
            await run_backtest(BacktestRequest("DOGE", 2024, 1, 1000), store, source)
        except BacktestError:
            return result, True
        return result, False

    result, rejected = asyncio.run(_run())
    assert rejected
    assert set(result) == {"chart", "trades", "equity_curve", "summary"}
    assert result["chart"]
    assert all(key.endswith(":00:00.000Z") for key in result["chart"])
    assert result["summary"]["total_trades"] == len(result["trades"])


def _daily(days):
    candles = []
    for i in range(days):
        base = 100 + 6 * math.sin(i / 5) + 0.02 * i
        candles.append(Candle(_at(i * 1440), base, base + 3, base - 3, base + math.cos(i / 2), 1.0))
    return candles


def test_source_interval_is_smallest_candle_spacing():
    assert source_interval_minutes(_daily(4)) == 1440
    assert source_interval_minutes(list(reversed(_wave(1)))) == 60
    assert source_interval_minutes(_daily(1)) is None


def test_display_resolution_passes_coarser_source_through():
    chart = {c.date: {"candle": c.to_dict()} for c in _daily(3)}
    assert to_display_resolution(chart, "1h", 1440) == chart


def test_run_backtest_on_daily_candles():
    store = seed_ladder_store(rungs=((1, -1), (2, 0.5)))
    source = CandleSource(url="https://example.invalid", cache_ttl_s=3600)
    source.put("BTC", 2024, _daily(366))

    result = asyncio.run(run_backtest(BacktestRequest("BTC", 2024, 1, 1000), store, source))

    assert result["trades"]
    assert len(result["chart"]) > 360
    assert all(key.endswith("T00:00:00.000Z") for key in result["chart"])
    assert result["summary"]["total_trades"] == len(result["trades"])


def test_repeated_request_reproduces_trade_ids():
    store = seed_ladder_store(rungs=((1, -1), (2, 0.5)))
    source = CandleSource(url="https://example.invalid", cache_ttl_s=3600)
    source.put("BTC", 2024, _daily(60))
    request = BacktestRequest("BTC", 2024, 1, 1000)

    async def _run():
        return await run_backtest(request, store, source), await run_backtest(request, store, source)

    first, second = asyncio.run(_run())
    assert first["trades"]
    assert first["trades"] == second["trades"]
    assert request_seed(request) == request_seed(BacktestRequest("BTC", 2024, 1, 1000.0))
    assert request_seed(request) != request_seed(BacktestRequest("BTC", 2024, 1, 2000))
