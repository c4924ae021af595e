import sys

sys.path.insert(0, '.')

import pytest

from risk.position_sizer import (
    PositionSizer,
    SizingError,
    precision_digits,
    realized_profit,
    trigger_price,
    truncate_qty,
    truncate_stop_price,
)
from strategy.models import Side, Strategy, Token, User


def test_budget_scenario_opens_with_leveraged_truncated_qty():
    sizer = PositionSizer(taker_fee=0.0005)
    user = User(id=1, trade_balance=15000)
    strategy = Strategy(id=1, description="root", contribution=10)
    token = Token(id=1, name="BTC", min_qty=0.001, leverage=3)

    allocation = sizer.allocate(user, strategy, token, 45000, strategy_count=1)

    assert allocation.budget == pytest.approx(1500)
    assert allocation.qty == 0.099


def test_budget_split_across_concurrent_strategies():
    sizer = PositionSizer(taker_fee=0.0005)
    user = User(id=1, trade_balance=15000)
    strategy = Strategy(id=1, description="root", contribution=10)
    token = Token(id=1, name="BTC", min_qty=0.001, leverage=3)

    allocation = sizer.allocate(user, strategy, token, 45000, strategy_count=2)

    assert allocation.budget == pytest.approx(750)
    # 750 / 45000 = 0.01666.. -> 0.016 -> x3
    assert allocation.qty == 0.048


def test_quantity_below_minimum_is_rejected():
    sizer = PositionSizer(taker_fee=0.0005)
    user = User(id=1, trade_balance=100)
    strategy = Strategy(id=1, description="root", contribution=10)
    token = Token(id=1, name="BTC", min_qty=0.001, leverage=3)

    with pytest.raises(SizingError):
        sizer.allocate(user, strategy, token, 45000, strategy_count=1)


def test_invalid_price_and_strategy_count_are_rejected():
    sizer = PositionSizer(taker_fee=0.0005)
    user = User(id=1, trade_balance=15000)
    strategy = Strategy(id=1, description="root", contribution=10)
    token = Token(id=1, name="BTC", min_qty=0.001, leverage=3)

    with pytest.raises(SizingError):
        sizer.allocate(user, strategy, token, 0, strategy_count=1)
    with pytest.raises(SizingError):
        sizer.allocate(user, strategy, token, 45000, strategy_count=0)


def test_truncation_never_rounds_up():
    assert precision_digits(0.001) == 3
    assert precision_digits(1) == 0
    assert precision_digits("0.10") == 1
    assert truncate_qty(0.0339, 0.001) == 0.033
    assert truncate_qty(12.99, 1) == 12.0
    assert truncate_qty(0.00099, 0.001) == 0.0
    assert truncate_stop_price(103.4599) == 103.45


def test_stepped_qty_reduces_from_original():
    assert PositionSizer.stepped_qty(1.0, 0, 0.1, 0.001) == 1.0
    assert PositionSizer.stepped_qty(1.0, 1, 0.1, 0.001) == 0.9
    assert PositionSizer.stepped_qty(0.099, 1, 0.1, 0.001) == 0.089


def test_trigger_price_and_profit_follow_side():
    assert trigger_price(5, 100, Side.BUY) == pytest.approx(105)
    assert trigger_price(5, 100, Side.SELL) == pytest.approx(95)
    assert trigger_price(-2, 100, Side.BUY) == pytest.approx(98)
    assert realized_profit(Side.BUY, 100, 110, 2) == pytest.approx(20)
    assert realized_profit(Side.SELL, 100, 110, 2) == pytest.approx(-20)


def test_net_profit_deducts_open_and_close_fees():
    sizer = PositionSizer(taker_fee=0.001)
    open_fee = sizer.fee(2, 100)
    net = sizer.net_profit(Side.BUY, 100, 110, 2, open_fee)
    assert open_fee == pytest.approx(0.2)
    assert net == pytest.approx(20 - 0.2 - 0.22)
