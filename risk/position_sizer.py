import logging
from dataclasses import dataclass
from decimal import Decimal, ROUND_DOWN
from typing import Union

from config import config
from strategy.models import Side, Strategy, Token, User


logger = logging.getLogger(__name__)

Number = Union[int, float, str, Decimal]

STOP_PRICE_DECIMALS = 2


class SizingError(Exception):
    """Raised when a user cannot be allocated a tradable quantity."""


def precision_digits(min_qty: Number) -> int:
    """Number of decimal digits carried by the token's minimum quantity."""
    exponent = Decimal(str(min_qty)).normalize().as_tuple().exponent
    return max(0, -exponent)


def truncate(value: Number, digits: int) -> float:
    quantum = Decimal(1).scaleb(-digits)
    return float(Decimal(str(value)).quantize(quantum, rounding=ROUND_DOWN))


def truncate_qty(qty: Number, min_qty: Number) -> float:
    return truncate(qty, precision_digits(min_qty))


def truncate_stop_price(price: Number) -> float:
    return truncate(price, STOP_PRICE_DECIMALS)


def trigger_price(percent: float, entry_price: float, side: Side) -> float:
    """Price ``percent`` away from entry, in the profitable direction for ``side``."""
    difference = entry_price * (percent / 100)
    if side is Side.SELL:
        return entry_price - difference
    return entry_price + difference


def realized_profit(side: Side, entry_price: float, exit_price: float, qty: float) -> float:
    if side is Side.SELL:
        return (entry_price - exit_price) * qty
    return (exit_price - entry_price) * qty


@dataclass(frozen=True)
class Allocation:
    user_id: int
    budget: float
    qty: float


class PositionSizer:
    def __init__(self, taker_fee: float = None):
        if taker_fee is None:
            taker_fee = config.exchange.get("taker_fee", 0.0005)
        self.taker_fee = float(taker_fee)

    def allocate(
        self,
        user: User,
        strategy: Strategy,
        token: Token,
        price: float,
        strategy_count: int,
    ) -> Allocation:
        if price <= 0:
            raise SizingError(f"invalid price {price} for {token.symbol}")
        if strategy_count <= 0:
            raise SizingError(f"user {user.id} has no strategies on {token.symbol}")

        budget = user.trade_balance * (strategy.contribution / strategy_count) / 100
        base_qty = Decimal(str(truncate_qty(budget / price, token.min_qty)))
        qty = float(base_qty * Decimal(token.leverage))
        if qty < token.min_qty:
            raise SizingError(
                f"qty {qty} below min {token.min_qty} for user {user.id} on {token.symbol}"
            )
        return Allocation(user_id=user.id, budget=budget, qty=qty)

    @staticmethod
    def stepped_qty(qty: float, attempt: int, step: float, min_qty: float) -> float:
        """Quantity for a retry: reduced by ``step`` of the original per prior attempt."""
        factor = Decimal(1) - Decimal(str(step)) * attempt
        return truncate_qty(Decimal(str(qty)) * factor, min_qty)

    def fee(self, qty: float, price: float) -> float:
        return qty * price * self.taker_fee

    def net_profit(
        self,
        side: Side,
        entry_price: float,
        exit_price: float,
        qty: float,
        open_fee: float,
    ) -> float:
        profit = realized_profit(side, entry_price, exit_price, qty)
        return profit - (open_fee + self.fee(qty, exit_price))
