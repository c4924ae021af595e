from typing import Iterable, List, Optional

from risk.position_sizer import trigger_price
from .models import Side, Target


def sort_ladder(targets: Iterable[Target]) -> List[Target]:
    """Order rungs by ascending target percent, rejecting duplicated percents."""
    ladder = sorted(targets, key=lambda t: (t.target_percent, t.id))
    for lower, upper in zip(ladder, ladder[1:]):
        if upper.target_percent <= lower.target_percent:
            raise ValueError(
                f"ladder for strategy {upper.strategy_id} repeats target percent {upper.target_percent}"
            )
    return ladder


def is_monotonic(ladder: List[Target]) -> bool:
    return all(b.target_percent > a.target_percent for a, b in zip(ladder, ladder[1:]))


def next_rung(ladder: List[Target], current: Target) -> Optional[Target]:
    for rung in ladder:
        if rung.target_percent > current.target_percent:
            return rung
    return None


def rung_trigger(rung: Target, entry_price: float, side: Side) -> float:
    """Price at which the rung's take-profit is reached."""
    return trigger_price(rung.target_percent, entry_price, side)


def rung_stop(rung: Target, entry_price: float, side: Side) -> float:
    """Protective stop price while the order sits at this rung."""
    return trigger_price(rung.stoploss_percent, entry_price, side)


def is_crossed(price: float, trigger: float, side: Side) -> bool:
    if side is Side.BUY:
        return price > trigger
    return price < trigger
