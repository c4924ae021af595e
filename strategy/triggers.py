from typing import List, Optional, Sequence

from .models import Candle, CandleTrend, Direction, Side, Strategy, TriggerRule

TREND_WINDOW = 5


def candle_trend(candles: Sequence[Candle], window: int = TREND_WINDOW) -> CandleTrend:
    """Colour run of the last ``window`` candles; fewer candles than that is MIXED."""
    if len(candles) < window:
        return CandleTrend.MIXED
    series = candles[-window:]
    if all(c.is_green for c in series):
        return CandleTrend.GREEN
    if all(c.is_red for c in series):
        return CandleTrend.RED
    return CandleTrend.MIXED


def rule_for_trend(trend: CandleTrend) -> TriggerRule:
    if trend is CandleTrend.MIXED:
        return TriggerRule.DEFAULT
    return TriggerRule.FIVE_SAME_COLOR


def select_trigger_strategy(children: List[Strategy], trend: CandleTrend) -> Optional[Strategy]:
    """First active child, in stored order, whose rule matches the trend."""
    rule = rule_for_trend(trend)
    for child in children:
        if child.is_active and child.trigger_rule is rule:
            return child
    return None


def apply_direction(side: Side, direction: Direction) -> Side:
    if direction is Direction.OPPOSITE:
        return side.opposite
    return side


def side_from_candle(prev: Candle, direction: Direction) -> Side:
    """Entry side following (SAME) or fading (OPPOSITE) the previous candle's colour."""
    side = Side.BUY if prev.is_green else Side.SELL
    return apply_direction(side, direction)
