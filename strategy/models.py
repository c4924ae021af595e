from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional


class Side(str, Enum):
    BUY = "BUY"
    SELL = "SELL"

    @property
    def opposite(self) -> "Side":
        return Side.SELL if self is Side.BUY else Side.BUY


class Direction(str, Enum):
    SAME = "SAME"
    OPPOSITE = "OPPOSITE"


class OrderStatus(str, Enum):
    ACTIVE = "ACTIVE"
    FINISHED = "FINISHED"
    EXPIRED = "EXPIRED"


class TriggerRule(str, Enum):
    DEFAULT = "DEFAULT"
    FIVE_SAME_COLOR = "FIVE_SAME_COLOR"


class CloseReason(str, Enum):
    TAKE_PROFIT = "take_profit"
    STOPLOSS = "stoploss"
    MANUAL = "manual"
    EXPIRED = "expired"
    UNPROTECTED = "unprotected"


class CandleTrend(str, Enum):
    GREEN = "GREEN"
    RED = "RED"
    MIXED = "MIXED"


@dataclass(frozen=True)
class Token:
    id: int
    name: str
    min_qty: float
    leverage: int
    stable: str = "USDT"
    is_active: bool = True

    @property
    def symbol(self) -> str:
        return f"{self.name}{self.stable}"


@dataclass(frozen=True)
class Strategy:
    id: int
    description: str
    contribution: float
    direction: Direction = Direction.SAME
    is_active: bool = True
    close_before_new_candle: bool = False
    parent_id: Optional[int] = None
    trigger_rule: TriggerRule = TriggerRule.DEFAULT

    @property
    def is_root(self) -> bool:
        return self.parent_id is None


@dataclass(frozen=True)
class Target:
    """One ladder rung: take-profit and protective stop distances, in percent of entry."""

    id: int
    token_id: int
    strategy_id: int
    target_percent: float
    stoploss_percent: float


@dataclass(frozen=True)
class User:
    id: int
    trade_balance: float
    is_active: bool = True
    api_key: Optional[str] = None
    api_secret: Optional[str] = None
    telegram_chat_id: Optional[str] = None
    token_ids: List[int] = field(default_factory=list)


@dataclass
class Order:
    order_id: str
    user_id: int
    token_id: int
    strategy_id: int
    side: Side
    entry_price: float
    qty: float
    budget: float
    fee: float
    leverage: int
    status: OrderStatus = OrderStatus.ACTIVE
    current_target_id: Optional[int] = None
    stop_order_id: Optional[str] = None
    mark_price: Optional[float] = None
    net_profit: Optional[float] = None
    timestamp: int = 0

    @property
    def is_active(self) -> bool:
        return self.status is OrderStatus.ACTIVE


@dataclass(frozen=True)
class Candle:
    date: str
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0

    @property
    def is_green(self) -> bool:
        return self.close > self.open

    @property
    def is_red(self) -> bool:
        return self.close < self.open

    def to_dict(self) -> dict:
        return {
            "date": self.date,
            "open": self.open,
            "high": self.high,
            "low": self.low,
            "close": self.close,
            "volume": self.volume,
        }
