from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from strategy.models import Candle, Side


__all__ = [
    "Broker",
    "OpenResult",
    "CloseResult",
    "StopResult",
    "VerifyResult",
    "StopFill",
]


@dataclass
class OpenResult:
    success: bool
    order_id: Optional[str] = None
    entry_price: Optional[float] = None
    qty: Optional[float] = None
    side: Optional[Side] = None
    timestamp: Optional[int] = None
    error: Optional[str] = None


@dataclass
class CloseResult:
    success: bool
    mark_price: Optional[float] = None
    error: Optional[str] = None


@dataclass
class StopResult:
    success: bool
    stop_order_id: Optional[str] = None
    error: Optional[str] = None


@dataclass
class VerifyResult:
    """Normalized order detail as reported by the exchange."""

    success: bool
    order_id: Optional[str] = None
    status: Optional[str] = None
    side: Optional[Side] = None
    avg_price: Optional[float] = None
    executed_qty: Optional[float] = None
    update_time: Optional[int] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def filled(self) -> bool:
        return (
            self.success
            and self.status == "FILLED"
            and bool(self.avg_price)
            and bool(self.executed_qty)
        )


@dataclass(frozen=True)
class StopFill:
    stop_order_id: str
    symbol: str
    avg_price: float
    order_type: str
    update_time: int


class Broker(ABC):
    """Exchange capability used by the order lifecycle, one implementation per exchange."""

    user_id: int

    @abstractmethod
    async def open_market_order(self, symbol: str, side: Side, qty: float) -> OpenResult:
        ...

    @abstractmethod
    async def close_position(self, symbol: str, side: Side, qty: float) -> CloseResult:
        """Close ``qty`` of a position by sending a reduce-only market order on ``side``."""

    @abstractmethod
    async def place_stop(self, symbol: str, side: Side, stop_price: float, qty: float) -> StopResult:
        ...

    @abstractmethod
    async def cancel_stops(self, symbol: str, stop_order_ids: List[str]) -> bool:
        """True once none of the stops is live; stops that already triggered count too, so verify fills."""

    @abstractmethod
    async def verify_order(self, symbol: str, order_id: str) -> VerifyResult:
        ...

    @abstractmethod
    async def recent_filled_order(self, symbol: str, side: Side) -> Optional[str]:
        """Id of the most recent filled trade on ``side``, or None."""

    @abstractmethod
    async def has_open_position(self, symbol: str) -> bool:
        ...

    @abstractmethod
    async def wallet_balance(self) -> Optional[float]:
        ...

    @abstractmethod
    async def price(self, symbol: str) -> Optional[float]:
        ...

    @abstractmethod
    async def daily_candles(self, symbol: str, days: int) -> Optional[List[Candle]]:
        ...

    @abstractmethod
    async def adjust_leverage(self, symbol: str, leverage: int) -> bool:
        ...

    @abstractmethod
    async def recent_stop_fills(self, symbol: str) -> List[StopFill]:
        ...

    @abstractmethod
    async def create_listen_key(self) -> Optional[str]:
        ...

    @abstractmethod
    async def keepalive_listen_key(self, listen_key: str) -> bool:
        ...

    @abstractmethod
    def taker_fee(self) -> float:
        ...

    @abstractmethod
    def maker_fee(self) -> float:
        ...

    async def close(self) -> None:
        return None
