from collections import OrderedDict
from dataclasses import dataclass, replace
from typing import Dict, List, Optional

from .models import Side


@dataclass(frozen=True)
class IndexEntry:
    token_id: int
    order_id: str
    user_id: int
    symbol: str
    side: Side
    target_id: int
    trigger_price: float
    stop_order_id: Optional[str] = None


class TargetIndex:
    """
    In-memory map of token id -> order id -> current rung state.

    Holds no logic of its own; the order lifecycle is the only writer and the
    price watches and poll fallback are readers. An entry exists exactly while
    its order is ACTIVE.
    """

    def __init__(self, retired_capacity: int = 1000):
        self._entries: Dict[int, Dict[str, IndexEntry]] = {}
        self.retired_capacity = retired_capacity
        self._retired: "OrderedDict[str, str]" = OrderedDict()

    def add(self, entry: IndexEntry) -> None:
        self._entries.setdefault(entry.token_id, {})[entry.order_id] = entry

    def get(self, token_id: int, order_id: str) -> Optional[IndexEntry]:
        return self._entries.get(token_id, {}).get(order_id)

    def update(self, token_id: int, order_id: str, **changes) -> Optional[IndexEntry]:
        current = self.get(token_id, order_id)
        if current is None:
            return None
        updated = replace(current, **changes)
        self._entries[token_id][order_id] = updated
        return updated

    def remove(self, token_id: int, order_id: str) -> Optional[IndexEntry]:
        orders = self._entries.get(token_id)
        if not orders:
            return None
        entry = orders.pop(order_id, None)
        if not orders:
            del self._entries[token_id]
        return entry

    def entries_for(self, token_id: int) -> List[IndexEntry]:
        return list(self._entries.get(token_id, {}).values())

    def all(self) -> Dict[int, Dict[str, IndexEntry]]:
        return {token_id: dict(orders) for token_id, orders in self._entries.items()}

    def find_by_stop_id(self, stop_order_id: str) -> Optional[IndexEntry]:
        for orders in self._entries.values():
            for entry in orders.values():
                if entry.stop_order_id == stop_order_id:
                    return entry
        return None

    def order_for_stop(self, stop_order_id: str) -> Optional[str]:
        """Order id owning ``stop_order_id``, whether it is the live stop or one replaced recently."""
        entry = self.find_by_stop_id(stop_order_id)
        if entry is not None:
            return entry.order_id
        return self._retired.get(stop_order_id)

    def retire_stop(self, stop_order_id: str, order_id: str) -> None:
        """Remember a cancelled stop so a fill racing its cancel still resolves to the order."""
        self._retired[stop_order_id] = order_id
        self._retired.move_to_end(stop_order_id)
        while len(self._retired) > self.retired_capacity:
            self._retired.popitem(last=False)

    def tokens(self) -> List[int]:
        return list(self._entries)

    def has_token(self, token_id: int) -> bool:
        return bool(self._entries.get(token_id))

    def __len__(self) -> int:
        return sum(len(orders) for orders in self._entries.values())

    def clear(self) -> None:
        self._entries.clear()
        self._retired.clear()
