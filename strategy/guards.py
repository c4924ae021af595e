from collections import OrderedDict
from contextlib import contextmanager
from typing import Hashable, Iterator, Set


class InFlightGuard:
    """Set of identifiers currently being processed; a second claim on a busy id is refused."""

    def __init__(self):
        self._busy: Set[Hashable] = set()

    def __contains__(self, key: Hashable) -> bool:
        return key in self._busy

    def __len__(self) -> int:
        return len(self._busy)

    def acquire(self, key: Hashable) -> bool:
        if key in self._busy:
            return False
        self._busy.add(key)
        return True

    def release(self, key: Hashable) -> None:
        self._busy.discard(key)

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[bool]:
        """Yield whether ``key`` was claimed; the claim is released on exit."""
        acquired = self.acquire(key)
        try:
            yield acquired
        finally:
            if acquired:
                self.release(key)


class RecentlySeen:
    """Bounded memory of processed ids; the oldest ids are forgotten first."""

    def __init__(self, capacity: int = 1000):
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self._seen: "OrderedDict[Hashable, None]" = OrderedDict()

    def __contains__(self, key: Hashable) -> bool:
        return key in self._seen

    def __len__(self) -> int:
        return len(self._seen)

    def add(self, key: Hashable) -> bool:
        """Record ``key``; returns False when it was already present."""
        if key in self._seen:
            return False
        self._seen[key] = None
        while len(self._seen) > self.capacity:
            self._seen.popitem(last=False)
        return True

    def discard(self, key: Hashable) -> None:
        self._seen.pop(key, None)
