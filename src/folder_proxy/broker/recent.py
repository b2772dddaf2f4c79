"""Fixed-capacity memory of recently dispatched record names."""

from __future__ import annotations

from collections import OrderedDict
from collections.abc import Iterable


class RecentSet:
    """Insertion-ordered set that evicts its oldest entries past ``capacity``.

    Used by the discovery loop to avoid re-reading records it already
    dispatched.  It only saves work: forgetting an entry can cause one extra
    read, never a second execution, because claiming still goes through the
    record lock and status check.
    """

    def __init__(self, capacity: int = 1000) -> None:
        if capacity <= 0:
            raise ValueError("RecentSet capacity must be > 0.")
        self.capacity = capacity
        self._items: OrderedDict[str, None] = OrderedDict()

    def __contains__(self, item: object) -> bool:
        return item in self._items

    def __len__(self) -> int:
        return len(self._items)

    def add(self, item: str) -> None:
        if item in self._items:
            return
        self._items[item] = None
        while len(self._items) > self.capacity:
            self._items.popitem(last=False)

    def discard(self, item: str) -> None:
        self._items.pop(item, None)

    def unseen(self, items: Iterable[str]) -> list[str]:
        """Return items not yet remembered, preserving input order."""

        return [item for item in items if item not in self._items]
