"""
Ordered store of the memory items that count against the budget.

Display order is an explicit list of ids (oldest first); an id -> item map
gives O(1) lookup. "Oldest" always means "earliest in that list", never an
accident of dict ordering.
"""

import asyncio
import logging
import re
from typing import Dict, Iterable, Iterator, List, Optional

from .exceptions import NotFound
from .models import ItemKind, MemoryItem

logger = logging.getLogger(__name__)

_ID_SUFFIX = re.compile(r"_(\d+)$")


class ItemStore:
    """
    Live memory items in display order.

    Mutating methods are synchronous and never await, so a caller holding
    ``lock`` sees them applied atomically with respect to other coroutines.
    """

    def __init__(self):
        self._order: List[str] = []
        self._items: Dict[str, MemoryItem] = {}
        # cover id -> id of the live summary covering it (no double summarization)
        self._covered_by: Dict[str, str] = {}
        self._total_chars = 0
        self._seq = 0
        self.lock = asyncio.Lock()

    # --- ids ---

    def next_id(self, prefix: str) -> str:
        """Allocate a new id, unique within this conversation."""
        self._seq += 1
        return f"{prefix}_{self._seq:06d}"

    def bump_sequence(self, ids: Iterable[str]) -> None:
        """Make sure future ids never collide with ``ids`` (used on import)."""
        for item_id in ids:
            match = _ID_SUFFIX.search(item_id)
            if match:
                self._seq = max(self._seq, int(match.group(1)))

    # --- mutation ---

    def append(self, item: MemoryItem) -> None:
        """Insert at the end."""
        self.insert_at(len(self._order), item)

    def insert_at(self, position: int, item: MemoryItem) -> None:
        """Insert ``item`` so that it occupies ``position`` in display order."""
        if item.id in self._items:
            raise ValueError(f"duplicate item id {item.id!r}")
        overlap = [c for c in item.covers if c in self._covered_by]
        if overlap:
            raise ValueError(
                f"summary {item.id!r} overlaps covers of "
                f"{self._covered_by[overlap[0]]!r} on {overlap}"
            )
        position = max(0, min(position, len(self._order)))
        self._order.insert(position, item.id)
        self._items[item.id] = item
        for cover_id in item.covers:
            self._covered_by[cover_id] = item.id
        self._total_chars += item.char_count

    def remove_all(self, ids: Iterable[str]) -> List[MemoryItem]:
        """
        Remove items by id, preserving the relative order of survivors.

        Raises NotFound (and removes nothing) if any id is missing.
        """
        ids = list(ids)
        for item_id in ids:
            if item_id not in self._items:
                raise NotFound(item_id)
        doomed = set(ids)
        removed = [self._items[i] for i in self._order if i in doomed]
        self._order = [i for i in self._order if i not in doomed]
        for item in removed:
            del self._items[item.id]
            for cover_id in item.covers:
                self._covered_by.pop(cover_id, None)
            self._total_chars -= item.char_count
        return removed

    def clear(self) -> None:
        self._order.clear()
        self._items.clear()
        self._covered_by.clear()
        self._total_chars = 0

    # --- lookup ---

    def get(self, item_id: str) -> MemoryItem:
        try:
            return self._items[item_id]
        except KeyError:
            raise NotFound(item_id) from None

    def index_of(self, item_id: str) -> int:
        if item_id not in self._items:
            raise NotFound(item_id)
        return self._order.index(item_id)

    def covering_summary(self, item_id: str) -> Optional[str]:
        """Id of the live summary whose covers include ``item_id``, if any."""
        return self._covered_by.get(item_id)

    def __contains__(self, item_id: str) -> bool:
        return item_id in self._items

    def __len__(self) -> int:
        return len(self._order)

    def __iter__(self) -> Iterator[MemoryItem]:
        return iter([self._items[i] for i in self._order])

    def items(
        self,
        kind: Optional[ItemKind] = None,
        level: Optional[int] = None,
    ) -> List[MemoryItem]:
        """Items in display order, optionally filtered by kind and/or level."""
        result = []
        for item_id in self._order:
            item = self._items[item_id]
            if kind is not None and item.kind is not kind:
                continue
            if level is not None and item.level != level:
                continue
            result.append(item)
        return result

    def raw_items(self) -> List[MemoryItem]:
        return self.items(kind=ItemKind.RAW)

    def summaries(self, level: Optional[int] = None) -> List[MemoryItem]:
        return self.items(kind=ItemKind.SUMMARY, level=level)

    def levels(self) -> List[int]:
        """Distinct levels present, highest first."""
        return sorted({self._items[i].level for i in self._order}, reverse=True)

    # --- budget ---

    def total_chars(self) -> int:
        return self._total_chars

    def count_by_kind(self) -> Dict[ItemKind, int]:
        counts = {ItemKind.RAW: 0, ItemKind.SUMMARY: 0}
        for item in self._items.values():
            counts[item.kind] += 1
        return counts

    def count_by_level(self) -> Dict[int, int]:
        counts: Dict[int, int] = {}
        for item in self._items.values():
            counts[item.level] = counts.get(item.level, 0) + 1
        return dict(sorted(counts.items()))

    def summary_ratio(self) -> float:
        """count(Summary) / count(all); 0.0 for an empty store."""
        if not self._order:
            return 0.0
        return self.count_by_kind()[ItemKind.SUMMARY] / len(self._order)
