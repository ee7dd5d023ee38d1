"""
Cold storage for evicted items, with hierarchical decompression.

Every item the orchestrator evicts lands here exactly once, tagged with
``replaced_by`` (the summary that superseded it). Entries are never mutated;
the archive only grows until an explicit ``clear()``.

Decompression walks ``covers`` downwards:

    L3 summary --covers--> L2 entries --covers--> L1 entries --covers--> raw entries

The starting summary may be live (still in the item store) or archived. For a
live summary the archive answers from its own index of what that summary
replaced.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional

from .exceptions import BrokenChain, NotFound
from .models import ArchiveEntry, MemoryItem
from .topics import extract_keywords

logger = logging.getLogger(__name__)


@dataclass
class DecompressionResult:
    """Items resolved at ``level`` while expanding ``root_id``."""

    root_id: str
    level: int
    items: List[ArchiveEntry] = field(default_factory=list)
    path: List[str] = field(default_factory=list)
    broken_ids: List[str] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not self.broken_ids


@dataclass
class ArchiveSearch:
    """Result of a keyword scan over archived entries."""

    results: List[ArchiveEntry]
    descended: bool  # True when matches were only found below max_level
    path: List[str] = field(default_factory=list)


class Archive:
    """Append-only archive of evicted memory items."""

    def __init__(self):
        self._entries: Dict[str, ArchiveEntry] = {}
        self._order: List[str] = []
        # replacing summary id -> ids it replaced, in covers order
        self._replaced: Dict[str, List[str]] = {}

    def archive(self, item: MemoryItem, originals: Optional[List[MemoryItem]] = None) -> List[ArchiveEntry]:
        """
        Record that ``item`` superseded ``originals``.

        Each original is stored as an entry tagged ``replaced_by=item.id``.
        Returns the new entries.
        """
        originals = originals or []
        stored = []
        for original in originals:
            if original.id in self._entries:
                raise ValueError(f"{original.id!r} is already archived")
            entry = ArchiveEntry.from_item(original, replaced_by=item.id)
            self._insert(entry)
            stored.append(entry)

        logger.debug(
            "Archived %d item(s) at level %s replaced by %s",
            len(stored),
            originals[0].level if originals else "-",
            item.id,
        )
        return stored

    def _insert(self, entry: ArchiveEntry) -> None:
        self._entries[entry.id] = entry
        self._order.append(entry.id)
        self._replaced.setdefault(entry.replaced_by, []).append(entry.id)

    def load(self, entries: List[ArchiveEntry]) -> None:
        """Bulk-insert entries in their exported order (import path)."""
        for entry in entries:
            if entry.id in self._entries:
                raise ValueError(f"duplicate archive entry {entry.id!r}")
            self._insert(entry)

    def clear(self) -> None:
        """Drop every archived entry."""
        count = len(self._order)
        self._entries.clear()
        self._order.clear()
        self._replaced.clear()
        logger.info("Archive cleared (%d entries dropped)", count)

    # --- lookup ---

    def get(self, item_id: str) -> ArchiveEntry:
        try:
            return self._entries[item_id]
        except KeyError:
            raise NotFound(item_id, where="archive") from None

    def __contains__(self, item_id: str) -> bool:
        return item_id in self._entries

    def __len__(self) -> int:
        return len(self._order)

    def __iter__(self) -> Iterator[ArchiveEntry]:
        return iter([self._entries[i] for i in self._order])

    def entries(self, level: Optional[int] = None) -> List[ArchiveEntry]:
        """Archived entries in archive order, optionally for one level."""
        return [
            self._entries[i] for i in self._order
            if level is None or self._entries[i].level == level
        ]

    def replaced_by(self, summary_id: str) -> List[ArchiveEntry]:
        """Entries that ``summary_id`` superseded."""
        return [self._entries[i] for i in self._replaced.get(summary_id, [])]

    def knows(self, item_id: str) -> bool:
        """True if the id is archived or is a summary that replaced archived items."""
        return item_id in self._entries or item_id in self._replaced

    # --- decompression ---

    def _children(self, node_id: str) -> List[str]:
        entry = self._entries.get(node_id)
        if entry is not None:
            return list(entry.covers)
        return list(self._replaced.get(node_id, []))

    def _level_of(self, node_id: str) -> int:
        entry = self._entries.get(node_id)
        if entry is not None:
            return entry.level
        children = self._replaced.get(node_id)
        if not children:
            raise NotFound(node_id, where="archive")
        return self._entries[children[0]].level + 1

    def decompress(self, item_id: str, target_level: int = 0, strict: bool = True) -> DecompressionResult:
        """
        Expand ``item_id`` down to the items it covers at ``target_level``.

        Raises NotFound if ``item_id`` is unknown to the archive. If a covers
        reference is missing on the way down, raises BrokenChain carrying the
        partial result (or, with ``strict=False``, returns it with
        ``broken_ids`` set).
        """
        level = self._level_of(item_id)
        result = DecompressionResult(root_id=item_id, level=level)
        result.path.append(f"L{level}: {item_id}")

        if level <= target_level:
            if item_id in self._entries:
                result.items = [self._entries[item_id]]
            return result

        frontier = [item_id]
        while level > target_level and frontier:
            next_level = level - 1
            expanded: List[ArchiveEntry] = []
            for node_id in frontier:
                for child_id in self._children(node_id):
                    child = self._entries.get(child_id)
                    if child is None:
                        result.broken_ids.append(child_id)
                        continue
                    expanded.append(child)
            result.path.append(f"L{next_level}: {len(expanded)} items")
            frontier = [e.id for e in expanded]
            level = next_level
            result.items = expanded
            result.level = level

        if result.broken_ids:
            logger.warning(
                "Decompression of %s broken at %s (%d item(s) resolved)",
                item_id,
                result.broken_ids,
                len(result.items),
            )
            if strict:
                raise BrokenChain(result.broken_ids[0], result)
        return result

    def descendant_ids(self, item_id: str) -> List[str]:
        """Every archived id reachable from ``item_id`` through covers, any level."""
        if not self.knows(item_id):
            return []
        seen: List[str] = []
        stack = self._children(item_id)
        while stack:
            child_id = stack.pop(0)
            if child_id in seen or child_id not in self._entries:
                continue
            seen.append(child_id)
            stack.extend(self._children(child_id))
        return seen

    # --- search ---

    def search_with_fallback(self, query: str, max_level: int = 3) -> ArchiveSearch:
        """
        Substring/keyword scan of archived entries, from ``max_level`` down.

        Stops at the first level that yields matches. ``descended`` reports
        whether matches were only found below ``max_level``.
        """
        needle = query.strip().lower()
        keywords = extract_keywords(query)
        path: List[str] = []
        if not needle:
            return ArchiveSearch(results=[], descended=False, path=path)

        for level in range(max_level, -1, -1):
            matches = []
            for entry in self.entries(level):
                try:
                    if _entry_matches(entry, needle, keywords):
                        matches.append(entry)
                except Exception as e:
                    logger.warning("Skipping archive entry %s during scan: %s", entry.id, e)
            if matches:
                path.append(f"L{level}: {len(matches)} results")
                return ArchiveSearch(
                    results=matches,
                    descended=level < max_level,
                    path=path,
                )
            path.append(f"L{level}: 0 results")

        return ArchiveSearch(results=[], descended=False, path=path)

    # --- stats ---

    def stats(self) -> dict:
        by_level: Dict[int, int] = {}
        for entry in self._entries.values():
            by_level[entry.level] = by_level.get(entry.level, 0) + 1
        ordered = sorted(self._entries.values(), key=lambda e: (e.created_at, e.id))
        return {
            "total_items": len(self._order),
            "items_by_level": dict(sorted(by_level.items())),
            "oldest_item": ordered[0].id if ordered else None,
            "newest_item": ordered[-1].id if ordered else None,
        }


def _entry_matches(entry: ArchiveEntry, needle: str, keywords: List[str]) -> bool:
    text = entry.text.lower()
    if needle in text:
        return True
    topics = [t.lower() for t in entry.topics]
    if any(needle in t for t in topics):
        return True
    return any(k in text for k in keywords)
