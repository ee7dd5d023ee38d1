"""
Tiered search over the item store, the archive and an external fallback.

A query moves through these states, stopping as soon as ``threshold`` hits
are found:

  1. Local, high level first: scan live items from the most compressed level
     down to raw turns.
  2. Decompression: expand live summaries through the archive one level at a
     time, top-down, scanning the rehydrated items.
  3. Fallback: ask the external long-term memory (if configured).
  4. Ranked: sort by relevance, then id, and keep ``max_results``.

Relevance of an item:

    0.8 exact substring + 0.3 per keyword hit + 0.2 topic match
    + (max_level + 1 - level) * 0.1 level bonus, clamped to [0, 1]

The level bonus only applies on top of a lexical signal. Items under the
relevance floor are pruned before ranking; an empty result is a normal
outcome.
"""

import logging
import time
from dataclasses import dataclass, field, replace
from typing import Callable, Dict, List, Optional, Protocol, Set, runtime_checkable

from .archive import Archive
from .config import MemoryConfig
from .exceptions import BrokenChain, NotFound
from .item_store import ItemStore
from .models import ArchiveEntry, MemoryItem, ResultSource, SearchResult
from .topics import extract_keywords

logger = logging.getLogger(__name__)

EXACT_MATCH_SCORE = 0.8
KEYWORD_SCORE = 0.3
TOPIC_SCORE = 0.2
LEVEL_BONUS_STEP = 0.1


@runtime_checkable
class ExternalSearch(Protocol):
    """Long-term memory consulted when local search comes up short."""

    async def search(self, query: str) -> List[SearchResult]:
        ...


@dataclass
class SearchOutcome:
    query: str
    threshold: int
    results: List[SearchResult] = field(default_factory=list)
    levels_scanned: List[int] = field(default_factory=list)
    decompressed: bool = False
    fallback_used: bool = False
    timed_out: bool = False

    @property
    def insufficient(self) -> bool:
        return len(self.results) < self.threshold


class _Scan:
    """Mutable state of one local search."""

    def __init__(self, query: str, deadline: Optional[float], now: Callable[[], float]):
        self.query = query.strip().lower()
        self.keywords = extract_keywords(query)
        self.deadline = deadline
        self.now = now
        self.hits: Dict[str, SearchResult] = {}
        self.visited: Set[str] = set()
        self.timed_out = False

    def expired(self) -> bool:
        if self.deadline is not None and self.now() > self.deadline:
            self.timed_out = True
        return self.timed_out


class TieredSearchEngine:
    """Level-by-level search with on-demand decompression."""

    def __init__(
        self,
        store: ItemStore,
        archive: Archive,
        config: Optional[MemoryConfig] = None,
        external_search: Optional[ExternalSearch] = None,
        now: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.archive = archive
        self.config = config or MemoryConfig()
        self.external_search = external_search
        self._now = now

    def deadline_after(self, seconds: float) -> float:
        """Absolute deadline usable by ``search_local``."""
        return self._now() + seconds

    # --- scoring ---

    def relevance(self, item: MemoryItem, query: str, keywords: List[str]) -> float:
        """Relevance of ``item`` for a lower-cased query and its keywords."""
        text = item.text.lower()
        lexical = 0.0
        if query and query in text:
            lexical += EXACT_MATCH_SCORE
        for keyword in keywords:
            if keyword in text:
                lexical += KEYWORD_SCORE

        topics = [t.lower() for t in item.topics]
        if any(k in t for t in topics for k in keywords) or (query and query in topics):
            lexical += TOPIC_SCORE

        if lexical == 0.0:
            return 0.0
        levels_above = max(0, self.config.level_bonus_max_level + 1 - item.level)
        return min(1.0, max(0.0, lexical + levels_above * LEVEL_BONUS_STEP))

    def _consider(self, scan: _Scan, item: MemoryItem, via: Optional[str] = None) -> None:
        scan.visited.add(item.id)
        try:
            score = self.relevance(item, scan.query, scan.keywords)
        except Exception as e:
            logger.warning("Skipping item %s during scan: %s", item.id, e)
            return
        if score <= self.config.relevance_floor:
            return

        archived = isinstance(item, ArchiveEntry)
        metadata = {
            "kind": item.kind.value,
            "role": item.role,
            "timestamp": item.created_at.isoformat(),
            "topics": sorted(item.topics),
            "covers": list(item.covers),
            "archived": archived,
            "decompressed": via is not None,
            "authority": item.authority,
        }
        if via is not None:
            metadata["via"] = via
        if archived:
            metadata["replaced_by"] = item.replaced_by

        scan.hits[item.id] = SearchResult(
            id=item.id,
            content=item.text,
            level=item.level,
            relevance_score=score,
            source=ResultSource.LOCAL,
            metadata=metadata,
        )

    # --- local tiers ---

    def search_local(
        self,
        query: str,
        threshold: Optional[int] = None,
        max_results: Optional[int] = None,
        deadline: Optional[float] = None,
    ) -> SearchOutcome:
        """
        Local tiers only (store, then archive decompression).

        Never awaits, so it reads a consistent store. If ``deadline`` (a
        ``time.monotonic()`` value) passes mid-scan, returns what was found.
        """
        threshold = self.config.search_threshold_results if threshold is None else threshold
        max_results = self.config.max_search_results if max_results is None else max_results
        outcome = SearchOutcome(query=query, threshold=threshold)
        scan = _Scan(query, deadline, self._now)
        if not scan.query:
            return outcome

        # Tier 1: live items, most compressed first
        for level in self.store.levels():
            for item in self.store.items(level=level):
                if scan.expired():
                    break
                self._consider(scan, item)
            outcome.levels_scanned.append(level)
            if scan.timed_out or len(scan.hits) >= threshold:
                break

        # Tier 2: rehydrate through the archive
        if len(scan.hits) < threshold and not scan.timed_out:
            outcome.decompressed = self._decompress_scan(scan, threshold)

        outcome.timed_out = scan.timed_out
        if scan.timed_out:
            logger.debug("Search for %r hit its deadline with %d hits", query, len(scan.hits))
        outcome.results = rank_results(list(scan.hits.values()), max_results)
        return outcome

    def _decompress_scan(self, scan: _Scan, threshold: int) -> bool:
        """Expand summaries top-down until enough hits. True if any expansion happened."""
        pending: Dict[int, List[str]] = {}
        for summary in self.store.summaries():
            pending.setdefault(summary.level, []).append(summary.id)

        expanded_any = False
        while pending and len(scan.hits) < threshold:
            level = max(pending)
            for node_id in pending.pop(level):
                if scan.expired():
                    return expanded_any
                try:
                    result = self.archive.decompress(node_id, level - 1)
                except BrokenChain as e:
                    result = e.result
                except NotFound:
                    logger.debug("No archive record for %s, nothing to expand", node_id)
                    continue

                expanded_any = True
                for child in result.items:
                    if child.id in scan.visited:
                        continue
                    self._consider(scan, child, via=node_id)
                    if child.level > 0:
                        pending.setdefault(child.level, []).append(child.id)
                if len(scan.hits) >= threshold:
                    break
        return expanded_any

    # --- fallback ---

    async def fallback(self, query: str) -> List[SearchResult]:
        """External search; failures are logged and swallowed."""
        if self.external_search is None:
            return []
        try:
            results = await self.external_search.search(query)
        except Exception as e:
            logger.warning("External search failed for %r: %s", query, e)
            return []

        normalized = []
        for result in results or []:
            normalized.append(replace(
                result,
                source=ResultSource.FALLBACK,
                relevance_score=min(1.0, max(0.0, float(result.relevance_score))),
                metadata=dict(result.metadata),
            ))
        logger.debug("External search returned %d results for %r", len(normalized), query)
        return normalized

    async def search(
        self,
        query: str,
        threshold: Optional[int] = None,
        max_results: Optional[int] = None,
        deadline: Optional[float] = None,
        allow_fallback: bool = True,
    ) -> SearchOutcome:
        """All tiers: local, decompression, then the external fallback."""
        outcome = self.search_local(query, threshold, max_results, deadline)
        if (
            outcome.insufficient
            and allow_fallback
            and self.config.enable_fallback
            and self.external_search is not None
        ):
            extra = await self.fallback(query)
            if extra:
                outcome.fallback_used = True
                limit = self.config.max_search_results if max_results is None else max_results
                outcome.results = rank_results(outcome.results + extra, limit)
        return outcome


def rank_results(results: List[SearchResult], max_results: Optional[int] = None) -> List[SearchResult]:
    """Deduplicate by id (best score wins), sort by score desc then id, truncate."""
    best: Dict[str, SearchResult] = {}
    for result in results:
        current = best.get(result.id)
        if current is None or result.relevance_score > current.relevance_score:
            best[result.id] = result
    ranked = sorted(best.values(), key=lambda r: (-r.relevance_score, r.id))
    return ranked[:max_results] if max_results is not None else ranked
