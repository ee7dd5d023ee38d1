"""
Context assembler.

Builds the memory block sent to the generator right before a reply:

- Recent: the last ``recent_raw_count`` raw turns, always included in full
  and in chronological order, whatever their size
- Summaries: ranked summaries for the query, highest level first, added
  greedily into whatever budget the recent turns leave

The item store itself is never modified here.
"""

import logging
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Set

from .archive import Archive
from .budget import (
    RECENT_HEADER,
    SECTION_SEPARATOR,
    SUMMARY_HEADER,
    ContextBudget,
    calculate_context_budget,
    recent_line,
    summary_line,
    summary_line_chars,
)
from .config import MemoryConfig
from .item_store import ItemStore
from .models import MemoryItem, ResultSource, SearchResult
from .search import TieredSearchEngine

logger = logging.getLogger(__name__)


@dataclass
class AssembledContext:
    """What went into one context string, and why."""

    query: str
    budget: ContextBudget
    recent: List[MemoryItem] = field(default_factory=list)
    summaries: List[SearchResult] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    text: str = ""

    @property
    def summary_chars(self) -> int:
        return sum(summary_line_chars(s.level, s.content) for s in self.summaries)


class ContextAssembler:
    """Blend recent raw turns with the most relevant summaries."""

    def __init__(
        self,
        store: ItemStore,
        archive: Archive,
        search: TieredSearchEngine,
        config: Optional[MemoryConfig] = None,
    ):
        self.store = store
        self.archive = archive
        self.search = search
        self.config = config or MemoryConfig()

    def build(
        self,
        query: str,
        max_chars: Optional[int] = None,
        extra_results: Iterable[SearchResult] = (),
    ) -> str:
        """
        Context string for ``query``.

        The result fits in ``max_chars`` whenever the recent turns do; recent
        turns are never cut, so an oversized recent block overruns it.
        """
        return self.assemble(query, max_chars, extra_results).text

    def assemble(
        self,
        query: str,
        max_chars: Optional[int] = None,
        extra_results: Iterable[SearchResult] = (),
    ) -> AssembledContext:
        max_chars = self.config.default_context_chars if max_chars is None else max_chars

        raws = self.store.raw_items()
        recent = raws[-self.config.recent_raw_count:] if self.config.recent_raw_count > 0 else []
        budget = calculate_context_budget(max_chars, recent)
        context = AssembledContext(query=query, budget=budget, recent=list(recent))

        if budget.summary_max > 0:
            recent_ids = {item.id for item in recent}
            candidates = self._candidates(query, extra_results, recent_ids)
            self._fill(context, candidates, budget.summary_max)
        else:
            logger.debug(
                "Recent turns use %d/%d chars, no room for summaries",
                budget.recent_chars,
                max_chars,
            )

        context.text = _render(context)
        logger.debug(
            "Context assembled: %d recent (%d chars), %d summaries (%d/%d chars)",
            len(context.recent),
            budget.recent_chars,
            len(context.summaries),
            context.summary_chars,
            budget.summary_max,
        )
        return context

    def _candidates(
        self,
        query: str,
        extra_results: Iterable[SearchResult],
        exclude: Set[str],
    ) -> List[SearchResult]:
        if query.strip():
            outcome = self.search.search_local(
                query,
                threshold=self.config.max_search_results,
                max_results=self.config.max_search_results,
            )
            found = [r for r in outcome.results if r.level >= 1]
        else:
            found = [_as_result(s) for s in self.store.summaries()]

        for extra in extra_results:
            if extra.level >= 1 or extra.source is ResultSource.FALLBACK:
                found.append(extra)

        unique = {}
        for result in found:
            if result.id in exclude:
                continue
            current = unique.get(result.id)
            if current is None or result.relevance_score > current.relevance_score:
                unique[result.id] = result
        # Denser first: one L3 beats two L1s over the same span
        return sorted(unique.values(), key=lambda r: (-r.level, -r.relevance_score, r.id))

    def _fill(self, context: AssembledContext, candidates: List[SearchResult], limit: int) -> None:
        used = 0
        covered: Set[str] = set()
        for candidate in candidates:
            if candidate.id in covered:
                context.skipped.append(candidate.id)
                continue
            size = summary_line_chars(candidate.level, candidate.content)
            if used + size > limit:
                context.skipped.append(candidate.id)
                continue
            context.summaries.append(candidate)
            used += size
            covered.update(self.archive.descendant_ids(candidate.id))


def _as_result(item: MemoryItem) -> SearchResult:
    return SearchResult(
        id=item.id,
        content=item.text,
        level=item.level,
        relevance_score=0.0,
        metadata={"kind": item.kind.value, "covers": list(item.covers)},
    )


def _render(context: AssembledContext) -> str:
    parts = []
    if context.summaries:
        lines = [SUMMARY_HEADER]
        for summary in context.summaries:
            lines.append(summary_line(summary.level, summary.content))
        parts.append("\n".join(lines))
    if context.recent:
        lines = [RECENT_HEADER]
        for item in context.recent:
            lines.append(recent_line(item))
        parts.append("\n".join(lines))
    return SECTION_SEPARATOR.join(parts)
