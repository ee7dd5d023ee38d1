"""
Compression orchestrator: eviction and promotion policy over the item store.

Policy, evaluated in this order on every pass:

- R1 (level-1 creation): once the raw items outside the reserved recent tail
  reach ``l1_threshold``, the oldest contiguous block of that many raw items
  is summarized into one level-1 summary.
- R2 (budget): while the store exceeds ``budget_max``, keep replacing the
  oldest eligible raw block with a level-1 summary.
- R3 (hierarchical merge): while the summary ratio exceeds
  ``hierarchical_threshold`` (or the budget is still exceeded), merge the two
  oldest summaries of the lowest level that has two into one summary one
  level up.

Summarizer calls happen outside the store lock. Targets are snapshotted under
the lock, summarized, then re-validated and swapped for the summary under the
lock again, so eviction and insertion are atomic to every other coroutine.
"""

import asyncio
import logging
from typing import Callable, List, Optional, Sequence

from .archive import Archive
from .config import MemoryConfig
from .exceptions import SummarizationFailed
from .item_store import ItemStore
from .models import ActionKind, CompressionAction, ItemKind, MemoryItem, utcnow
from .summarizer import Summarizer
from .topics import extract_topics, merge_topics

logger = logging.getLogger(__name__)


class CompressionOrchestrator:
    """Applies R1/R2/R3 to one conversation's store and archive."""

    def __init__(
        self,
        store: ItemStore,
        archive: Archive,
        summarizer: Summarizer,
        config: Optional[MemoryConfig] = None,
        clock: Callable = utcnow,
    ):
        self.store = store
        self.archive = archive
        self.summarizer = summarizer
        self.config = config or MemoryConfig()
        self._clock = clock
        # One pass at a time per conversation
        self._pass_lock = asyncio.Lock()

    @property
    def running(self) -> bool:
        return self._pass_lock.locked()

    # --- selection (call with store.lock held, or from sync code) ---

    def eligible_raw(self) -> List[MemoryItem]:
        """Raw items in display order, minus the reserved most recent ones."""
        raws = self.store.raw_items()
        return raws[: max(0, len(raws) - self.config.reserved_recent_raw)]

    def oldest_raw_block(self) -> List[MemoryItem]:
        """
        The oldest run of ``l1_threshold`` eligible raw items that are
        adjacent in display order, or [] if there is none.
        """
        size = self.config.l1_threshold
        eligible = {item.id for item in self.eligible_raw()}
        if len(eligible) < size:
            return []

        run: List[MemoryItem] = []
        for item in self.store:
            if item.id in eligible:
                run.append(item)
                if len(run) == size:
                    return run
            else:
                run = []
        return []

    def oldest_mergeable_pair(self) -> List[MemoryItem]:
        """Two oldest summaries at the lowest level holding at least two."""
        levels = sorted({s.level for s in self.store.summaries()})
        for level in levels:
            candidates = self.store.summaries(level=level)
            if len(candidates) >= 2:
                return candidates[:2]
        return []

    def _over_budget(self) -> bool:
        return self.store.total_chars() > self.config.budget_max

    def _should_merge(self) -> bool:
        return (
            self.store.summary_ratio() > self.config.hierarchical_threshold
            or self._over_budget()
        )

    # --- pass ---

    async def process(self) -> CompressionAction:
        """
        Run one compression pass.

        Never raises on summarizer failure: the pass stops, items stay
        untouched, and ``action.error`` says why. The caller retries on the
        next append.
        """
        async with self._pass_lock:
            action = CompressionAction(budget_max=self.config.budget_max)
            try:
                await self._run_pass(action)
            except SummarizationFailed as e:
                action.error = str(e)
                logger.warning(
                    "Compression pass aborted after %d step(s), retrying on next append: %s",
                    len(action.steps),
                    e,
                )

            action.total_chars_after = self.store.total_chars()
            if action.error is None and action.total_chars_after > action.budget_max:
                action.budget_unsatisfiable = True
                logger.warning(
                    "Budget unsatisfiable: %d/%d chars with no compression left",
                    action.total_chars_after,
                    action.budget_max,
                )
            logger.debug(
                "Compression pass: %s, %d summaries, %d evicted, %d/%d chars",
                action.kind.value,
                len(action.summaries),
                len(action.evicted),
                action.total_chars_after,
                action.budget_max,
            )
            return action

    async def _run_pass(self, action: CompressionAction) -> None:
        cfg = self.config

        # R1
        if len(self.eligible_raw()) >= cfg.l1_threshold:
            block = await self._snapshot(self.oldest_raw_block)
            if block:
                await self._replace(block, 1, ActionKind.CREATED_LEVEL1, action)

        # R2
        while self._over_budget():
            block = await self._snapshot(self.oldest_raw_block)
            if not block:
                break
            if not await self._replace(block, 1, ActionKind.REPLACED_RAW_WITH_SUMMARY, action):
                break

        # R3
        while self._should_merge():
            pair = await self._snapshot(self.oldest_mergeable_pair)
            if not pair:
                break
            if not await self._replace(
                pair, pair[0].level + 1, ActionKind.MERGED_TO_HIGHER_LEVEL, action
            ):
                break

    async def _snapshot(self, select: Callable[[], List[MemoryItem]]) -> List[MemoryItem]:
        async with self.store.lock:
            return list(select())

    async def _replace(
        self,
        targets: List[MemoryItem],
        level: int,
        kind: ActionKind,
        action: CompressionAction,
    ) -> bool:
        """Summarize ``targets`` (unlocked) and swap them for the summary (locked)."""
        texts = [t.text for t in targets]
        text = await self._summarize(texts, level)

        async with self.store.lock:
            missing = [t.id for t in targets if t.id not in self.store]
            if missing:
                logger.warning("Targets %s vanished before apply, step aborted", missing)
                return False

            summary = self._build_summary(targets, level, text)
            replaced = [t.id for t in targets]
            position = self.store.index_of(replaced[0])
            self.store.remove_all(replaced)
            self.store.insert_at(position, summary)
            self.archive.archive(summary, originals=targets)

        action.record(kind, summary, replaced)
        logger.info(
            "%s: %d item(s) -> %s (L%d, %d chars)",
            kind.value,
            len(replaced),
            summary.id,
            level,
            summary.char_count,
        )
        return True

    async def _summarize(self, texts: Sequence[str], level: int) -> str:
        try:
            text = await asyncio.wait_for(
                self.summarizer.summarize(list(texts), level),
                timeout=self.config.summarizer_timeout,
            )
        except asyncio.TimeoutError as e:
            raise SummarizationFailed(
                f"summarizer timed out after {self.config.summarizer_timeout}s"
            ) from e
        except SummarizationFailed:
            raise
        except Exception as e:
            raise SummarizationFailed(f"summarizer error: {e}") from e

        text = (text or "").strip()
        if not text:
            raise SummarizationFailed("summarizer returned empty text")

        source_chars = sum(len(t) for t in texts)
        if len(text) > source_chars:
            logger.warning(
                "L%d summary (%d chars) is longer than its sources (%d chars)",
                level,
                len(text),
                source_chars,
            )
        return text

    def _build_summary(self, targets: List[MemoryItem], level: int, text: str) -> MemoryItem:
        count = len(targets)
        topics = merge_topics(
            [t.topics for t in targets] + [extract_topics([text])],
        )
        return MemoryItem(
            id=self.store.next_id(f"l{level}"),
            kind=ItemKind.SUMMARY,
            level=level,
            text=text,
            created_at=self._clock(),
            topics=set(topics),
            covers=[t.id for t in targets],
            role="summary",
            authority=sum(t.authority for t in targets) / count,
            user_feedback=sum(t.user_feedback for t in targets) / count,
            access_cost=sum(t.access_cost for t in targets) / count,
        )
