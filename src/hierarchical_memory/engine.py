"""
Conversation memory facade.

Wires one conversation's components together:

    append -> ItemStore -> CompressionOrchestrator.process
           -> (InterestAnalyzer.analyze -> TieredSearchEngine, in background)
    build_context -> ContextAssembler (recent turns + summaries + enrichment)

Each ConversationMemory owns its store, archive, analyzer and embedding
cache. Nothing mutable is shared between conversations; MemoryRegistry just
hands out one instance per conversation id.
"""

import asyncio
import dataclasses
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from langchain_core.messages import BaseMessage

from .archive import Archive, ArchiveSearch, DecompressionResult
from .assembler import AssembledContext, ContextAssembler
from .budget import BudgetStatus
from .condenser import message_role, message_text
from .config import MemoryConfig
from .embeddings import EmbeddingCache, EmbeddingProvider, SemanticReranker
from .exceptions import StateError
from .interest import InterestAnalyzer, MessageAnalysis
from .item_store import ItemStore
from .models import ArchiveEntry, CompressionAction, ItemKind, MemoryItem, SearchResult, utcnow
from .orchestrator import CompressionOrchestrator
from .search import ExternalSearch, SearchOutcome, TieredSearchEngine, rank_results
from .summarizer import Summarizer, TruncatingSummarizer
from .topics import extract_topics

logger = logging.getLogger(__name__)


def estimate_authority(text: str, role: str) -> float:
    """Heuristic authority in [0, 1]: longer, wordier and assistant turns weigh more."""
    length = len(text)
    words = len(text.split(" "))
    authority = min(1.0, (length / 1000) * 0.3 + (words / 50) * 0.2)
    if role == "assistant":
        authority += 0.3
    return min(1.0, authority)


def _log_task_failure(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        logger.error("Background task %s failed: %s", task.get_name(), error, exc_info=error)


@dataclass
class ContextEnrichment:
    """
    Result of the background retrieval pass for one user message.

    ``results`` holds what local search found within the latency budget. The
    external fallback, if any, keeps running in ``fallback_task``; its
    results show up in ``all_results()`` once it is done.
    """

    message: str
    analysis: MessageAnalysis
    results: List[SearchResult] = field(default_factory=list)
    elapsed_ms: float = 0.0
    timed_out: bool = False
    fallback_task: Optional[asyncio.Task] = None

    @property
    def triggered(self) -> bool:
        return bool(self.analysis.triggers)

    @property
    def fallback_pending(self) -> bool:
        return self.fallback_task is not None and not self.fallback_task.done()

    def all_results(self, max_results: Optional[int] = None) -> List[SearchResult]:
        results = list(self.results)
        task = self.fallback_task
        if task is not None and task.done() and not task.cancelled() and task.exception() is None:
            results.extend(task.result())
        return rank_results(results, max_results)


class ConversationMemory:
    """
    Hierarchical memory of a single conversation.

    Usage:
        memory = ConversationMemory(config, summarizer=LLMSummarizer(llm))
        await memory.append("How does the compression work?", role="user")
        context = memory.build_context("compression", max_chars=4000)
    """

    def __init__(
        self,
        config: Optional[MemoryConfig] = None,
        summarizer: Optional[Summarizer] = None,
        external_search: Optional[ExternalSearch] = None,
        embedder: Optional[EmbeddingProvider] = None,
        rng=None,
        clock: Callable[[], datetime] = utcnow,
        conversation_id: str = "default",
        auto_enrich: bool = True,
    ):
        self.config = config or MemoryConfig()
        self.conversation_id = conversation_id
        self.auto_enrich = auto_enrich
        self._clock = clock

        self.store = ItemStore()
        self.archive = Archive()
        self.summarizer = summarizer or TruncatingSummarizer()
        self.orchestrator = CompressionOrchestrator(
            self.store, self.archive, self.summarizer, self.config, clock=clock
        )
        self.analyzer = InterestAnalyzer(self.config, rng=rng, clock=clock)
        self.search = TieredSearchEngine(
            self.store, self.archive, self.config, external_search=external_search
        )
        self.assembler = ContextAssembler(self.store, self.archive, self.search, self.config)

        self.embedding_cache: Optional[EmbeddingCache] = None
        self.reranker: Optional[SemanticReranker] = None
        if embedder is not None:
            self.embedding_cache = EmbeddingCache(embedder, self.config.embedding_cache_size)
            self.reranker = SemanticReranker(self.embedding_cache, self.config.embedding_weight)

        self.latest_enrichment: Optional[ContextEnrichment] = None
        self.last_action: Optional[CompressionAction] = None
        self._background: Set[asyncio.Task] = set()

    # --- ingestion ---

    async def append(
        self,
        text: str,
        role: str = "user",
        topics: Optional[Iterable[str]] = None,
    ) -> CompressionAction:
        """
        Store a raw turn, then run a compression pass.

        User turns also schedule a background enrichment pass. Returns the
        pass's CompressionAction (kind NONE when nothing was compressed).
        """
        if not text or not text.strip():
            raise ValueError("cannot append an empty message")

        async with self.store.lock:
            item = MemoryItem(
                id=self.store.next_id("msg"),
                kind=ItemKind.RAW,
                level=0,
                text=text,
                created_at=self._clock(),
                topics=set(topics) if topics is not None else set(extract_topics([text])),
                role=role,
                authority=estimate_authority(text, role),
            )
            self.store.append(item)
        logger.debug("Appended %s (%s, %d chars)", item.id, role, item.char_count)

        self.analyzer.observe(item.topics, at=item.created_at)
        if role == "user" and self.auto_enrich:
            self._spawn(self.enrich(text, exclude=[item.id]))

        action = await self.orchestrator.process()
        self.last_action = action
        return action

    async def add_message(self, msg: BaseMessage, max_tool_chars: int = 200) -> CompressionAction:
        """Append a LangChain chat message (thinking stripped, tool output truncated)."""
        return await self.append(message_text(msg, max_tool_chars), role=message_role(msg))

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        task.add_done_callback(_log_task_failure)
        return task

    async def drain(self) -> None:
        """Wait for every outstanding background task (enrichment and fallbacks)."""
        while self._background:
            await asyncio.wait(list(self._background))

    # --- enrichment ---

    async def enrich(self, message: str, exclude: Iterable[str] = ()) -> ContextEnrichment:
        """
        Interest-triggered retrieval for ``message``.

        Local search is bounded by ``enrichment_budget_ms`` and returns
        partial results when the budget runs out. The external fallback is
        not bounded; it runs as a separate task.
        """
        started = time.monotonic()
        excluded = set(exclude)
        analysis = self.analyzer.analyze(message)
        enrichment = ContextEnrichment(message=message, analysis=analysis)

        queries = [t.tag for t in sorted(analysis.triggers, key=lambda t: (-t.score, t.tag))]
        if queries:
            deadline = started + self.config.enrichment_budget
            found: List[SearchResult] = []
            for query in queries:
                try:
                    outcome = self.search.search_local(query, deadline=deadline)
                except Exception as e:
                    logger.warning("Enrichment search for %r failed: %s", query, e)
                    continue
                found.extend(r for r in outcome.results if r.id not in excluded)
                if outcome.timed_out:
                    enrichment.timed_out = True
                    break
            enrichment.results = rank_results(found, self.config.max_search_results)

            if (
                len(enrichment.results) < self.config.search_threshold_results
                and self.config.enable_fallback
                and self.search.external_search is not None
            ):
                enrichment.fallback_task = self._spawn(self._fallback_all(queries))

        enrichment.elapsed_ms = (time.monotonic() - started) * 1000
        self.latest_enrichment = enrichment
        logger.debug(
            "Enrichment: %d trigger(s), %d local result(s) in %.1fms%s",
            len(analysis.triggers),
            len(enrichment.results),
            enrichment.elapsed_ms,
            " (timed out)" if enrichment.timed_out else "",
        )
        return enrichment

    async def _fallback_all(self, queries: List[str]) -> List[SearchResult]:
        results: List[SearchResult] = []
        for query in queries:
            results.extend(await self.search.fallback(query))
        return rank_results(results, self.config.max_search_results)

    # --- retrieval ---

    def build_context(self, query: str, max_chars: Optional[int] = None) -> str:
        """Context string for the next generation call."""
        return self.assemble_context(query, max_chars).text

    def assemble_context(self, query: str, max_chars: Optional[int] = None) -> AssembledContext:
        extra: List[SearchResult] = []
        if self.latest_enrichment is not None:
            extra = self.latest_enrichment.all_results()
        return self.assembler.assemble(query, max_chars, extra_results=extra)

    async def recall(self, query: str, max_results: Optional[int] = None) -> SearchOutcome:
        """Tiered search with fallback, re-ranked semantically when an embedder is set."""
        outcome = await self.search.search(query, max_results=max_results)
        if self.reranker is not None and outcome.results:
            outcome.results = await self.reranker.rerank(query, outcome.results, limit=max_results)
        return outcome

    def decompress(self, summary_id: str, target_level: int = 0) -> DecompressionResult:
        return self.archive.decompress(summary_id, target_level)

    def search_archive(self, query: str, max_level: int = 3) -> ArchiveSearch:
        return self.archive.search_with_fallback(query, max_level)

    def budget_status(self) -> BudgetStatus:
        return BudgetStatus(current=self.store.total_chars(), max=self.config.budget_max)

    def stats(self) -> Dict[str, Any]:
        counts = self.store.count_by_kind()
        budget = self.budget_status()
        stats = {
            "conversation_id": self.conversation_id,
            "total_items": len(self.store),
            "raw_items": counts[ItemKind.RAW],
            "summaries": counts[ItemKind.SUMMARY],
            "items_by_level": self.store.count_by_level(),
            "summary_ratio": self.store.summary_ratio(),
            "budget": {
                "current": budget.current,
                "max": budget.max,
                "percentage": budget.percentage,
                "over_budget": budget.over_budget,
            },
            "archive": self.archive.stats(),
            "interest": self.analyzer.stats(),
        }
        if self.embedding_cache is not None:
            stats["embedding_cache"] = {
                "entries": len(self.embedding_cache),
                "hits": self.embedding_cache.hits,
                "misses": self.embedding_cache.misses,
            }
        return stats

    # --- lifecycle ---

    def clear(self) -> None:
        """Forget everything: live items, archive, tag history, caches."""
        self.store.clear()
        self.archive.clear()
        self.analyzer.reset()
        if self.embedding_cache is not None:
            self.embedding_cache.clear()
        self.latest_enrichment = None
        self.last_action = None
        logger.info("Conversation %s cleared", self.conversation_id)

    # --- export / import ---

    def export_state(self) -> Dict[str, Any]:
        """Items, archive and the thresholds they were built with."""
        return {
            "items": [item.to_dict() for item in self.store],
            "archive": [entry.to_dict() for entry in self.archive],
            "budget_max": self.config.budget_max,
            "thresholds": {
                "l1": self.config.l1_threshold,
                "hierarchical": self.config.hierarchical_threshold,
            },
        }

    @classmethod
    def from_state(
        cls,
        data: Dict[str, Any],
        config: Optional[MemoryConfig] = None,
        **kwargs,
    ) -> "ConversationMemory":
        """
        Rebuild a conversation from ``export_state()`` output.

        Never runs compression: the loaded items are exactly the exported
        ones. Raises StateError if the data violates the item/archive
        invariants.
        """
        try:
            thresholds = data["thresholds"]
            config = dataclasses.replace(
                config or MemoryConfig(),
                budget_max=int(data["budget_max"]),
                l1_threshold=int(thresholds["l1"]),
                hierarchical_threshold=float(thresholds["hierarchical"]),
            )
            items = [MemoryItem.from_dict(d) for d in data["items"]]
            entries = [ArchiveEntry.from_dict(d) for d in data["archive"]]
        except (KeyError, TypeError, ValueError) as e:
            raise StateError(f"malformed memory state: {e}") from e

        _validate_state(items, entries)

        memory = cls(config=config, **kwargs)
        try:
            for item in items:
                memory.store.append(item)
            memory.archive.load(entries)
        except ValueError as e:
            raise StateError(str(e)) from e
        memory.store.bump_sequence([i.id for i in items] + [e.id for e in entries])
        for item in items:
            if item.kind is ItemKind.RAW:
                memory.analyzer.observe(item.topics, at=item.created_at)

        logger.info(
            "Imported conversation %s: %d items, %d archived",
            memory.conversation_id,
            len(items),
            len(entries),
        )
        return memory


def _validate_state(items: List[MemoryItem], entries: List[ArchiveEntry]) -> None:
    live = {item.id: item for item in items}
    archived: Dict[str, ArchiveEntry] = {}
    for entry in entries:
        if entry.id in archived or entry.id in live:
            raise StateError(f"duplicate id {entry.id!r}")
        archived[entry.id] = entry
    if len(live) != len(items):
        raise StateError("duplicate live item ids")

    known = {**archived, **live}
    for node in known.values():
        for cover_id in node.covers:
            child = archived.get(cover_id)
            if child is None:
                raise StateError(f"{node.id!r} covers {cover_id!r}, which is not archived")
            if child.replaced_by != node.id:
                raise StateError(
                    f"{cover_id!r} is replaced by {child.replaced_by!r}, not {node.id!r}"
                )
            if child.level != node.level - 1:
                raise StateError(
                    f"level {node.level} summary {node.id!r} covers level {child.level} item"
                )

    for entry in entries:
        replacer = known.get(entry.replaced_by)
        if replacer is None or entry.id not in replacer.covers:
            raise StateError(f"archived {entry.id!r} has no replacing summary")


class MemoryRegistry:
    """One independent ConversationMemory per conversation id."""

    def __init__(self, factory: Optional[Callable[[str], ConversationMemory]] = None):
        self._factory = factory or (lambda cid: ConversationMemory(conversation_id=cid))
        self._conversations: Dict[str, ConversationMemory] = {}

    def get(self, conversation_id: str) -> ConversationMemory:
        memory = self._conversations.get(conversation_id)
        if memory is None:
            memory = self._factory(conversation_id)
            self._conversations[conversation_id] = memory
            logger.debug("Created memory for conversation %s", conversation_id)
        return memory

    def drop(self, conversation_id: str) -> bool:
        return self._conversations.pop(conversation_id, None) is not None

    def __contains__(self, conversation_id: str) -> bool:
        return conversation_id in self._conversations

    def __len__(self) -> int:
        return len(self._conversations)

    def conversation_ids(self) -> List[str]:
        return list(self._conversations)
