"""
End-to-end tests for ConversationMemory, persistence and the registry.
"""

import json
import logging
from unittest.mock import AsyncMock, MagicMock

import pytest
from langchain_core.messages import AIMessage, HumanMessage

from conftest import ScriptedRandom, message

from hierarchical_memory.config import MemoryConfig
from hierarchical_memory.engine import ConversationMemory, MemoryRegistry, estimate_authority
from hierarchical_memory.exceptions import StateError
from hierarchical_memory.models import ActionKind, ItemKind, ResultSource, SearchResult
from hierarchical_memory.persistence import dumps_state, load_state, save_state
from hierarchical_memory.summarizer import TruncatingSummarizer


def _memory(config, clock, **kwargs):
    kwargs.setdefault("summarizer", TruncatingSummarizer(max_chars=120))
    kwargs.setdefault("auto_enrich", False)
    return ConversationMemory(config=config, clock=clock, **kwargs)


async def _append_many(memory, start, count):
    ids, actions = [], []
    for n in range(start, start + count):
        actions.append(await memory.append(message(n)))
        ids.append(memory.store.raw_items()[-1].id)
    return ids, actions


# ── Scenario Tests ──


class TestScenarios:
    @pytest.mark.asyncio
    async def test_first_compression_covers_oldest_five(self, config, clock):
        memory = _memory(config, clock)

        ids, actions = await _append_many(memory, 1, 15)

        compressed = [a for a in actions if a.kind != ActionKind.NONE]
        first = compressed[0]
        assert actions.index(first) == 6  # 5 eligible + 2 reserved
        assert first.kind == ActionKind.CREATED_LEVEL1
        assert first.evicted == ids[:5]
        assert memory.store.total_chars() < 2000
        assert all(a.budget_unsatisfiable is False for a in actions)

    @pytest.mark.asyncio
    async def test_merge_of_two_oldest_level_one(self, config, clock):
        memory = _memory(config, clock)
        ids, actions = await _append_many(memory, 1, 17)

        level_one = [s for a in actions for s in a.summaries if s.level == 1]
        merge = actions[-1]

        assert merge.steps == [ActionKind.CREATED_LEVEL1, ActionKind.MERGED_TO_HIGHER_LEVEL]
        merged = merge.summaries[-1]
        assert merged.level == 2
        assert merged.covers == [level_one[0].id, level_one[1].id]
        for original in level_one[:2]:
            assert memory.archive.get(original.id).replaced_by == merged.id
        assert sum(1 for a in actions if ActionKind.MERGED_TO_HIGHER_LEVEL in a.steps) == 1

    @pytest.mark.asyncio
    async def test_fewer_than_threshold_never_compresses(self, clock):
        config = MemoryConfig(reserved_recent_raw=0, l1_threshold=5)
        memory = _memory(config, clock)
        _, actions = await _append_many(memory, 1, 4)
        assert all(a.kind == ActionKind.NONE for a in actions)

    @pytest.mark.asyncio
    async def test_oversized_message_does_not_crash(self, clock):
        memory = _memory(MemoryConfig(budget_max=100), clock)
        action = await memory.append("x" * 500)
        assert action.budget_unsatisfiable is True
        await memory.append("still accepting messages")
        assert len(memory.store) == 2

    @pytest.mark.asyncio
    async def test_no_message_is_lost(self, config, clock):
        memory = _memory(config, clock)
        ids, _ = await _append_many(memory, 1, 40)

        recovered = {i.id for i in memory.store.raw_items()}
        for summary in memory.store.summaries():
            recovered.update(i.id for i in memory.decompress(summary.id, 0).items)
        assert recovered == set(ids)

    @pytest.mark.asyncio
    async def test_empty_message_rejected(self, config, clock):
        memory = _memory(config, clock)
        with pytest.raises(ValueError):
            await memory.append("   ")


# ── Ingestion Tests ──


class TestIngestion:
    @pytest.mark.asyncio
    async def test_add_langchain_messages(self, config, clock):
        memory = _memory(config, clock)
        await memory.add_message(HumanMessage(content="How does compression work?"))
        await memory.add_message(AIMessage(content=[
            {"type": "thinking", "thinking": "internal"},
            {"type": "text", "text": "It summarizes old turns."},
        ]))
        user, assistant = memory.store.raw_items()
        assert user.role == "user"
        assert assistant.role == "assistant"
        assert assistant.text == "It summarizes old turns."
        assert "compression" in user.topics

    def test_authority_estimate(self):
        assert estimate_authority("short", "user") < estimate_authority("short", "assistant")
        assert estimate_authority("word " * 1000, "assistant") == 1.0

    @pytest.mark.asyncio
    async def test_user_append_schedules_enrichment(self, config, clock):
        memory = _memory(config, clock, auto_enrich=True, rng=ScriptedRandom([0.5]))
        await memory.append("tell me about hierarchical compression", role="user")
        await memory.drain()
        assert memory.latest_enrichment is not None
        assert memory.latest_enrichment.message == "tell me about hierarchical compression"

    @pytest.mark.asyncio
    async def test_assistant_append_does_not_enrich(self, config, clock):
        memory = _memory(config, clock, auto_enrich=True)
        await memory.append("here is my answer", role="assistant")
        await memory.drain()
        assert memory.latest_enrichment is None

    @pytest.mark.asyncio
    async def test_background_failure_is_logged(self, config, clock, caplog):
        memory = _memory(config, clock, auto_enrich=True)
        memory.analyzer.analyze = MagicMock(side_effect=RuntimeError("analyzer broke"))

        with caplog.at_level(logging.ERROR, logger="hierarchical_memory.engine"):
            await memory.append("tell me about compression", role="user")
            await memory.drain()

        assert "analyzer broke" in caplog.text
        assert memory.latest_enrichment is None
        assert len(memory.store) == 1


# ── Enrichment Tests ──


class TestEnrichment:
    @pytest.mark.asyncio
    async def test_local_results_and_background_fallback(self, config, clock):
        external = MagicMock()
        hit = SearchResult(id="ext_1", content="older compression notes", level=0, relevance_score=0.6)
        external.search = AsyncMock(return_value=[hit])
        # zero jitter, always on the random channel
        memory = _memory(config, clock, external_search=external, rng=ScriptedRandom([0.0]))
        await memory.append("compression settings were changed")

        enrichment = await memory.enrich("Tell me about compression again")

        assert enrichment.triggered
        assert [r.id for r in enrichment.results] == [memory.store.raw_items()[0].id]
        assert enrichment.fallback_task is not None
        await memory.drain()
        assert not enrichment.fallback_pending
        merged = enrichment.all_results()
        assert {r.id for r in merged} == {memory.store.raw_items()[0].id, "ext_1"}
        assert next(r for r in merged if r.id == "ext_1").source == ResultSource.FALLBACK

        context = memory.build_context("compression", 5000)
        assert "older compression notes" in context

    @pytest.mark.asyncio
    async def test_no_trigger_no_search(self, config, clock):
        external = MagicMock()
        external.search = AsyncMock(return_value=[])
        memory = _memory(config, clock, external_search=external, rng=ScriptedRandom([0.5]))
        enrichment = await memory.enrich("pasta for dinner")
        assert not enrichment.triggered
        assert enrichment.results == []
        assert enrichment.fallback_task is None
        external.search.assert_not_awaited()


# ── Retrieval Tests ──


class TestRetrieval:
    @pytest.mark.asyncio
    async def test_recall_finds_compressed_message(self, clock):
        config = MemoryConfig(budget_max=2000)
        memory = _memory(config, clock, summarizer=TruncatingSummarizer(max_chars=20))
        await memory.append("we talked about the zeppelin museum in friedrichshafen")
        for n in range(6):
            await memory.append(message(n))

        outcome = await memory.recall("zeppelin")

        assert "msg_000001" not in memory.store
        hit = next(r for r in outcome.results if r.id == "msg_000001")
        assert hit.decompressed is True
        assert outcome.decompressed is True

    @pytest.mark.asyncio
    async def test_recall_reranks_with_embeddings(self, config, clock):
        vectors = {"alpha": [1.0, 0.0], "alpha one": [0.0, 1.0], "alpha two": [1.0, 0.0]}
        embedder = MagicMock()
        embedder.embed = AsyncMock(side_effect=lambda text: vectors[text])
        memory = _memory(config, clock, embedder=embedder)
        await memory.append("alpha one")
        await memory.append("alpha two")

        outcome = await memory.recall("alpha")

        assert [r.id for r in outcome.results] == ["msg_000002", "msg_000001"]
        assert outcome.results[0].metadata["similarity"] == pytest.approx(1.0)

    @pytest.mark.asyncio
    async def test_stats(self, config, clock):
        memory = _memory(config, clock)
        await _append_many(memory, 1, 7)
        stats = memory.stats()
        assert stats["total_items"] == 3
        assert stats["items_by_level"] == {0: 2, 1: 1}
        assert stats["budget"]["max"] == 2000
        assert stats["archive"]["total_items"] == 5
        assert stats["summary_ratio"] == pytest.approx(1 / 3)

    @pytest.mark.asyncio
    async def test_clear(self, config, clock):
        memory = _memory(config, clock)
        await _append_many(memory, 1, 7)
        memory.clear()
        assert len(memory.store) == 0
        assert len(memory.archive) == 0
        assert memory.stats()["interest"]["total_tags"] == 0


# ── Persistence Tests ──


class TestPersistence:
    @pytest.mark.asyncio
    async def test_export_import_export_is_identical(self, config, clock):
        memory = _memory(config, clock)
        await _append_many(memory, 1, 23)

        exported = dumps_state(memory.export_state())
        restored = ConversationMemory.from_state(json.loads(exported), summarizer=TruncatingSummarizer())

        assert dumps_state(restored.export_state()) == exported

    @pytest.mark.asyncio
    async def test_import_never_recompresses(self, clock):
        config = MemoryConfig(budget_max=2000, reserved_recent_raw=0)
        memory = _memory(MemoryConfig(budget_max=2000, l1_threshold=50), clock)
        await _append_many(memory, 1, 8)
        state = memory.export_state()
        state["thresholds"]["l1"] = 5

        summarizer = MagicMock()
        summarizer.summarize = AsyncMock(return_value="[L1] never")
        restored = ConversationMemory.from_state(state, config=config, summarizer=summarizer)

        assert len(restored.store) == 8
        summarizer.summarize.assert_not_awaited()
        assert restored.config.l1_threshold == 5

    @pytest.mark.asyncio
    async def test_ids_continue_after_import(self, config, clock):
        memory = _memory(config, clock)
        await _append_many(memory, 1, 7)
        restored = ConversationMemory.from_state(memory.export_state(), auto_enrich=False)
        await restored.append("after import")
        assert restored.store.raw_items()[-1].id == "msg_000009"

    def test_rejects_broken_state(self):
        state = {
            "items": [{
                "id": "l1_000001", "kind": "summary", "level": 1, "text": "s",
                "created_at": "2025-01-01T12:00:00+00:00", "covers": ["msg_x"],
            }],
            "archive": [],
            "budget_max": 1000,
            "thresholds": {"l1": 5, "hierarchical": 0.5},
        }
        with pytest.raises(StateError):
            ConversationMemory.from_state(state)

    def test_rejects_malformed_state(self):
        with pytest.raises(StateError):
            ConversationMemory.from_state({"items": []})

    @pytest.mark.asyncio
    async def test_save_and_load(self, tmp_path, config, clock):
        memory = _memory(config, clock)
        await _append_many(memory, 1, 12)
        path = save_state(memory, tmp_path / "memory.json")

        restored = load_state(path, auto_enrich=False)
        save_state(restored, tmp_path / "again.json")

        assert (tmp_path / "again.json").read_bytes() == path.read_bytes()
        assert restored.store.count_by_kind()[ItemKind.SUMMARY] == 2


# ── Registry Tests ──


class TestMemoryRegistry:
    @pytest.mark.asyncio
    async def test_conversations_are_independent(self, clock):
        registry = MemoryRegistry(
            lambda cid: ConversationMemory(conversation_id=cid, clock=clock, auto_enrich=False)
        )
        await registry.get("a").append("hello from a")
        assert len(registry.get("a").store) == 1
        assert len(registry.get("b").store) == 0
        assert registry.get("a") is registry.get("a")
        assert len(registry) == 2

    def test_drop(self):
        registry = MemoryRegistry()
        registry.get("a")
        assert registry.drop("a") is True
        assert "a" not in registry
        assert registry.drop("a") is False
