"""
Tests for the archive: storage, decompression and fallback search.
"""

import pytest

from conftest import make_raw, make_summary

from hierarchical_memory.archive import Archive
from hierarchical_memory.exceptions import BrokenChain, NotFound


def _pyramid():
    """
    l2_a (live) covers l1_a, l1_b (archived); each covers two archived raws.
    """
    archive = Archive()
    raws = [make_raw(f"msg_{i}", text) for i, text in enumerate([
        "we planned the trip to lisbon",
        "flights booked for march",
        "the zeppelin museum is closed",
        "hotel near the river",
    ])]
    l1_a = make_summary("l1_a", 1, "[L1] trip planning", ["msg_0", "msg_1"])
    l1_b = make_summary("l1_b", 1, "[L1] sights and hotel", ["msg_2", "msg_3"])
    l2_a = make_summary("l2_a", 2, "[L2] travel", ["l1_a", "l1_b"])
    archive.archive(l1_a, originals=raws[:2])
    archive.archive(l1_b, originals=raws[2:])
    archive.archive(l2_a, originals=[l1_a, l1_b])
    return archive


class TestArchiveStorage:
    def test_originals_tagged_with_replacer(self):
        archive = _pyramid()
        assert archive.get("msg_0").replaced_by == "l1_a"
        assert archive.get("l1_b").replaced_by == "l2_a"
        assert [e.id for e in archive.replaced_by("l2_a")] == ["l1_a", "l1_b"]
        assert len(archive) == 6

    def test_double_archive_rejected(self):
        archive = _pyramid()
        with pytest.raises(ValueError):
            archive.archive(make_summary("l1_x", 1, "x", ["msg_0"]), originals=[make_raw("msg_0", "dup")])

    def test_get_unknown_raises_not_found(self):
        with pytest.raises(NotFound) as exc:
            Archive().get("missing")
        assert exc.value.where == "archive"

    def test_clear(self):
        archive = _pyramid()
        archive.clear()
        assert len(archive) == 0
        assert not archive.knows("l2_a")


class TestDecompression:
    def test_live_summary_to_raw(self):
        archive = _pyramid()
        result = archive.decompress("l2_a", 0)
        assert [i.id for i in result.items] == ["msg_0", "msg_1", "msg_2", "msg_3"]
        assert result.level == 0
        assert result.complete
        assert result.path[0] == "L2: l2_a"

    def test_one_level_down(self):
        archive = _pyramid()
        result = archive.decompress("l2_a", 1)
        assert [i.id for i in result.items] == ["l1_a", "l1_b"]

    def test_archived_summary(self):
        archive = _pyramid()
        result = archive.decompress("l1_b", 0)
        assert [i.id for i in result.items] == ["msg_2", "msg_3"]

    def test_already_at_target_level(self):
        archive = _pyramid()
        result = archive.decompress("msg_2", 0)
        assert [i.id for i in result.items] == ["msg_2"]

    def test_unknown_id(self):
        with pytest.raises(NotFound):
            _pyramid().decompress("nope", 0)

    def test_broken_chain_carries_partial_result(self):
        archive = Archive()
        raws = [make_raw("msg_0", "first"), make_raw("msg_1", "second")]
        l1_a = make_summary("l1_a", 1, "a", ["msg_0", "msg_1"])
        l2_a = make_summary("l2_a", 2, "top", ["l1_a", "l1_lost"])
        l3_a = make_summary("l3_a", 3, "root", ["l2_a"])
        archive.archive(l1_a, originals=raws)
        archive.archive(l2_a, originals=[l1_a])
        archive.archive(l3_a, originals=[l2_a])

        with pytest.raises(BrokenChain) as exc:
            archive.decompress("l2_a", 0)
        assert exc.value.broken_id == "l1_lost"
        assert [i.id for i in exc.value.result.items] == ["msg_0", "msg_1"]

        partial = archive.decompress("l2_a", 0, strict=False)
        assert not partial.complete
        assert partial.broken_ids == ["l1_lost"]

    def test_descendant_ids(self):
        archive = _pyramid()
        assert set(archive.descendant_ids("l2_a")) == {
            "l1_a", "l1_b", "msg_0", "msg_1", "msg_2", "msg_3",
        }
        assert archive.descendant_ids("unknown") == []


class TestArchiveSearch:
    def test_match_at_max_level(self):
        result = _pyramid().search_with_fallback("hotel", max_level=1)
        assert [e.id for e in result.results] == ["l1_b"]
        assert result.descended is False

    def test_descends_when_needed(self):
        result = _pyramid().search_with_fallback("zeppelin", max_level=2)
        assert [e.id for e in result.results] == ["msg_2"]
        assert result.descended is True
        assert result.path[-1] == "L0: 1 results"

    def test_no_match(self):
        result = _pyramid().search_with_fallback("submarine")
        assert result.results == []
        assert result.descended is False

    def test_stats(self):
        stats = _pyramid().stats()
        assert stats["total_items"] == 6
        assert stats["items_by_level"] == {0: 4, 1: 2}
