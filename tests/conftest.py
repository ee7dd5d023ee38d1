"""
Shared pytest configuration.

conftest.py is loaded automatically by pytest. Adding ``src`` to sys.path
here lets every test import ``hierarchical_memory`` directly without
installing the package first.
"""

import itertools
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

from hierarchical_memory.archive import Archive  # noqa: E402
from hierarchical_memory.config import MemoryConfig  # noqa: E402
from hierarchical_memory.item_store import ItemStore  # noqa: E402
from hierarchical_memory.models import ItemKind, MemoryItem  # noqa: E402
from hierarchical_memory.summarizer import TruncatingSummarizer  # noqa: E402

T0 = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class ScriptedRandom:
    """Random source replaying a fixed sequence (cycled)."""

    def __init__(self, values):
        self._values = itertools.cycle(values)

    def random(self) -> float:
        return next(self._values)


def make_raw(item_id: str, text: str, topics=(), role: str = "user", at: datetime = T0) -> MemoryItem:
    return MemoryItem(
        id=item_id,
        kind=ItemKind.RAW,
        level=0,
        text=text,
        created_at=at,
        topics=set(topics),
        role=role,
    )


def make_summary(item_id: str, level: int, text: str, covers, topics=(), at: datetime = T0) -> MemoryItem:
    return MemoryItem(
        id=item_id,
        kind=ItemKind.SUMMARY,
        level=level,
        text=text,
        created_at=at,
        topics=set(topics),
        covers=list(covers),
        role="summary",
    )


def message(n: int, length: int = 150) -> str:
    """Deterministic message of exactly ``length`` chars."""
    head = f"message {n:02d} about the weather and travel plans "
    return (head * (length // len(head) + 1))[:length]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def summarizer():
    return TruncatingSummarizer(max_chars=120)


@pytest.fixture
def config():
    return MemoryConfig(budget_max=2000, l1_threshold=5, hierarchical_threshold=0.5)


@pytest.fixture
def store():
    return ItemStore()


@pytest.fixture
def archive():
    return Archive()
