"""
Character budget helpers.

Reports budget usage of the item store and splits the context-assembly
budget between the always-included recent turns and the summaries.
"""

from dataclasses import dataclass
from typing import Iterable

from .models import MemoryItem

SUMMARY_HEADER = "[Memory Summaries]"
RECENT_HEADER = "[Recent Conversation]"
SECTION_SEPARATOR = "\n\n"


def total_chars(items: Iterable[MemoryItem]) -> int:
    """Sum of cached character counts."""
    return sum(item.char_count for item in items)


@dataclass
class BudgetStatus:
    """Live budget usage of an item store."""

    current: int
    max: int

    @property
    def percentage(self) -> int:
        return round(self.current / self.max * 100) if self.max else 0

    @property
    def over_budget(self) -> bool:
        return self.current > self.max

    @property
    def remaining(self) -> int:
        return max(0, self.max - self.current)


@dataclass
class ContextBudget:
    """Budget split for one context assembly, in rendered characters."""

    total: int
    recent_chars: int  # rendered recent block (may exceed total)
    summary_max: int   # left for summary lines, section overhead already paid


def summary_line(level: int, content: str) -> str:
    return f"(L{level}) {content}"


def recent_line(item: MemoryItem) -> str:
    return f"{item.role}: {item.text}"


def recent_block_chars(recent_items: Iterable[MemoryItem]) -> int:
    """Rendered size of the recent block: header plus one line per turn."""
    lines = [recent_line(item) for item in recent_items]
    if not lines:
        return 0
    return len(RECENT_HEADER) + sum(len(line) + 1 for line in lines)


def summary_line_chars(level: int, content: str) -> int:
    """What one summary costs inside the summary block, newline included."""
    return len(summary_line(level, content)) + 1


def calculate_context_budget(max_chars: int, recent_items: Iterable[MemoryItem]) -> ContextBudget:
    """
    Split ``max_chars`` between recent turns and summaries.

    Recent turns are always included, so their rendered block is taken off
    the top. The summary block pays for its header and, when a recent block
    follows, the blank line between them:

        summary_max = max(0, max_chars - recent_chars - overhead)
    """
    recent = recent_block_chars(recent_items)
    overhead = len(SUMMARY_HEADER) + (len(SECTION_SEPARATOR) if recent else 0)
    return ContextBudget(
        total=max_chars,
        recent_chars=recent,
        summary_max=max(0, max_chars - recent - overhead),
    )
