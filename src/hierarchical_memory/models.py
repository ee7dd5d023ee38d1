"""Core memory data structures."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Set


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ItemKind(Enum):
    """Raw conversation turn or generated summary."""
    RAW = "raw"
    SUMMARY = "summary"


class ResultSource(Enum):
    """Where a search result came from."""
    LOCAL = "local"        # item store or archive
    FALLBACK = "fallback"  # external long-term memory


class ActionKind(Enum):
    """What a compression pass did."""
    NONE = "none"
    CREATED_LEVEL1 = "created_level1"                        # R1
    REPLACED_RAW_WITH_SUMMARY = "replaced_raw_with_summary"  # R2
    MERGED_TO_HIGHER_LEVEL = "merged_to_higher_level"        # R3


@dataclass
class MemoryItem:
    """A raw turn (level 0) or a summary (level >= 1)."""

    id: str
    kind: ItemKind
    level: int
    text: str
    created_at: datetime = field(default_factory=utcnow)
    topics: Set[str] = field(default_factory=set)
    covers: List[str] = field(default_factory=list)
    role: str = "user"

    # Relevance signals, all in [0, 1]
    authority: float = 0.5
    user_feedback: float = 0.5
    access_cost: float = 0.1

    char_count: int = field(init=False)

    def __post_init__(self):
        if self.level < 0:
            raise ValueError(f"level must be >= 0, got {self.level}")
        if (self.level == 0) != (self.kind is ItemKind.RAW):
            raise ValueError(
                f"item {self.id!r}: level 0 is reserved for raw items "
                f"(kind={self.kind.value}, level={self.level})"
            )
        if self.kind is ItemKind.RAW and self.covers:
            raise ValueError(f"raw item {self.id!r} cannot cover other items")
        self.topics = set(self.topics)
        self.char_count = len(self.text)

    @property
    def is_summary(self) -> bool:
        return self.kind is ItemKind.SUMMARY

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a JSON-friendly dictionary (stable ordering)."""
        return {
            "id": self.id,
            "kind": self.kind.value,
            "level": self.level,
            "text": self.text,
            "char_count": self.char_count,
            "created_at": self.created_at.isoformat(),
            "topics": sorted(self.topics),
            "covers": list(self.covers),
            "role": self.role,
            "authority": self.authority,
            "user_feedback": self.user_feedback,
            "access_cost": self.access_cost,
        }

    @classmethod
    def _fields_from_dict(cls, data: Dict[str, Any]) -> Dict[str, Any]:
        return dict(
            id=data["id"],
            kind=ItemKind(data["kind"]),
            level=data["level"],
            text=data["text"],
            created_at=datetime.fromisoformat(data["created_at"]),
            topics=set(data.get("topics", [])),
            covers=list(data.get("covers", [])),
            role=data.get("role", "user"),
            authority=data.get("authority", 0.5),
            user_feedback=data.get("user_feedback", 0.5),
            access_cost=data.get("access_cost", 0.1),
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MemoryItem":
        """Reconstruct from dictionary."""
        return cls(**cls._fields_from_dict(data))


@dataclass
class ArchiveEntry(MemoryItem):
    """An item evicted from the store, tagged with the summary that replaced it."""

    replaced_by: str = ""

    @classmethod
    def from_item(cls, item: MemoryItem, replaced_by: str) -> "ArchiveEntry":
        return cls(
            id=item.id,
            kind=item.kind,
            level=item.level,
            text=item.text,
            created_at=item.created_at,
            topics=set(item.topics),
            covers=list(item.covers),
            role=item.role,
            authority=item.authority,
            user_feedback=item.user_feedback,
            access_cost=item.access_cost,
            replaced_by=replaced_by,
        )

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["replaced_by"] = self.replaced_by
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ArchiveEntry":
        return cls(
            **cls._fields_from_dict(data),
            replaced_by=data["replaced_by"],
        )


@dataclass
class SearchResult:
    """A ranked search hit. Ephemeral, never persisted."""

    id: str
    content: str
    level: int
    relevance_score: float
    source: ResultSource = ResultSource.LOCAL
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def decompressed(self) -> bool:
        """True when the hit was only reachable by decompressing a summary."""
        return bool(self.metadata.get("decompressed", False))


@dataclass
class Replacement:
    """One summary and the ids it replaced."""

    with_id: str
    replaces: List[str]


@dataclass
class CompressionAction:
    """Outcome of one orchestrator pass.

    ``kind`` is the last step applied during the pass; ``summaries`` and
    ``evicted`` accumulate across every step of the pass.
    """

    kind: ActionKind = ActionKind.NONE
    summaries: List[MemoryItem] = field(default_factory=list)
    evicted: List[str] = field(default_factory=list)
    replacements: List[Replacement] = field(default_factory=list)
    steps: List[ActionKind] = field(default_factory=list)
    budget_max: int = 0
    total_chars_after: int = 0
    budget_unsatisfiable: bool = False
    error: Optional[str] = None

    @property
    def shortfall(self) -> int:
        """Characters still over budget after the pass (0 when within budget)."""
        return max(0, self.total_chars_after - self.budget_max)

    def record(self, kind: ActionKind, summary: MemoryItem, replaced: List[str]) -> None:
        self.kind = kind
        self.steps.append(kind)
        self.summaries.append(summary)
        self.evicted.extend(replaced)
        self.replacements.append(Replacement(with_id=summary.id, replaces=list(replaced)))
