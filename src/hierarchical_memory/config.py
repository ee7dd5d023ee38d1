"""
Memory configuration: budget, compression thresholds, search and enrichment knobs.
"""

import os
from dataclasses import dataclass

from dotenv import load_dotenv

from .exceptions import ConfigurationError

ENV_PREFIX = "MEMORY_"


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


@dataclass
class MemoryConfig:
    """Configuration for one conversation's hierarchical memory."""

    # Budget (characters held by the item store)
    budget_max: int = 10_000

    # R1: raw items (beyond the reserved tail) that trigger a level-1 summary
    l1_threshold: int = 5
    # Most recent raw items never touched by compression
    reserved_recent_raw: int = 2
    # R3: summary ratio above which summaries are merged upwards
    hierarchical_threshold: float = 0.5
    summarizer_timeout: float = 30.0

    # Tiered search
    search_threshold_results: int = 3
    max_search_results: int = 10
    relevance_floor: float = 0.1
    level_bonus_max_level: int = 3
    enable_fallback: bool = True

    # Interest analysis
    interest_threshold: float = 0.7
    random_search_chance: float = 0.10
    interest_jitter: float = 0.1
    recency_half_life_hours: float = 24.0
    enrichment_budget_ms: int = 50

    # Context assembly
    recent_raw_count: int = 8
    default_context_chars: int = 5000

    # Semantic rerank
    embedding_weight: float = 0.3
    embedding_cache_size: int = 1000

    def __post_init__(self):
        if self.budget_max <= 0:
            raise ConfigurationError(f"budget_max must be positive, got {self.budget_max}")
        if self.l1_threshold < 1:
            raise ConfigurationError(f"l1_threshold must be >= 1, got {self.l1_threshold}")
        if self.reserved_recent_raw < 0:
            raise ConfigurationError("reserved_recent_raw must be >= 0")
        for name in (
            "hierarchical_threshold",
            "relevance_floor",
            "interest_threshold",
            "random_search_chance",
            "interest_jitter",
            "embedding_weight",
        ):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ConfigurationError(f"{name} must be within [0, 1], got {value}")

    @property
    def enrichment_budget(self) -> float:
        """Enrichment wall-clock budget in seconds."""
        return self.enrichment_budget_ms / 1000.0

    @classmethod
    def from_env(cls) -> "MemoryConfig":
        """Load configuration from environment variables (and a .env file)."""
        load_dotenv()
        p = ENV_PREFIX
        return cls(
            budget_max=int(os.getenv(f"{p}BUDGET_MAX", "10000")),
            l1_threshold=int(os.getenv(f"{p}L1_THRESHOLD", "5")),
            reserved_recent_raw=int(os.getenv(f"{p}RESERVED_RECENT_RAW", "2")),
            hierarchical_threshold=float(
                os.getenv(f"{p}HIERARCHICAL_THRESHOLD", "0.5")
            ),
            summarizer_timeout=float(os.getenv(f"{p}SUMMARIZER_TIMEOUT", "30")),
            search_threshold_results=int(
                os.getenv(f"{p}SEARCH_THRESHOLD_RESULTS", "3")
            ),
            max_search_results=int(os.getenv(f"{p}MAX_SEARCH_RESULTS", "10")),
            relevance_floor=float(os.getenv(f"{p}RELEVANCE_FLOOR", "0.1")),
            level_bonus_max_level=int(os.getenv(f"{p}LEVEL_BONUS_MAX_LEVEL", "3")),
            enable_fallback=_env_bool(f"{p}ENABLE_FALLBACK", "true"),
            interest_threshold=float(os.getenv(f"{p}INTEREST_THRESHOLD", "0.7")),
            random_search_chance=float(os.getenv(f"{p}RANDOM_SEARCH_CHANCE", "0.1")),
            interest_jitter=float(os.getenv(f"{p}INTEREST_JITTER", "0.1")),
            recency_half_life_hours=float(
                os.getenv(f"{p}RECENCY_HALF_LIFE_HOURS", "24")
            ),
            enrichment_budget_ms=int(os.getenv(f"{p}ENRICHMENT_BUDGET_MS", "50")),
            recent_raw_count=int(os.getenv(f"{p}RECENT_RAW_COUNT", "8")),
            default_context_chars=int(os.getenv(f"{p}DEFAULT_CONTEXT_CHARS", "5000")),
            embedding_weight=float(os.getenv(f"{p}EMBEDDING_WEIGHT", "0.3")),
            embedding_cache_size=int(os.getenv(f"{p}EMBEDDING_CACHE_SIZE", "1000")),
        )
