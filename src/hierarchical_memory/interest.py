"""
Interest analyzer: decides whether an incoming message deserves background
retrieval.

Each tag of the message gets an interest score:

    0.3 * historical frequency   (relative to the most frequent tag ever seen)
  + 0.4 * contextual relevance   (1.0 on substring match, token overlap otherwise)
  + 0.2 * recency                (exponential decay, 24h half-life by default)
  + 0.1 * subject complexity     (fixed bonus for "complex" subjects)
  + jitter                       (uniform in [0, interest_jitter))

A tag triggers a search when its score exceeds ``interest_threshold``, or
independently with probability ``random_search_chance`` so that topics
scoring just under the threshold still get retrieved once in a while.
"""

import logging
import random
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional

from .config import MemoryConfig
from .models import utcnow
from .topics import COMPLEX_SUBJECTS, generate_tags, tokenize

logger = logging.getLogger(__name__)

FREQUENCY_WEIGHT = 0.3
RELEVANCE_WEIGHT = 0.4
RECENCY_WEIGHT = 0.2
COMPLEXITY_WEIGHT = 0.1

COMPLEX_SCORE = 0.8
SIMPLE_SCORE = 0.3

PAST_REFERENCE_MARKERS = ("remember", "earlier", "before", "last time", "discussed", "discussion")


@dataclass
class SearchTrigger:
    tag: str
    score: float
    reason: str
    priority: str  # low | medium | high
    random: bool = False  # fired on the random channel only


@dataclass
class MessageAnalysis:
    content: str
    tags: List[str] = field(default_factory=list)
    interest_scores: Dict[str, float] = field(default_factory=dict)
    triggers: List[SearchTrigger] = field(default_factory=list)
    context_gaps: List[str] = field(default_factory=list)


class InterestAnalyzer:
    """
    Scores messages against the conversation's tag history.

    ``rng`` only needs a ``random()`` method; pass a seeded ``random.Random``
    (or a scripted stub) for deterministic tests.
    """

    def __init__(
        self,
        config: Optional[MemoryConfig] = None,
        rng=None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.config = config or MemoryConfig()
        self._rng = rng if rng is not None else random.Random()
        self._clock = clock
        self._frequency: Dict[str, int] = {}
        self._last_seen: Dict[str, datetime] = {}

    # --- history ---

    def observe(self, tags: Iterable[str], at: Optional[datetime] = None) -> None:
        """Record that ``tags`` appeared (frequency and recency)."""
        at = at or self._clock()
        for tag in tags:
            tag = tag.lower()
            self._frequency[tag] = self._frequency.get(tag, 0) + 1
            previous = self._last_seen.get(tag)
            if previous is None or at > previous:
                self._last_seen[tag] = at

    def reset(self) -> None:
        self._frequency.clear()
        self._last_seen.clear()

    # --- scoring factors ---

    def tag_frequency(self, tag: str) -> float:
        if not self._frequency:
            return 0.0
        max_freq = max(self._frequency.values())
        return self._frequency.get(tag.lower(), 0) / max_freq if max_freq else 0.0

    @staticmethod
    def contextual_relevance(content: str, tag: str) -> float:
        content_lower = content.lower()
        tag_lower = tag.lower()
        if tag_lower in content_lower:
            return 1.0

        words = tokenize(content_lower)
        tag_words = tokenize(tag_lower)
        if not tag_words:
            return 0.0
        matches = sum(
            1 for tw in tag_words
            if any(tw in w or w in tw for w in words)
        )
        return matches / len(tag_words)

    def tag_recency(self, tag: str) -> float:
        last = self._last_seen.get(tag.lower())
        if last is None:
            return 0.0
        hours = max(0.0, (self._clock() - last).total_seconds() / 3600)
        return 0.5 ** (hours / self.config.recency_half_life_hours)

    @staticmethod
    def subject_complexity(tag: str) -> float:
        return COMPLEX_SCORE if tag.lower() in COMPLEX_SUBJECTS else SIMPLE_SCORE

    def interest_score(self, content: str, tag: str) -> float:
        jitter = self._rng.random() * self.config.interest_jitter
        score = (
            self.tag_frequency(tag) * FREQUENCY_WEIGHT
            + self.contextual_relevance(content, tag) * RELEVANCE_WEIGHT
            + self.tag_recency(tag) * RECENCY_WEIGHT
            + self.subject_complexity(tag) * COMPLEXITY_WEIGHT
            + jitter
        )
        return min(1.0, score)

    # --- analysis ---

    def analyze(self, message: str) -> MessageAnalysis:
        """Tags, per-tag interest scores and the search triggers that fired."""
        analysis = MessageAnalysis(content=message, tags=generate_tags(message))
        threshold = self.config.interest_threshold

        for tag in analysis.tags:
            try:
                score = self.interest_score(message, tag)
            except Exception as e:
                logger.warning("Skipping tag %r: %s", tag, e)
                continue
            analysis.interest_scores[tag] = score

            over_threshold = score > threshold
            lucky = self._rng.random() < self.config.random_search_chance
            if over_threshold or lucky:
                analysis.triggers.append(
                    SearchTrigger(
                        tag=tag,
                        score=score,
                        reason=_search_reason(score, threshold),
                        priority=_priority(score),
                        random=not over_threshold,
                    )
                )

        analysis.context_gaps = _context_gaps(message, analysis.tags)
        logger.debug(
            "Analyzed message: %d tags, %d triggers",
            len(analysis.tags),
            len(analysis.triggers),
        )
        return analysis

    def stats(self, top: int = 10) -> dict:
        ranked = sorted(self._frequency.items(), key=lambda kv: (-kv[1], kv[0]))
        return {
            "total_tags": len(self._frequency),
            "most_frequent_tags": [
                {"tag": tag, "frequency": freq} for tag, freq in ranked[:top]
            ],
            "search_threshold": self.config.interest_threshold,
            "random_search_chance": self.config.random_search_chance,
        }


def _search_reason(score: float, threshold: float) -> str:
    if score <= threshold:
        return "random_exploration"
    if score > 0.9:
        return "highly_relevant"
    if score > 0.8:
        return "complex_subject"
    return "central_subject"


def _priority(score: float) -> str:
    if score > 0.8:
        return "high"
    if score > 0.6:
        return "medium"
    return "low"


def _context_gaps(content: str, tags: List[str]) -> List[str]:
    gaps: List[str] = []
    lowered = content.lower()
    if "?" in content or any(m in lowered for m in PAST_REFERENCE_MARKERS):
        gaps.append("historical_context")
    if any(tag in COMPLEX_SUBJECTS for tag in tags):
        gaps.append("technical_details")
    return gaps
