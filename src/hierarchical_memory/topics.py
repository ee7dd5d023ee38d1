"""
Cheap lexical heuristics: topic extraction, query keywords and interest tags.

None of this is learned. Fixed dictionaries plus word frequency keep the
per-message cost in the microsecond range so it fits inside the enrichment
latency budget.
"""

import re
from collections import Counter
from typing import Iterable, List

STOP_WORDS = frozenset({
    "a", "about", "after", "again", "all", "also", "an", "and", "any", "are",
    "as", "at", "be", "because", "been", "before", "being", "but", "by", "can",
    "could", "did", "do", "does", "doing", "for", "from", "had", "has", "have",
    "having", "he", "her", "here", "hers", "him", "his", "how", "i", "if", "in",
    "into", "is", "it", "its", "just", "like", "me", "more", "most", "my", "no",
    "not", "now", "of", "on", "once", "only", "or", "other", "our", "out",
    "over", "own", "same", "she", "should", "so", "some", "such", "than",
    "that", "the", "their", "them", "then", "there", "these", "they", "this",
    "those", "through", "to", "too", "under", "until", "up", "very", "was",
    "we", "were", "what", "when", "where", "which", "while", "who", "whom",
    "why", "will", "with", "would", "you", "your", "yours", "yourself",
    "really", "still", "thing", "things", "something", "anything", "maybe",
})

TECHNICAL_KEYWORDS = (
    "memory", "hierarchical", "compression", "summary", "budget", "system",
    "algorithm", "data", "context", "search", "intelligence", "artificial",
    "learning", "optimization", "performance", "efficiency", "analysis",
    "semantic", "embedding",
)

CONCEPT_KEYWORDS = (
    "discussion", "conversation", "exchange", "dialogue", "communication",
    "reflection", "thought", "idea", "concept", "notion", "theory", "practice",
    "application", "usage", "behaviour", "behavior", "mechanism",
)

COMPLEX_SUBJECTS = frozenset({
    "hierarchical", "compression", "semantic", "embedding", "algorithm",
    "optimization", "intelligence", "artificial", "learning", "mechanism",
})

_WORD_RE = re.compile(r"[^\w\s]", re.UNICODE)


def tokenize(text: str) -> List[str]:
    """Lower-case, strip punctuation and split on whitespace."""
    if not text:
        return []
    return _WORD_RE.sub(" ", text.lower()).split()


def _significant_words(text: str, min_len: int) -> List[str]:
    return [
        w for w in tokenize(text)
        if len(w) >= min_len and w not in STOP_WORDS and not w.isdigit()
    ]


def extract_topics(texts: Iterable[str], limit: int = 6) -> List[str]:
    """
    Extract topic tags from one or more texts.

    Long words (> 6 chars) are treated as concepts and ranked first by
    frequency; if fewer than 3 concepts exist, the most frequent remaining
    words fill the list up to ``limit``.
    """
    counts = Counter()
    for text in texts:
        counts.update(_significant_words(text, 4))
    if not counts:
        return []

    ranked = sorted(counts.items(), key=lambda kv: (-kv[1], kv[0]))
    concepts = [w for w, _ in ranked if len(w) > 6 or w in TECHNICAL_KEYWORDS][:4]
    if len(concepts) >= 3:
        return concepts

    topics = list(concepts)
    for word, _ in ranked:
        if len(topics) >= limit:
            break
        if word not in topics:
            topics.append(word)
    return topics


def merge_topics(topic_sets: Iterable[Iterable[str]], limit: int = 8) -> List[str]:
    """Union several topic sets, most shared topics first."""
    counts = Counter()
    for topics in topic_sets:
        counts.update(set(topics))
    ranked = sorted(counts.items(), key=lambda kv: (-kv[1], kv[0]))
    return [t for t, _ in ranked[:limit]]


def extract_keywords(query: str, limit: int = 5) -> List[str]:
    """Query keywords: words longer than 2 chars, stop words removed, first ``limit``."""
    seen: List[str] = []
    for word in _significant_words(query, 3):
        if word not in seen:
            seen.append(word)
        if len(seen) >= limit:
            break
    return seen


def generate_tags(content: str, top_n: int = 3) -> List[str]:
    """
    Tags for interest analysis.

    Dictionary keywords found in the message, followed by the message's own
    ``top_n`` most frequent non-stop-words (longer than 3 chars).
    """
    lowered = content.lower()
    tags: List[str] = []
    for keyword in TECHNICAL_KEYWORDS + CONCEPT_KEYWORDS:
        if keyword in lowered and keyword not in tags:
            tags.append(keyword)

    counts = Counter(_significant_words(content, 4))
    for word, _ in sorted(counts.items(), key=lambda kv: (-kv[1], kv[0]))[:top_n]:
        if word not in tags:
            tags.append(word)
    return tags
