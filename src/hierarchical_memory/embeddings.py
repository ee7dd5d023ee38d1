"""
Embedding collaborators and semantic re-ranking.

The engine never talks to an embedding API directly: it receives an
EmbeddingProvider. Vectors are cached per conversation (no process-wide
cache) and compared with plain cosine similarity.
"""

import hashlib
import logging
from collections import OrderedDict
from typing import List, Optional, Protocol, Sequence, runtime_checkable

import numpy as np

from .exceptions import DimensionMismatch
from .models import SearchResult

logger = logging.getLogger(__name__)


@runtime_checkable
class EmbeddingProvider(Protocol):
    """Fixed-length numeric vector for a string."""

    async def embed(self, text: str) -> List[float]:
        ...


class LangChainEmbeddingProvider:
    """Adapter for a LangChain ``Embeddings`` implementation."""

    def __init__(self, embeddings):
        self._embeddings = embeddings

    async def embed(self, text: str) -> List[float]:
        return list(await self._embeddings.aembed_query(text))


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """
    Cosine similarity of two vectors.

    Raises DimensionMismatch if the lengths differ. Returns 0.0 if either
    vector has zero norm.
    """
    if len(a) != len(b):
        raise DimensionMismatch(f"vector lengths differ: {len(a)} != {len(b)}")
    va = np.asarray(a, dtype=float)
    vb = np.asarray(b, dtype=float)
    norm_a = np.linalg.norm(va)
    norm_b = np.linalg.norm(vb)
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return float(np.dot(va, vb) / (norm_a * norm_b))


def safe_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity, with incomparable vectors treated as 0."""
    try:
        return cosine_similarity(a, b)
    except DimensionMismatch as e:
        logger.warning("Similarity treated as 0: %s", e)
        return 0.0


class EmbeddingCache:
    """
    Per-conversation LRU cache in front of an EmbeddingProvider.

    Keys are a SHA-256 of the normalised text, so identical texts are
    embedded once.
    """

    def __init__(self, provider: EmbeddingProvider, max_entries: int = 1000):
        self._provider = provider
        self.max_entries = max_entries
        self._entries: "OrderedDict[str, List[float]]" = OrderedDict()
        self.hits = 0
        self.misses = 0

    @staticmethod
    def _make_key(text: str) -> str:
        return hashlib.sha256(text.strip().lower().encode()).hexdigest()[:32]

    async def embed(self, text: str) -> List[float]:
        key = self._make_key(text)
        cached = self._entries.get(key)
        if cached is not None:
            self.hits += 1
            self._entries.move_to_end(key)
            return cached

        self.misses += 1
        vector = await self._provider.embed(text)
        self._entries[key] = vector
        if len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)
        return vector

    def __len__(self) -> int:
        return len(self._entries)

    def clear(self) -> None:
        self._entries.clear()


class SemanticReranker:
    """
    Blend lexical relevance with embedding similarity.

    score = (1 - weight) * lexical + weight * max(0, cosine)
    """

    def __init__(self, cache: EmbeddingCache, weight: float = 0.3):
        self._cache = cache
        self.weight = weight

    async def rerank(self, query: str, results: List[SearchResult], limit: Optional[int] = None) -> List[SearchResult]:
        if not results:
            return results
        try:
            query_vec = await self._cache.embed(query)
        except Exception as e:
            logger.warning("Query embedding failed, keeping lexical ranking: %s", e)
            return results[:limit] if limit else results

        for result in results:
            try:
                vector = await self._cache.embed(result.content)
            except Exception as e:
                logger.warning("Embedding failed for %s: %s", result.id, e)
                continue
            similarity = max(0.0, safe_similarity(query_vec, vector))
            blended = (1 - self.weight) * result.relevance_score + self.weight * similarity
            result.metadata["similarity"] = similarity
            result.relevance_score = min(1.0, max(0.0, blended))

        ranked = sorted(results, key=lambda r: (-r.relevance_score, r.id))
        return ranked[:limit] if limit else ranked
