"""
Hierarchical memory compression and retrieval for long-running conversations.

Keeps a conversation's memory under a fixed character budget:

- Raw turns accumulate in an ordered item store
- Blocks of old turns are summarized into level-1 summaries
- Summaries are merged pairwise into higher levels as they pile up
- Everything evicted stays in an archive and can be decompressed on demand

Retrieval searches the most compressed levels first, decompresses through the
archive when too few hits are found, and can fall back to an external
long-term memory. Context for the generator blends the most recent turns with
the densest relevant summaries.
"""

from .archive import Archive, ArchiveSearch, DecompressionResult
from .assembler import AssembledContext, ContextAssembler
from .config import MemoryConfig
from .embeddings import (
    EmbeddingCache,
    EmbeddingProvider,
    LangChainEmbeddingProvider,
    SemanticReranker,
    cosine_similarity,
)
from .engine import ContextEnrichment, ConversationMemory, MemoryRegistry
from .exceptions import (
    BrokenChain,
    ConfigurationError,
    DimensionMismatch,
    MemoryEngineError,
    NotFound,
    StateError,
    SummarizationFailed,
)
from .interest import InterestAnalyzer, MessageAnalysis, SearchTrigger
from .item_store import ItemStore
from .models import (
    ActionKind,
    ArchiveEntry,
    CompressionAction,
    ItemKind,
    MemoryItem,
    ResultSource,
    SearchResult,
)
from .orchestrator import CompressionOrchestrator
from .persistence import load_state, save_state
from .search import ExternalSearch, SearchOutcome, TieredSearchEngine
from .summarizer import LLMSummarizer, Summarizer, TruncatingSummarizer

__all__ = [
    "ActionKind",
    "Archive",
    "ArchiveEntry",
    "ArchiveSearch",
    "AssembledContext",
    "BrokenChain",
    "CompressionAction",
    "CompressionOrchestrator",
    "ConfigurationError",
    "ContextAssembler",
    "ContextEnrichment",
    "ConversationMemory",
    "DecompressionResult",
    "DimensionMismatch",
    "EmbeddingCache",
    "EmbeddingProvider",
    "ExternalSearch",
    "InterestAnalyzer",
    "ItemKind",
    "ItemStore",
    "LLMSummarizer",
    "LangChainEmbeddingProvider",
    "MemoryConfig",
    "MemoryEngineError",
    "MemoryItem",
    "MemoryRegistry",
    "MessageAnalysis",
    "NotFound",
    "ResultSource",
    "SearchOutcome",
    "SearchResult",
    "SearchTrigger",
    "SemanticReranker",
    "StateError",
    "SummarizationFailed",
    "Summarizer",
    "TieredSearchEngine",
    "TruncatingSummarizer",
    "cosine_similarity",
    "load_state",
    "save_state",
]
