"""
Payroll Memory Engine
=====================

Learned-memory retrieval for a payroll document-processing pipeline.

- Chunking with natural boundaries and typed metadata
- Near-duplicate removal before any paid embedding call
- Voyage AI (or OpenAI) embeddings with batching, retries and cost tracking
- Cosine + keyword hybrid search over pgvector
- Pattern learning (company, employee, concepts, amounts) with
  recency-weighted confidence and operator validation
"""

from .chunker import ChunkConfig, TextChunker, chunk_text, iter_chunks
from .dedup import deduplicate_chunks
from .embedder import (
    EmbeddingOrchestrator,
    EmbeddingProvider,
    OpenAIEmbeddingProvider,
    VoyageEmbeddingProvider,
    build_provider,
    calculate_voyage_cost,
    estimate_tokens,
)
from .engine import MemoryEngine
from .errors import (
    ConfigError,
    DimensionMismatch,
    EmbeddingCancelled,
    EmbeddingTimeout,
    MemoryEngineError,
    ParseError,
    PatternNotFound,
    ProviderError,
)
from .keywords import extract_keywords, keyword_score
from .learner import MemoryLearner
from .models import (
    Err,
    HybridSearchResult,
    MemoryAnalytics,
    MemoryContext,
    MemoryMatch,
    MemoryPattern,
    Ok,
    PatternType,
    RankedResults,
    SearchFilters,
    SimilarDocument,
    TextChunk,
    TokenUsage,
    ValidationStatus,
)
from .similarity import calculate_cosine_similarity
from .store import InMemoryStore, MemoryStore, PgVectorStore

__all__ = [
    "MemoryEngine",
    "MemoryLearner",
    "EmbeddingOrchestrator",
    "EmbeddingProvider",
    "VoyageEmbeddingProvider",
    "OpenAIEmbeddingProvider",
    "build_provider",
    "MemoryStore",
    "InMemoryStore",
    "PgVectorStore",
    "ChunkConfig",
    "TextChunker",
    "chunk_text",
    "iter_chunks",
    "deduplicate_chunks",
    "extract_keywords",
    "keyword_score",
    "calculate_cosine_similarity",
    "calculate_voyage_cost",
    "estimate_tokens",
    "TextChunk",
    "TokenUsage",
    "SimilarDocument",
    "HybridSearchResult",
    "SearchFilters",
    "RankedResults",
    "MemoryPattern",
    "MemoryMatch",
    "MemoryContext",
    "MemoryAnalytics",
    "PatternType",
    "ValidationStatus",
    "Ok",
    "Err",
    "MemoryEngineError",
    "ConfigError",
    "ProviderError",
    "EmbeddingTimeout",
    "EmbeddingCancelled",
    "DimensionMismatch",
    "ParseError",
    "PatternNotFound",
]
