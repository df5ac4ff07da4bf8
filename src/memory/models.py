"""
Memory Data Models
==================

Dataclasses shared by the chunking, embedding, search and learning paths.
"""

import hashlib
from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Generic, List, Optional, Tuple, TypeVar, Union
from uuid import uuid4

CHUNK_METADATA_VERSION = 1


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InputType(str, Enum):
    """Provider-side intent flag. Both intents share one vector space."""
    DOCUMENT = "document"
    QUERY = "query"


class ValidationStatus(str, Enum):
    """Operator validation state of a learned pattern."""
    PENDING = "pending"
    VALIDATED = "validated"
    REJECTED = "rejected"


class PatternType(str, Enum):
    """Kinds of structural signal learned from processed payslips."""
    COMPANY = "company"
    EMPLOYEE = "employee"
    PERCEPTION = "perception"
    DEDUCTION = "deduction"
    CONCEPT = "concept"
    AMOUNT_RANGE = "amount_range"
    FIELD_SHAPE = "field_shape"
    SUMMARY = "summary"


@dataclass(frozen=True)
class ChunkMetadata:
    """
    Positional and content metadata attached to a chunk.

    The key set is fixed and versioned through ``schema_version``;
    ``from_dict`` rejects keys it does not know.
    """
    chunk_position: int
    char_start: int
    char_end: int
    page_number: Optional[int] = None
    section: Optional[str] = None
    total_chunks: Optional[int] = None
    has_table: bool = False
    has_amounts: bool = False
    keywords: Tuple[str, ...] = ()
    schema_version: int = CHUNK_METADATA_VERSION

    def to_dict(self) -> Dict[str, Any]:
        data = {f.name: getattr(self, f.name) for f in fields(self)}
        data["keywords"] = list(self.keywords)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChunkMetadata":
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ValueError(f"Unknown chunk metadata keys: {sorted(unknown)}")
        version = data.get("schema_version", CHUNK_METADATA_VERSION)
        if version != CHUNK_METADATA_VERSION:
            raise ValueError(f"Unsupported chunk metadata version: {version}")
        values = dict(data)
        values["keywords"] = tuple(values.get("keywords") or ())
        return cls(**values)


@dataclass(frozen=True)
class TextChunk:
    """A bounded slice of document text with a stable order index."""
    text: str
    index: int
    metadata: ChunkMetadata

    @property
    def content_hash(self) -> str:
        """Short SHA256 of the text, used for write-once storage."""
        return hashlib.sha256(self.text.encode("utf-8")).hexdigest()[:16]

    def with_total(self, total_chunks: int) -> "TextChunk":
        return replace(self, metadata=replace(self.metadata, total_chunks=total_chunks))

    def __repr__(self):
        preview = self.text[:40] + "..." if len(self.text) > 40 else self.text
        return f"TextChunk(idx={self.index}, text={preview!r})"


@dataclass(frozen=True)
class TokenUsage:
    """
    Token accounting for embedding calls.

    ``chunks_processed == duplicates_skipped + embedded_chunks`` and the cost
    is always derived from ``total_tokens``.
    """
    total_tokens: int = 0
    chunks_processed: int = 0
    duplicates_skipped: int = 0

    @property
    def estimated_cost(self) -> float:
        from .embedder import calculate_voyage_cost
        return calculate_voyage_cost(self.total_tokens)

    @property
    def embedded_chunks(self) -> int:
        return self.chunks_processed - self.duplicates_skipped

    def __add__(self, other: "TokenUsage") -> "TokenUsage":
        if not isinstance(other, TokenUsage):
            return NotImplemented
        return TokenUsage(
            total_tokens=self.total_tokens + other.total_tokens,
            chunks_processed=self.chunks_processed + other.chunks_processed,
            duplicates_skipped=self.duplicates_skipped + other.duplicates_skipped,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_tokens": self.total_tokens,
            "estimated_cost": self.estimated_cost,
            "chunks_processed": self.chunks_processed,
            "duplicates_skipped": self.duplicates_skipped,
        }


@dataclass
class EmbeddingResult:
    """Embedding of a single string."""
    embedding: List[float]
    text: str
    token_usage: TokenUsage
    metadata: Optional[Dict[str, Any]] = None


@dataclass
class ChunkEmbedding:
    """A chunk paired with its vector, matched by position."""
    chunk: TextChunk
    embedding: List[float]


@dataclass
class EmbeddingBatchResult:
    """Result of embedding a list of chunks."""
    results: List[ChunkEmbedding]
    token_usage: TokenUsage


@dataclass
class ChunkRecord:
    """A stored chunk row owned by one document."""
    company_id: str
    document_id: str
    document_type: str
    chunk: TextChunk
    embedding: List[float]
    employee_id: Optional[str] = None
    processed_data: Optional[Dict[str, Any]] = None
    id: str = field(default_factory=lambda: str(uuid4()))
    created_at: datetime = field(default_factory=utcnow)

    @property
    def keywords(self) -> Tuple[str, ...]:
        return self.chunk.metadata.keywords


@dataclass
class SimilarDocument:
    """A scored retrieval hit."""
    id: str
    document_id: str
    text_chunk: str
    similarity_score: float
    document_type: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    processed_data: Optional[Dict[str, Any]] = None
    employee_id: Optional[str] = None
    chunk_index: int = 0
    created_at: Optional[datetime] = None


@dataclass
class HybridSearchResult:
    """A hit ranked by fused semantic and keyword scores."""
    chunk_id: str
    document_id: str
    text_chunk: str
    document_type: str
    semantic_score: float
    keyword_score: float
    combined_score: float
    chunk_index: int = 0
    employee_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class SearchFilters:
    """Scope filters for chunk queries. company_id is always required separately."""
    document_type: Optional[str] = None
    employee_id: Optional[str] = None
    document_id: Optional[str] = None
    exclude_rejected: bool = True


class RankedResults(list):
    """A ranked result list that also carries non-fatal warnings."""

    def __init__(self, items=(), warnings: Optional[List[str]] = None):
        super().__init__(items)
        self.warnings: List[str] = list(warnings or [])


@dataclass
class MemoryPattern:
    """A learned structural signal scoped to company / document type / employee."""
    pattern_type: PatternType
    pattern_key: str
    pattern: str
    company_id: str
    document_type_id: str
    confidence: float
    usage_count: int = 1
    employee_id: Optional[str] = None
    validation_status: ValidationStatus = ValidationStatus.PENDING
    keywords: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    # Recency-weighted evidence; confidence == evidence_sum / evidence_weight
    evidence_weight: float = 0.0
    evidence_sum: float = 0.0

    embedding: Optional[List[float]] = None
    validation_score: Optional[float] = None
    feedback: Optional[str] = None

    id: str = field(default_factory=lambda: str(uuid4()))
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    last_used_at: Optional[datetime] = None

    def __post_init__(self):
        if isinstance(self.pattern_type, str):
            self.pattern_type = PatternType(self.pattern_type)
        if isinstance(self.validation_status, str):
            self.validation_status = ValidationStatus(self.validation_status)

    @property
    def scope(self) -> Tuple[str, str, Optional[str]]:
        return (self.company_id, self.document_type_id, self.employee_id)

    @property
    def is_rejected(self) -> bool:
        return self.validation_status == ValidationStatus.REJECTED


@dataclass
class MemoryMatch:
    """A learned pattern returned by memory search."""
    pattern: MemoryPattern
    similarity_score: float


@dataclass
class PatternObservation:
    """One pattern extracted from a processed document, before merging."""
    pattern_type: PatternType
    pattern_key: str
    pattern: str
    employee_scoped: bool = False
    keywords: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class MemoryContext:
    """Aggregate memory for a (company, document type, employee) query."""
    similar_documents: List[SimilarDocument] = field(default_factory=list)
    company_patterns: List[MemoryPattern] = field(default_factory=list)
    employee_patterns: List[MemoryPattern] = field(default_factory=list)
    learned_keywords: List[str] = field(default_factory=list)


@dataclass
class SearchLog:
    """Analytics record of one query."""
    company_id: str
    query_text: str
    search_type: str
    results_count: int
    latency_ms: float
    embedding_latency_ms: float = 0.0
    top_results: List[Dict[str, Any]] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class MemoryAnalytics:
    """Confidence-weighted statistics over a company's learned memory."""
    company_id: str
    total_patterns: int
    by_status: Dict[str, int]
    by_type: Dict[str, int]
    total_usage: int
    weighted_confidence: float
    top_patterns: List[MemoryPattern]
    chunk_count: int
    recent_searches: List[SearchLog] = field(default_factory=list)


# =============================================================================
# Result types for batch pipelines
# =============================================================================

T = TypeVar("T")


@dataclass
class Ok(Generic[T]):
    value: T
    key: Optional[str] = None

    @property
    def is_ok(self) -> bool:
        return True

    def unwrap(self) -> T:
        return self.value


@dataclass
class Err:
    error: Exception
    key: Optional[str] = None

    @property
    def is_ok(self) -> bool:
        return False

    def unwrap(self):
        raise self.error


Result = Union[Ok, Err]
