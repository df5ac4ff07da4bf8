"""
Memory Store
============

Persistence for chunk embeddings, learned patterns and search logs.

- InMemoryStore: exact in-process cosine ranking (tests, small tenants)
- PgVectorStore: PostgreSQL + pgvector, cosine distance via ``<=>``

Chunk rows are write-once per (document_id, content_hash). Pattern rows
only change through ``merge_patterns`` (serialized per scope) or
``update_validation``.
"""

import copy
import json
import logging
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from psycopg2 import pool as pg_pool
from psycopg2.extras import Json, RealDictCursor

from .config import DatabaseConfig
from .errors import DimensionMismatch, PatternNotFound
from .keywords import keyword_tokens
from .models import (
    ChunkMetadata,
    ChunkRecord,
    MemoryPattern,
    PatternType,
    SearchFilters,
    SearchLog,
    TextChunk,
    utcnow,
)
from .similarity import rank_by_similarity

logger = logging.getLogger(__name__)

Scope = Tuple[str, str, Optional[str]]
Merger = Callable[[List[MemoryPattern]], List[MemoryPattern]]
Updater = Callable[[MemoryPattern], MemoryPattern]


def summary_document_id(pattern: MemoryPattern) -> Optional[str]:
    """Document id of a per-document summary pattern."""
    if pattern.pattern_type != PatternType.SUMMARY:
        return None
    if pattern.pattern_key.startswith("document:"):
        return pattern.pattern_key[len("document:"):]
    return pattern.metadata.get("document_id")


class MemoryStore(ABC):
    """Persistence collaborator used by MemoryEngine. All methods are blocking."""

    @abstractmethod
    def add_chunks(self, records: Sequence[ChunkRecord]) -> int:
        """
        Insert chunk rows, skipping hashes already stored for the document.

        Raises:
            DimensionMismatch: If a vector does not match the stored dimension

        Returns:
            Number of rows inserted
        """

    @abstractmethod
    def existing_chunk_hashes(self, company_id: str, document_id: str) -> Set[str]:
        """Content hashes already stored for a document."""

    @abstractmethod
    def nearest_chunks(
        self,
        company_id: str,
        query_embedding: Sequence[float],
        filters: Optional[SearchFilters] = None,
        limit: int = 5,
        threshold: float = 0.0,
    ) -> Tuple[List[Tuple[ChunkRecord, float]], List[str]]:
        """Chunks ranked by cosine similarity, plus ranking warnings."""

    @abstractmethod
    def keyword_candidates(
        self,
        company_id: str,
        tokens: Iterable[str],
        filters: Optional[SearchFilters] = None,
        limit: int = 50,
    ) -> List[ChunkRecord]:
        """Chunks whose keyword tokens overlap the query tokens."""

    @abstractmethod
    def merge_patterns(self, scope: Scope, merger: Merger) -> List[MemoryPattern]:
        """
        Apply ``merger`` to the scope's current patterns under mutual exclusion
        and persist what it returns.
        """

    @abstractmethod
    def list_patterns(
        self,
        company_id: str,
        document_type_id: Optional[str] = None,
        employee_id: Optional[str] = None,
        include_rejected: bool = False,
        pattern_type: Optional[PatternType] = None,
    ) -> List[MemoryPattern]:
        """Patterns for a company, optionally narrowed by type / employee."""

    @abstractmethod
    def get_pattern(self, memory_id: str) -> MemoryPattern:
        """
        Raises:
            PatternNotFound: If no pattern has this id
        """

    @abstractmethod
    def update_validation(self, memory_id: str, updater: Updater) -> MemoryPattern:
        """Atomically replace a pattern with ``updater(pattern)``."""

    @abstractmethod
    def touch_patterns(self, memory_ids: Iterable[str], when: Optional[datetime] = None) -> None:
        """Record that patterns were used."""

    @abstractmethod
    def log_search(self, log: SearchLog) -> None:
        pass

    @abstractmethod
    def recent_searches(self, company_id: str, limit: int = 10) -> List[SearchLog]:
        pass

    @abstractmethod
    def count_chunks(self, company_id: str) -> int:
        pass

    def close(self) -> None:
        pass


# =============================================================================
# In-memory store
# =============================================================================

class InMemoryStore(MemoryStore):
    """
    Thread-safe store holding everything in process memory.

    A global lock guards the collections; each pattern scope also has its
    own lock so merges for one company never interleave.
    """

    def __init__(self, dimensions: Optional[int] = None):
        self._lock = threading.Lock()
        self._scope_locks: Dict[Scope, threading.Lock] = {}
        self._chunks: List[ChunkRecord] = []
        self._patterns: Dict[str, MemoryPattern] = {}
        self._searches: List[SearchLog] = []
        self._dimensions = dimensions

    def _scope_lock(self, scope: Scope) -> threading.Lock:
        with self._lock:
            if scope not in self._scope_locks:
                self._scope_locks[scope] = threading.Lock()
            return self._scope_locks[scope]

    def _rejected_documents(self, company_id: str) -> Set[str]:
        rejected = set()
        for pattern in self._patterns.values():
            if pattern.company_id == company_id and pattern.is_rejected:
                document_id = summary_document_id(pattern)
                if document_id:
                    rejected.add(document_id)
        return rejected

    def _filtered_chunks(self, company_id: str, filters: Optional[SearchFilters]) -> List[ChunkRecord]:
        filters = filters or SearchFilters()
        rejected = self._rejected_documents(company_id) if filters.exclude_rejected else set()
        rows = []
        for record in self._chunks:
            if record.company_id != company_id:
                continue
            if filters.document_type and record.document_type != filters.document_type:
                continue
            if filters.employee_id and record.employee_id != filters.employee_id:
                continue
            if filters.document_id and record.document_id != filters.document_id:
                continue
            if record.document_id in rejected:
                continue
            rows.append(record)
        return rows

    def add_chunks(self, records: Sequence[ChunkRecord]) -> int:
        if not records:
            return 0
        with self._lock:
            expected = self._dimensions or len(records[0].embedding)
            for record in records:
                if len(record.embedding) != expected:
                    raise DimensionMismatch(expected, len(record.embedding))
            self._dimensions = expected

            stored = {(r.document_id, r.chunk.content_hash) for r in self._chunks}
            inserted = 0
            for record in records:
                key = (record.document_id, record.chunk.content_hash)
                if key in stored:
                    continue
                self._chunks.append(record)
                stored.add(key)
                inserted += 1
            return inserted

    def existing_chunk_hashes(self, company_id: str, document_id: str) -> Set[str]:
        with self._lock:
            return {
                r.chunk.content_hash for r in self._chunks
                if r.company_id == company_id and r.document_id == document_id
            }

    def nearest_chunks(self, company_id, query_embedding, filters=None, limit=5, threshold=0.0):
        with self._lock:
            candidates = self._filtered_chunks(company_id, filters)
        return rank_by_similarity(
            query_embedding,
            candidates,
            embedding_of=lambda r: r.embedding,
            created_at_of=lambda r: r.created_at,
            limit=limit,
            threshold=threshold,
        )

    def keyword_candidates(self, company_id, tokens, filters=None, limit=50):
        tokens = set(tokens)
        if not tokens:
            return []
        with self._lock:
            rows = [
                r for r in self._filtered_chunks(company_id, filters)
                if tokens & keyword_tokens(r.keywords)
            ]
        rows.sort(key=lambda r: r.created_at, reverse=True)
        return rows[:limit]

    def merge_patterns(self, scope: Scope, merger: Merger) -> List[MemoryPattern]:
        company_id, document_type_id, employee_id = scope
        with self._scope_lock(scope):
            with self._lock:
                existing = [
                    copy.deepcopy(p) for p in self._patterns.values()
                    if p.scope == (company_id, document_type_id, employee_id)
                ]
            merged = merger(existing)
            with self._lock:
                for pattern in merged:
                    self._patterns[pattern.id] = copy.deepcopy(pattern)
        return merged

    def list_patterns(
        self,
        company_id,
        document_type_id=None,
        employee_id=None,
        include_rejected=False,
        pattern_type=None,
    ):
        with self._lock:
            patterns = [
                copy.deepcopy(p) for p in self._patterns.values()
                if p.company_id == company_id
                and (document_type_id is None or p.document_type_id == document_type_id)
                and (employee_id is None or p.employee_id == employee_id)
                and (include_rejected or not p.is_rejected)
                and (pattern_type is None or p.pattern_type == pattern_type)
            ]
        patterns.sort(key=lambda p: (-p.confidence, -p.usage_count, p.id))
        return patterns

    def get_pattern(self, memory_id: str) -> MemoryPattern:
        with self._lock:
            if memory_id not in self._patterns:
                raise PatternNotFound(memory_id)
            return copy.deepcopy(self._patterns[memory_id])

    def update_validation(self, memory_id: str, updater: Updater) -> MemoryPattern:
        with self._lock:
            if memory_id not in self._patterns:
                raise PatternNotFound(memory_id)
            updated = updater(copy.deepcopy(self._patterns[memory_id]))
            self._patterns[memory_id] = copy.deepcopy(updated)
            return updated

    def touch_patterns(self, memory_ids, when=None):
        when = when or utcnow()
        with self._lock:
            for memory_id in memory_ids:
                if memory_id in self._patterns:
                    self._patterns[memory_id].last_used_at = when

    def log_search(self, log: SearchLog) -> None:
        with self._lock:
            self._searches.append(log)

    def recent_searches(self, company_id: str, limit: int = 10) -> List[SearchLog]:
        with self._lock:
            logs = [s for s in self._searches if s.company_id == company_id]
        logs.sort(key=lambda s: s.created_at, reverse=True)
        return logs[:limit]

    def count_chunks(self, company_id: str) -> int:
        with self._lock:
            return sum(1 for r in self._chunks if r.company_id == company_id)


# =============================================================================
# PostgreSQL + pgvector store
# =============================================================================

def _vector_literal(embedding: Sequence[float]) -> str:
    return "[" + ",".join(repr(float(x)) for x in embedding) + "]"


def _parse_vector(value) -> Optional[List[float]]:
    if value is None:
        return None
    if isinstance(value, str):
        return [float(x) for x in json.loads(value)]
    return [float(x) for x in value]


_REJECTED_DOCUMENTS_SQL = """
    SELECT substring(pattern_key FROM 10)
    FROM document_memory
    WHERE company_id = %s
      AND pattern_type = 'summary'
      AND validation_status = 'rejected'
      AND pattern_key LIKE 'document:%%'
"""

_PATTERN_COLUMNS = """
    id, pattern_type, pattern_key, pattern, company_id, document_type_id,
    employee_id, confidence, usage_count, validation_status, keywords,
    metadata, evidence_weight, evidence_sum, embedding::text AS embedding,
    validation_score, feedback, created_at, updated_at, last_used_at
"""

_CHUNK_COLUMNS = """
    id, company_id, document_id, document_type, employee_id, chunk_index,
    text_chunk, metadata, processed_data, created_at,
    embedding::text AS embedding
"""


class PgVectorStore(MemoryStore):
    """
    Store backed by PostgreSQL with the pgvector extension.

    Schema: database/migrations/001_memory_pgvector.sql. Pattern merges
    take ``pg_advisory_xact_lock(hashtext(scope))`` inside the merge
    transaction.
    """

    def __init__(
        self,
        config: Optional[DatabaseConfig] = None,
        min_connections: int = 1,
        max_connections: int = 10,
    ):
        self.config = config or DatabaseConfig()
        self._pool = pg_pool.ThreadedConnectionPool(
            min_connections, max_connections, **self.config.connection_dict
        )
        self._dimensions: Optional[int] = None
        logger.info(f"pgvector store connected (pool {min_connections}-{max_connections})")

    def close(self) -> None:
        if self._pool is not None:
            self._pool.closeall()
            self._pool = None
            logger.info("pgvector store pool closed")

    @contextmanager
    def get_connection(self):
        """Pooled connection; commits on success, rolls back on error."""
        conn = self._pool.getconn()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            self._pool.putconn(conn)

    def apply_migrations(self, sql: str) -> None:
        with self.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(sql)
        logger.info("Memory schema applied")

    # -------------------------------------------------------------------------
    # Row mapping
    # -------------------------------------------------------------------------

    @staticmethod
    def _row_to_chunk(row) -> ChunkRecord:
        metadata = ChunkMetadata.from_dict(row["metadata"])
        return ChunkRecord(
            id=str(row["id"]),
            company_id=row["company_id"],
            document_id=row["document_id"],
            document_type=row["document_type"],
            employee_id=row["employee_id"],
            chunk=TextChunk(text=row["text_chunk"], index=row["chunk_index"], metadata=metadata),
            embedding=_parse_vector(row["embedding"]),
            processed_data=row["processed_data"],
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_pattern(row) -> MemoryPattern:
        return MemoryPattern(
            id=str(row["id"]),
            pattern_type=row["pattern_type"],
            pattern_key=row["pattern_key"],
            pattern=row["pattern"],
            company_id=row["company_id"],
            document_type_id=row["document_type_id"],
            employee_id=row["employee_id"],
            confidence=float(row["confidence"]),
            usage_count=row["usage_count"],
            validation_status=row["validation_status"],
            keywords=list(row["keywords"] or []),
            metadata=row["metadata"] or {},
            evidence_weight=float(row["evidence_weight"]),
            evidence_sum=float(row["evidence_sum"]),
            embedding=_parse_vector(row["embedding"]),
            validation_score=float(row["validation_score"]) if row["validation_score"] is not None else None,
            feedback=row["feedback"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            last_used_at=row["last_used_at"],
        )

    def _filter_clause(self, company_id: str, filters: Optional[SearchFilters]) -> Tuple[str, list]:
        filters = filters or SearchFilters()
        clauses = ["company_id = %s"]
        params: list = [company_id]
        if filters.document_type:
            clauses.append("document_type = %s")
            params.append(filters.document_type)
        if filters.employee_id:
            clauses.append("employee_id = %s")
            params.append(filters.employee_id)
        if filters.document_id:
            clauses.append("document_id = %s")
            params.append(filters.document_id)
        if filters.exclude_rejected:
            clauses.append(f"document_id NOT IN ({_REJECTED_DOCUMENTS_SQL})")
            params.append(company_id)
        return " AND ".join(clauses), params

    # -------------------------------------------------------------------------
    # Chunks
    # -------------------------------------------------------------------------

    def _stored_dimensions(self, conn) -> Optional[int]:
        if self._dimensions is None:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute("SELECT vector_dims(embedding) AS dims FROM document_embeddings LIMIT 1")
                row = cur.fetchone()
            if row:
                self._dimensions = row["dims"]
        return self._dimensions

    def add_chunks(self, records: Sequence[ChunkRecord]) -> int:
        if not records:
            return 0

        inserted = 0
        with self.get_connection() as conn:
            with conn.cursor() as cur:
                expected = self._stored_dimensions(conn) or len(records[0].embedding)
                for record in records:
                    if len(record.embedding) != expected:
                        raise DimensionMismatch(expected, len(record.embedding))

                for record in records:
                    cur.execute("""
                        INSERT INTO document_embeddings (
                            id, company_id, document_id, document_type, employee_id,
                            chunk_index, text_chunk, content_hash, embedding,
                            keyword_tokens, metadata, processed_data, created_at
                        ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s::vector, %s, %s, %s, %s)
                        ON CONFLICT (document_id, content_hash) DO NOTHING
                    """, (
                        record.id,
                        record.company_id,
                        record.document_id,
                        record.document_type,
                        record.employee_id,
                        record.chunk.index,
                        record.chunk.text,
                        record.chunk.content_hash,
                        _vector_literal(record.embedding),
                        sorted(keyword_tokens(record.keywords)),
                        Json(record.chunk.metadata.to_dict()),
                        Json(record.processed_data) if record.processed_data is not None else None,
                        record.created_at,
                    ))
                    inserted += cur.rowcount
        self._dimensions = expected
        return inserted

    def existing_chunk_hashes(self, company_id: str, document_id: str) -> Set[str]:
        with self.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT content_hash FROM document_embeddings WHERE company_id = %s AND document_id = %s",
                    (company_id, document_id),
                )
                return {row[0] for row in cur.fetchall()}

    def nearest_chunks(self, company_id, query_embedding, filters=None, limit=5, threshold=0.0):
        where, params = self._filter_clause(company_id, filters)
        vector = _vector_literal(query_embedding)
        warnings: List[str] = []

        with self.get_connection() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                expected = self._stored_dimensions(conn)
                if expected is not None and expected != len(query_embedding):
                    error = DimensionMismatch(expected, len(query_embedding))
                    logger.warning(f"Skipping vector ranking: {error}")
                    return [], [str(error)]

                cur.execute(f"""
                    SELECT {_CHUNK_COLUMNS},
                           1 - (embedding <=> %s::vector) AS similarity
                    FROM document_embeddings
                    WHERE {where}
                      AND 1 - (embedding <=> %s::vector) >= %s
                    ORDER BY embedding <=> %s::vector, created_at DESC
                    LIMIT %s
                """, [vector] + params + [vector, threshold, vector, limit])
                rows = cur.fetchall()

        return [(self._row_to_chunk(row), float(row["similarity"])) for row in rows], warnings

    def keyword_candidates(self, company_id, tokens, filters=None, limit=50):
        tokens = sorted(set(tokens))
        if not tokens:
            return []
        where, params = self._filter_clause(company_id, filters)
        with self.get_connection() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(f"""
                    SELECT {_CHUNK_COLUMNS}
                    FROM document_embeddings
                    WHERE {where} AND keyword_tokens && %s::text[]
                    ORDER BY created_at DESC
                    LIMIT %s
                """, params + [tokens, limit])
                return [self._row_to_chunk(row) for row in cur.fetchall()]

    def count_chunks(self, company_id: str) -> int:
        with self.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT COUNT(*) FROM document_embeddings WHERE company_id = %s", (company_id,))
                return cur.fetchone()[0]

    # -------------------------------------------------------------------------
    # Patterns
    # -------------------------------------------------------------------------

    def _upsert_pattern(self, cur, pattern: MemoryPattern) -> None:
        cur.execute("""
            INSERT INTO document_memory (
                id, pattern_type, pattern_key, pattern, company_id, document_type_id,
                employee_id, confidence, usage_count, validation_status, keywords,
                metadata, evidence_weight, evidence_sum, embedding, validation_score,
                feedback, created_at, updated_at, last_used_at
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s::vector, %s, %s, %s, %s, %s)
            ON CONFLICT (id) DO UPDATE SET
                pattern = EXCLUDED.pattern,
                confidence = EXCLUDED.confidence,
                usage_count = EXCLUDED.usage_count,
                validation_status = EXCLUDED.validation_status,
                keywords = EXCLUDED.keywords,
                metadata = EXCLUDED.metadata,
                evidence_weight = EXCLUDED.evidence_weight,
                evidence_sum = EXCLUDED.evidence_sum,
                embedding = COALESCE(EXCLUDED.embedding, document_memory.embedding),
                validation_score = EXCLUDED.validation_score,
                feedback = EXCLUDED.feedback,
                updated_at = EXCLUDED.updated_at,
                last_used_at = EXCLUDED.last_used_at
        """, (
            pattern.id,
            pattern.pattern_type.value,
            pattern.pattern_key,
            pattern.pattern,
            pattern.company_id,
            pattern.document_type_id,
            pattern.employee_id,
            pattern.confidence,
            pattern.usage_count,
            pattern.validation_status.value,
            list(pattern.keywords),
            Json(pattern.metadata),
            pattern.evidence_weight,
            pattern.evidence_sum,
            _vector_literal(pattern.embedding) if pattern.embedding else None,
            pattern.validation_score,
            pattern.feedback,
            pattern.created_at,
            pattern.updated_at,
            pattern.last_used_at,
        ))

    def merge_patterns(self, scope: Scope, merger: Merger) -> List[MemoryPattern]:
        company_id, document_type_id, employee_id = scope
        lock_key = f"{company_id}|{document_type_id}|{employee_id or ''}"

        with self.get_connection() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute("SELECT pg_advisory_xact_lock(hashtext(%s))", (lock_key,))
                cur.execute(f"""
                    SELECT {_PATTERN_COLUMNS}
                    FROM document_memory
                    WHERE company_id = %s
                      AND document_type_id = %s
                      AND employee_id IS NOT DISTINCT FROM %s
                """, (company_id, document_type_id, employee_id))
                existing = [self._row_to_pattern(row) for row in cur.fetchall()]

                merged = merger(existing)
                for pattern in merged:
                    self._upsert_pattern(cur, pattern)

        logger.debug(f"Merged {len(merged)} patterns into scope {lock_key}")
        return merged

    def list_patterns(
        self,
        company_id,
        document_type_id=None,
        employee_id=None,
        include_rejected=False,
        pattern_type=None,
    ):
        clauses = ["company_id = %s"]
        params: list = [company_id]
        if document_type_id is not None:
            clauses.append("document_type_id = %s")
            params.append(document_type_id)
        if employee_id is not None:
            clauses.append("employee_id = %s")
            params.append(employee_id)
        if not include_rejected:
            clauses.append("validation_status <> 'rejected'")
        if pattern_type is not None:
            clauses.append("pattern_type = %s")
            params.append(PatternType(pattern_type).value)

        with self.get_connection() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(f"""
                    SELECT {_PATTERN_COLUMNS}
                    FROM document_memory
                    WHERE {' AND '.join(clauses)}
                    ORDER BY confidence DESC, usage_count DESC, id
                """, params)
                return [self._row_to_pattern(row) for row in cur.fetchall()]

    def get_pattern(self, memory_id: str) -> MemoryPattern:
        with self.get_connection() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(f"SELECT {_PATTERN_COLUMNS} FROM document_memory WHERE id::text = %s", (memory_id,))
                row = cur.fetchone()
        if not row:
            raise PatternNotFound(memory_id)
        return self._row_to_pattern(row)

    def update_validation(self, memory_id: str, updater: Updater) -> MemoryPattern:
        with self.get_connection() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(
                    f"SELECT {_PATTERN_COLUMNS} FROM document_memory WHERE id::text = %s FOR UPDATE",
                    (memory_id,),
                )
                row = cur.fetchone()
                if not row:
                    raise PatternNotFound(memory_id)
                updated = updater(self._row_to_pattern(row))
                self._upsert_pattern(cur, updated)
        return updated

    def touch_patterns(self, memory_ids, when=None):
        memory_ids = [str(m) for m in memory_ids]
        if not memory_ids:
            return
        with self.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "UPDATE document_memory SET last_used_at = %s WHERE id::text = ANY(%s)",
                    (when or utcnow(), memory_ids),
                )

    # -------------------------------------------------------------------------
    # Search logs
    # -------------------------------------------------------------------------

    def log_search(self, log: SearchLog) -> None:
        with self.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute("""
                    INSERT INTO memory_search_logs (
                        company_id, query_text, search_type, results_count,
                        latency_ms, embedding_latency_ms, top_results, created_at
                    ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                """, (
                    log.company_id,
                    log.query_text,
                    log.search_type,
                    log.results_count,
                    log.latency_ms,
                    log.embedding_latency_ms,
                    Json(log.top_results),
                    log.created_at,
                ))

    def recent_searches(self, company_id: str, limit: int = 10) -> List[SearchLog]:
        with self.get_connection() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute("""
                    SELECT company_id, query_text, search_type, results_count,
                           latency_ms, embedding_latency_ms, top_results, created_at
                    FROM memory_search_logs
                    WHERE company_id = %s
                    ORDER BY created_at DESC
                    LIMIT %s
                """, (company_id, limit))
                rows = cur.fetchall()
        return [
            SearchLog(
                company_id=row["company_id"],
                query_text=row["query_text"],
                search_type=row["search_type"],
                results_count=row["results_count"],
                latency_ms=float(row["latency_ms"]),
                embedding_latency_ms=float(row["embedding_latency_ms"] or 0),
                top_results=row["top_results"] or [],
                created_at=row["created_at"],
            )
            for row in rows
        ]
