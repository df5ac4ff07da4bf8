"""
Memory Engine
=============

Facade over chunking, embedding, storage and pattern learning.

Flow (ingest):
1. Chunk extracted text
2. Skip chunks already stored for the document
3. Embed new chunks (dedup + concurrent batches)
4. Write chunk rows

Flow (query):
1. Embed the query
2. Rank stored chunks by cosine (plus keyword overlap for hybrid search)
3. Log the search for analytics

One engine is built per process with its collaborators injected.
"""

import asyncio
import logging
import time
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from .chunker import ChunkConfig, TextChunker
from .config import Settings, get_settings
from .embedder import EmbeddingOrchestrator, build_provider, estimate_tokens
from .errors import DimensionMismatch
from .keywords import score_many, tokenize
from .learner import MemoryLearner
from .models import (
    ChunkRecord,
    Err,
    HybridSearchResult,
    MemoryAnalytics,
    MemoryContext,
    MemoryMatch,
    MemoryPattern,
    Ok,
    PatternType,
    RankedResults,
    Result,
    SearchFilters,
    SearchLog,
    SimilarDocument,
    TokenUsage,
    ValidationStatus,
    utcnow,
)
from .similarity import calculate_cosine_similarity, clamp_similarity, fuse_scores, rank_by_similarity
from .store import InMemoryStore, MemoryStore

logger = logging.getLogger(__name__)

DEFAULT_DOCUMENT_TYPE = "payslip"
COMPANY_CONTEXT_PATTERNS = 3
EMPLOYEE_CONTEXT_PATTERNS = 2
HYBRID_CANDIDATE_FACTOR = 3


def _elapsed_ms(start: float) -> float:
    return round((time.monotonic() - start) * 1000, 2)


class MemoryEngine:
    """
    Learned-memory retrieval for processed payroll documents.

    All entry points are coroutines; blocking store calls run in worker
    threads.
    """

    def __init__(
        self,
        orchestrator: EmbeddingOrchestrator,
        store: Optional[MemoryStore] = None,
        settings: Optional[Settings] = None,
        learner: Optional[MemoryLearner] = None,
    ):
        self.settings = settings or get_settings()
        self.orchestrator = orchestrator
        self.store = store or InMemoryStore()
        self.learner = learner or MemoryLearner(self.settings.learner)
        self.chunker = TextChunker(ChunkConfig(
            max_chunk_size=self.settings.chunking.max_chunk_size,
            overlap=self.settings.chunking.overlap,
        ))

    @classmethod
    def from_settings(
        cls,
        settings: Optional[Settings] = None,
        provider_name: str = "voyage",
        store: Optional[MemoryStore] = None,
    ) -> "MemoryEngine":
        """Build the provider and orchestrator from settings."""
        settings = settings or get_settings()
        provider = build_provider(provider_name, settings.voyage)
        orchestrator = EmbeddingOrchestrator(
            provider,
            config=settings.embedding,
            dedup_threshold=settings.chunking.dedup_threshold,
        )
        return cls(orchestrator, store=store, settings=settings)

    # =========================================================================
    # Ingestion
    # =========================================================================

    async def store_document_embeddings(
        self,
        document_id: str,
        company_id: str,
        document_type: str,
        extracted_text: str,
        employee_id: Optional[str] = None,
        processed_data: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> TokenUsage:
        """
        Chunk, embed and store a document's text.

        Chunks whose content hash is already stored for the document are
        not re-embedded.

        Returns:
            TokenUsage for this document

        Raises:
            ProviderError: Embedding failed (token_usage carries partial cost)
            DimensionMismatch: Vectors disagree with the stored dimension
                (token_usage carries the cost already spent)
        """
        start = time.monotonic()
        chunks = self.chunker.chunk(extracted_text or "")
        if not chunks:
            logger.info(f"No text to embed for document {document_id}", extra={
                "company_id": company_id, "document_id": document_id,
            })
            return TokenUsage()

        existing = await asyncio.to_thread(self.store.existing_chunk_hashes, company_id, document_id)
        new_chunks = [c for c in chunks if c.content_hash not in existing]
        already_stored = len(chunks) - len(new_chunks)

        batch = await self.orchestrator.generate_embeddings(
            new_chunks, timeout=timeout, cancel_event=cancel_event
        )

        records = [
            ChunkRecord(
                company_id=company_id,
                document_id=document_id,
                document_type=document_type,
                chunk=item.chunk,
                embedding=item.embedding,
                employee_id=employee_id,
                processed_data=processed_data,
            )
            for item in batch.results
        ]
        usage = TokenUsage(
            total_tokens=batch.token_usage.total_tokens,
            chunks_processed=len(chunks),
            duplicates_skipped=batch.token_usage.duplicates_skipped + already_stored,
        )
        try:
            inserted = await asyncio.to_thread(self.store.add_chunks, records)
        except DimensionMismatch as e:
            # The provider was already paid for these vectors
            e.token_usage = usage
            raise

        duration = _elapsed_ms(start)
        logger.info(
            f"Stored {inserted} chunks for document {document_id} "
            f"({usage.duplicates_skipped} skipped, {usage.total_tokens} tokens) in {duration}ms",
            extra={
                "company_id": company_id,
                "document_id": document_id,
                "tokens": usage.total_tokens,
                "cost_usd": usage.estimated_cost,
                "duration": duration,
            },
        )
        return usage

    async def store_document_batch(self, documents: Iterable[Mapping[str, Any]]) -> List[Result]:
        """
        Store many documents; one failure never aborts its siblings.

        Each mapping holds the keyword arguments of store_document_embeddings.

        Returns:
            Ok(TokenUsage) or Err(exception) per document, in input order
        """
        documents = list(documents)
        semaphore = asyncio.Semaphore(self.settings.embedding.max_concurrency)

        async def store_one(document: Mapping[str, Any]) -> Result:
            key = document.get("document_id")
            async with semaphore:
                try:
                    usage = await self.store_document_embeddings(**document)
                    return Ok(usage, key=key)
                except Exception as e:
                    logger.error(f"Failed to store document {key}: {e}", extra={"document_id": key})
                    return Err(e, key=key)

        results = await asyncio.gather(*(store_one(d) for d in documents))
        ok = sum(1 for r in results if r.is_ok)
        logger.info(f"Stored {ok}/{len(results)} documents")
        return list(results)

    # =========================================================================
    # Search
    # =========================================================================

    async def _log_search(
        self,
        company_id: str,
        query_text: str,
        search_type: str,
        results: Sequence[Any],
        latency_ms: float,
        embedding_latency_ms: float,
        top_results: List[Dict[str, Any]],
    ) -> None:
        log = SearchLog(
            company_id=company_id,
            query_text=query_text,
            search_type=search_type,
            results_count=len(results),
            latency_ms=latency_ms,
            embedding_latency_ms=embedding_latency_ms,
            top_results=top_results,
        )
        try:
            await asyncio.to_thread(self.store.log_search, log)
        except Exception as e:
            logger.warning(f"Failed to record {search_type} search log: {e}", extra={"company_id": company_id})

    async def find_similar_documents(
        self,
        query_text: str,
        company_id: str,
        document_type: str,
        employee_id: Optional[str] = None,
        limit: Optional[int] = None,
        threshold: Optional[float] = None,
    ) -> RankedResults:
        """
        Chunks most similar to the query within a company / document type.

        Returns:
            RankedResults of SimilarDocument, best first. Empty when nothing
            clears the threshold; excluded candidates appear in ``warnings``.

        Raises:
            ProviderError: The query could not be embedded
        """
        limit = limit or self.settings.search.limit
        threshold = self.settings.search.threshold if threshold is None else threshold
        if not query_text or not query_text.strip():
            return RankedResults(warnings=["Empty query"])

        start = time.monotonic()
        query = await self.orchestrator.generate_query_embedding(query_text)
        embedding_ms = _elapsed_ms(start)

        filters = SearchFilters(document_type=document_type, employee_id=employee_id)
        ranked, warnings = await asyncio.to_thread(
            self.store.nearest_chunks, company_id, query.embedding, filters, limit, threshold
        )

        results = RankedResults(
            [
                SimilarDocument(
                    id=record.id,
                    document_id=record.document_id,
                    text_chunk=record.chunk.text,
                    similarity_score=clamp_similarity(similarity),
                    document_type=record.document_type,
                    metadata=record.chunk.metadata.to_dict(),
                    processed_data=record.processed_data,
                    employee_id=record.employee_id,
                    chunk_index=record.chunk.index,
                    created_at=record.created_at,
                )
                for record, similarity in ranked
            ],
            warnings=warnings,
        )

        duration = _elapsed_ms(start)
        if not results:
            logger.info(f"No similar documents above {threshold} for company {company_id}", extra={
                "company_id": company_id, "search_type": "semantic", "duration": duration,
            })
        else:
            logger.info(f"Found {len(results)} similar documents in {duration}ms", extra={
                "company_id": company_id, "search_type": "semantic", "duration": duration,
            })

        await self._log_search(
            company_id, query_text, "semantic", results, duration, embedding_ms,
            [{"id": r.id, "document_id": r.document_id, "score": r.similarity_score} for r in results[:5]],
        )
        return results

    async def hybrid_search(
        self,
        query: str,
        company_id: str,
        semantic_weight: Optional[float] = None,
        keyword_weight: Optional[float] = None,
        limit: Optional[int] = None,
        filters: Optional[SearchFilters] = None,
    ) -> RankedResults:
        """
        Rank chunks by ``semantic_weight * cosine + keyword_weight * keyword``.

        Candidates found by only one signal are kept; the missing signal
        counts as 0.

        Raises:
            ProviderError: The query could not be embedded
            ValueError: Weights are negative or both zero
        """
        search = self.settings.search
        semantic_weight = search.semantic_weight if semantic_weight is None else semantic_weight
        keyword_weight = search.keyword_weight if keyword_weight is None else keyword_weight
        limit = limit or search.hybrid_limit
        if not query or not query.strip():
            return RankedResults(warnings=["Empty query"])

        start = time.monotonic()
        query_embedding = (await self.orchestrator.generate_query_embedding(query)).embedding
        embedding_ms = _elapsed_ms(start)

        pool_size = max(limit * HYBRID_CANDIDATE_FACTOR, 20)
        semantic_hits, warnings = await asyncio.to_thread(
            self.store.nearest_chunks, company_id, query_embedding, filters, pool_size, 0.0
        )
        keyword_hits = await asyncio.to_thread(
            self.store.keyword_candidates, company_id, tokenize(query), filters, pool_size
        )

        records: Dict[str, ChunkRecord] = {}
        semantic: Dict[str, float] = {}
        for record, similarity in semantic_hits:
            records[record.id] = record
            semantic[record.id] = clamp_similarity(similarity)

        for record in keyword_hits:
            if record.id in records:
                continue
            records[record.id] = record
            try:
                semantic[record.id] = clamp_similarity(
                    calculate_cosine_similarity(query_embedding, record.embedding)
                )
            except DimensionMismatch as e:
                warnings.append(str(e))

        keyword = score_many(query, {cid: r.keywords for cid, r in records.items()})
        fused = fuse_scores(semantic, keyword, semantic_weight, keyword_weight)[:limit]

        results = RankedResults(
            [
                HybridSearchResult(
                    chunk_id=cid,
                    document_id=records[cid].document_id,
                    text_chunk=records[cid].chunk.text,
                    document_type=records[cid].document_type,
                    semantic_score=s,
                    keyword_score=k,
                    combined_score=combined,
                    chunk_index=records[cid].chunk.index,
                    employee_id=records[cid].employee_id,
                    metadata=records[cid].chunk.metadata.to_dict(),
                )
                for cid, combined, s, k in fused
            ],
            warnings=warnings,
        )

        duration = _elapsed_ms(start)
        logger.info(f"Hybrid search returned {len(results)} results in {duration}ms", extra={
            "company_id": company_id, "search_type": "hybrid", "duration": duration,
        })
        await self._log_search(
            company_id, query, "hybrid", results, duration, embedding_ms,
            [{"id": r.chunk_id, "score": r.combined_score} for r in results[:5]],
        )
        return results

    async def search_similar_memories(
        self,
        query: str,
        company_id: str,
        limit: Optional[int] = None,
        threshold: Optional[float] = None,
    ) -> RankedResults:
        """
        Learned patterns whose embedded summaries resemble the query.

        Matched patterns get their ``last_used_at`` refreshed.
        """
        limit = limit or self.settings.search.limit
        threshold = self.settings.search.threshold if threshold is None else threshold
        if not query or not query.strip():
            return RankedResults(warnings=["Empty query"])

        start = time.monotonic()
        query_embedding = (await self.orchestrator.generate_query_embedding(query)).embedding
        embedding_ms = _elapsed_ms(start)

        patterns = await asyncio.to_thread(self.store.list_patterns, company_id)
        ranked, warnings = rank_by_similarity(
            query_embedding,
            [p for p in patterns if p.embedding],
            embedding_of=lambda p: p.embedding,
            created_at_of=lambda p: p.updated_at,
            limit=limit,
            threshold=threshold,
        )
        results = RankedResults(
            [MemoryMatch(pattern=p, similarity_score=clamp_similarity(s)) for p, s in ranked],
            warnings=warnings,
        )
        if results:
            await asyncio.to_thread(self.store.touch_patterns, [m.pattern.id for m in results])

        duration = _elapsed_ms(start)
        logger.info(f"Memory search returned {len(results)} patterns in {duration}ms", extra={
            "company_id": company_id, "search_type": "memory", "duration": duration,
        })
        await self._log_search(
            company_id, query, "memory", results, duration, embedding_ms,
            [{"id": m.pattern.id, "score": m.similarity_score} for m in results[:5]],
        )
        return results

    async def get_memory_context(
        self,
        company_id: str,
        document_type: str,
        employee_id: Optional[str] = None,
        query_text: Optional[str] = None,
    ) -> MemoryContext:
        """
        Top company and employee patterns plus, given a query, similar chunks.
        """
        company_patterns = [
            p for p in await asyncio.to_thread(self.store.list_patterns, company_id, document_type)
            if p.employee_id is None
        ][:COMPANY_CONTEXT_PATTERNS]

        employee_patterns: List[MemoryPattern] = []
        if employee_id:
            employee_patterns = (
                await asyncio.to_thread(self.store.list_patterns, company_id, document_type, employee_id)
            )[:EMPLOYEE_CONTEXT_PATTERNS]

        similar: List[SimilarDocument] = []
        if query_text:
            similar = list(await self.find_similar_documents(
                query_text, company_id, document_type, employee_id=employee_id
            ))

        learned_keywords: List[str] = []
        for pattern in company_patterns + employee_patterns:
            for keyword in pattern.keywords:
                if keyword not in learned_keywords:
                    learned_keywords.append(keyword)

        used = [p.id for p in company_patterns + employee_patterns]
        if used:
            await asyncio.to_thread(self.store.touch_patterns, used)

        return MemoryContext(
            similar_documents=similar,
            company_patterns=company_patterns,
            employee_patterns=employee_patterns,
            learned_keywords=learned_keywords,
        )

    # =========================================================================
    # Learning
    # =========================================================================

    async def learn_from_document(
        self,
        company_id: str,
        employee_id: Optional[str],
        document_data: Mapping[str, Any],
        confidence: Optional[float] = None,
        document_type: str = DEFAULT_DOCUMENT_TYPE,
        document_id: Optional[str] = None,
        observed_at: Optional[datetime] = None,
    ) -> List[MemoryPattern]:
        """
        Learn patterns from one processed document.

        Returns:
            Patterns created or reinforced

        Raises:
            ParseError: The structured data is malformed
        """
        confidence = self.learner.config.default_confidence if confidence is None else confidence
        observed_at = observed_at or utcnow()
        observations = self.learner.extract_patterns(document_data, document_id=document_id)

        summary_embedding = None
        summaries = [o for o in observations if o.pattern_type == PatternType.SUMMARY]
        if summaries and self.learner.config.embed_summaries:
            try:
                summary_embedding = (await self.orchestrator.generate_embedding(summaries[0].pattern)).embedding
            except Exception as e:
                logger.warning(f"Summary for document {document_id} not embedded: {e}", extra={
                    "company_id": company_id, "document_id": document_id,
                })

        groups = self.learner.group_by_scope(observations, company_id, document_type, employee_id)
        learned: List[MemoryPattern] = []
        for scope, scoped in groups.items():
            def merger(existing, scope=scope, scoped=scoped):
                merged = self.learner.merge_into(existing, scoped, scope, confidence, observed_at)
                if summary_embedding is not None:
                    for pattern in merged:
                        if pattern.pattern_type == PatternType.SUMMARY and pattern.embedding is None:
                            pattern.embedding = summary_embedding
                return merged

            learned.extend(await asyncio.to_thread(self.store.merge_patterns, scope, merger))

        logger.info(f"Learned {len(learned)} patterns from document {document_id or '-'}", extra={
            "company_id": company_id, "document_id": document_id,
        })
        return learned

    async def learn_from_documents(self, items: Iterable[Mapping[str, Any]]) -> List[Result]:
        """
        Learn from many documents; a ParseError skips only its own document.

        Each mapping holds the keyword arguments of learn_from_document.
        """
        results: List[Result] = []
        for item in items:
            key = item.get("document_id")
            try:
                results.append(Ok(await self.learn_from_document(**item), key=key))
            except Exception as e:
                logger.warning(f"Skipping pattern learning for document {key}: {e}", extra={
                    "company_id": item.get("company_id"), "document_id": key,
                })
                results.append(Err(e, key=key))
        return results

    # =========================================================================
    # Validation
    # =========================================================================

    async def set_validation_status(
        self,
        memory_id: str,
        status: ValidationStatus,
        feedback: Optional[str] = None,
    ) -> MemoryPattern:
        """
        Move a pattern to pending, validated or rejected.

        Raises:
            PatternNotFound: Unknown memory id
        """
        status = ValidationStatus(status)
        pattern = await asyncio.to_thread(
            self.store.update_validation,
            memory_id,
            lambda p: self.learner.apply_validation(p, status, feedback),
        )
        logger.info(f"Memory {memory_id} marked {status.value}", extra={"company_id": pattern.company_id})
        return pattern

    async def validate_memory(
        self,
        memory_id: str,
        is_valid: bool,
        feedback: Optional[str] = None,
    ) -> MemoryPattern:
        status = ValidationStatus.VALIDATED if is_valid else ValidationStatus.REJECTED
        return await self.set_validation_status(memory_id, status, feedback)

    # =========================================================================
    # Analytics
    # =========================================================================

    async def get_memory_analytics(self, company_id: str, top_n: int = 10) -> MemoryAnalytics:
        """Counts by status and type, usage-weighted confidence, top patterns."""
        patterns = await asyncio.to_thread(self.store.list_patterns, company_id, None, None, True)
        chunk_count = await asyncio.to_thread(self.store.count_chunks, company_id)
        recent = await asyncio.to_thread(self.store.recent_searches, company_id)

        by_status = {status.value: 0 for status in ValidationStatus}
        by_type: Dict[str, int] = {}
        for pattern in patterns:
            by_status[pattern.validation_status.value] += 1
            by_type[pattern.pattern_type.value] = by_type.get(pattern.pattern_type.value, 0) + 1

        active = [p for p in patterns if not p.is_rejected]
        usage = sum(p.usage_count for p in active)
        weighted = sum(p.confidence * p.usage_count for p in active) / usage if usage else 0.0
        top = sorted(active, key=lambda p: (-p.usage_count, -p.confidence, p.id))[:top_n]

        return MemoryAnalytics(
            company_id=company_id,
            total_patterns=len(patterns),
            by_status=by_status,
            by_type=by_type,
            total_usage=sum(p.usage_count for p in patterns),
            weighted_confidence=round(weighted, 4),
            top_patterns=top,
            chunk_count=chunk_count,
            recent_searches=recent,
        )

    # =========================================================================
    # LLM context
    # =========================================================================

    async def build_context(
        self,
        query_text: str,
        company_id: str,
        document_type: str,
        employee_id: Optional[str] = None,
        max_tokens: int = 2000,
    ) -> str:
        """
        Format memory as prompt context for the extraction model.

        Patterns come first, then similar chunks, until ``max_tokens``
        (estimated) is reached.
        """
        context = await self.get_memory_context(
            company_id, document_type, employee_id=employee_id, query_text=query_text
        )

        parts = []
        used_tokens = 0
        sections = [
            f"[Memory] ({p.pattern_type.value}, confidence: {p.confidence:.2f})\n{p.pattern}"
            for p in context.company_patterns + context.employee_patterns
        ]
        sections += [
            f"[Source {i}] ({d.document_type}, relevance: {d.similarity_score:.2f})\n---\n{d.text_chunk}"
            for i, d in enumerate(context.similar_documents, 1)
        ]

        for part in sections:
            part_tokens = estimate_tokens(part)
            if used_tokens + part_tokens > max_tokens:
                break
            parts.append(part)
            used_tokens += part_tokens

        return "\n\n".join(parts)
