"""
Tests for the MemoryEngine facade against the in-memory store.
"""

import asyncio
from unittest.mock import patch

import pytest

from conftest import FakeProvider, make_record, make_settings, unit
from src.memory.embedder import EmbeddingOrchestrator
from src.memory.engine import MemoryEngine
from src.memory.errors import DimensionMismatch, ParseError, PatternNotFound, ProviderError
from src.memory.models import (
    MemoryMatch,
    PatternType,
    SimilarDocument,
    TokenUsage,
    ValidationStatus,
)
from src.memory.store import InMemoryStore

PAYSLIP_TEXT = (
    "NOMINA MARZO 2024\n\n"
    "Empresa: Acme Servicios SL, CIF B12345678\n"
    "Trabajador: Lucia Perez, DNI 12345678Z\n\n"
    "Salario base 1.800,00 €\nPlus transporte 350,00 €\n\n"
    "Retencion IRPF 280,50 €\nContingencias comunes 149,00 €"
)
HYBRID_QUERY = "alpha bravo charlie delta echo foxtrot golf hotel india juliet"


def build_engine(provider=None, store=None):
    settings = make_settings()
    provider = provider or FakeProvider()
    orchestrator = EmbeddingOrchestrator(provider, config=settings.embedding)
    return MemoryEngine(orchestrator, store=store or InMemoryStore(), settings=settings)


class TestIngestion:
    """Tests for store_document_embeddings and batches."""

    def test_store_document(self, engine, store):
        usage = asyncio.run(engine.store_document_embeddings(
            "D1", "C1", "payslip", PAYSLIP_TEXT, employee_id="E1", processed_data={"net_pay": 1720.5},
        ))

        assert usage.chunks_processed >= 1
        assert usage.total_tokens > 0
        assert store.count_chunks("C1") == usage.embedded_chunks

    def test_empty_text_costs_nothing(self, engine, provider):
        usage = asyncio.run(engine.store_document_embeddings("D1", "C1", "payslip", "   "))

        assert usage == TokenUsage()
        assert provider.calls == []

    def test_reingest_is_write_once(self, engine, store, provider):
        first = asyncio.run(engine.store_document_embeddings("D1", "C1", "payslip", PAYSLIP_TEXT))
        calls = len(provider.calls)

        second = asyncio.run(engine.store_document_embeddings("D1", "C1", "payslip", PAYSLIP_TEXT))

        assert second.total_tokens == 0
        assert second.duplicates_skipped == second.chunks_processed == first.chunks_processed
        assert len(provider.calls) == calls
        assert store.count_chunks("C1") == first.embedded_chunks

    def test_stored_dimension_conflict_reports_spent_tokens(self, store):
        store.add_chunks([make_record("Salario base", unit(0.9), document_id="D0")])
        engine = build_engine(store=store)

        with pytest.raises(DimensionMismatch) as exc_info:
            asyncio.run(engine.store_document_embeddings("D1", "C1", "payslip", PAYSLIP_TEXT))

        assert exc_info.value.token_usage.total_tokens > 0
        assert store.count_chunks("C1") == 1

    def test_batch_isolates_failures(self):
        engine = build_engine(FakeProvider(fail_on="CORRUPTO"))

        results = asyncio.run(engine.store_document_batch([
            {"document_id": "D1", "company_id": "C1", "document_type": "payslip", "extracted_text": PAYSLIP_TEXT},
            {"document_id": "D2", "company_id": "C1", "document_type": "payslip",
             "extracted_text": "Documento CORRUPTO sin datos"},
        ]))

        assert [r.key for r in results] == ["D1", "D2"]
        assert results[0].is_ok
        assert not results[1].is_ok
        assert isinstance(results[1].error, ProviderError)
        assert results[1].error.token_usage.total_tokens > 0
        assert engine.store.count_chunks("C1") == results[0].value.embedded_chunks


class TestSearch:
    """Tests for semantic, hybrid and memory search."""

    def test_threshold_filters_results(self):
        store = InMemoryStore()
        store.add_chunks([
            make_record("Nomina de marzo", unit(0.92), document_id="D1"),
            make_record("Contrato de trabajo", unit(0.5), document_id="D2"),
        ])
        engine = build_engine(FakeProvider(vectors={"salary slip March": [1.0, 0.0]}), store)

        results = asyncio.run(engine.find_similar_documents("salary slip March", "C1", "payslip", threshold=0.8))

        assert len(results) == 1
        assert isinstance(results[0], SimilarDocument)
        assert results[0].document_id == "D1"
        assert results[0].similarity_score == pytest.approx(0.92)

    def test_results_scoped_to_company(self):
        store = InMemoryStore()
        store.add_chunks([
            make_record("Nomina de marzo", unit(0.95), company_id="C1"),
            make_record("Nomina de marzo", unit(0.95), document_id="D9", company_id="C2"),
        ])
        engine = build_engine(FakeProvider(vectors={"nomina": [1.0, 0.0]}), store)

        results = asyncio.run(engine.find_similar_documents("nomina", "C2", "payslip"))

        assert [r.document_id for r in results] == ["D9"]

    def test_empty_query(self, engine, provider):
        results = asyncio.run(engine.find_similar_documents("  ", "C1", "payslip"))

        assert list(results) == []
        assert results.warnings == ["Empty query"]
        assert provider.calls == []

    def test_mismatched_rows_reported(self):
        store = InMemoryStore()
        store.add_chunks([make_record("Nomina", [1.0, 0.0, 0.0])])
        engine = build_engine(FakeProvider(vectors={"nomina": [1.0, 0.0]}), store)

        results = asyncio.run(engine.find_similar_documents("nomina", "C1", "payslip", threshold=0.0))

        assert list(results) == []
        assert "expected 2, got 3" in results.warnings[0]

    def test_hybrid_weighting(self):
        """0.7 * 0.9 + 0.3 * 0.1 beats 0.7 * 0.5 + 0.3 * 1.0."""
        store = InMemoryStore()
        store.add_chunks([
            make_record("Documento A", unit(0.9), document_id="A", keywords=("alpha",)),
            make_record("Documento B", unit(0.5), document_id="B", keywords=tuple(HYBRID_QUERY.split())),
        ])
        engine = build_engine(FakeProvider(vectors={HYBRID_QUERY: [1.0, 0.0]}), store)

        results = asyncio.run(engine.hybrid_search(HYBRID_QUERY, "C1", semantic_weight=0.7, keyword_weight=0.3))

        assert [r.document_id for r in results] == ["A", "B"]
        assert results[0].combined_score == pytest.approx(0.66)
        assert results[0].keyword_score == pytest.approx(0.1)
        assert results[1].combined_score == pytest.approx(0.65)
        assert results[1].keyword_score == pytest.approx(1.0)

    def test_hybrid_keyword_only_candidate(self):
        store = InMemoryStore()
        store.add_chunks([make_record("Plus transporte", [0.0, 1.0], keywords=("transporte",))])
        engine = build_engine(FakeProvider(vectors={"plus transporte": [1.0, 0.0]}), store)

        results = asyncio.run(engine.hybrid_search("plus transporte", "C1"))

        assert len(results) == 1
        assert results[0].semantic_score == 0.0
        assert results[0].keyword_score == pytest.approx(0.5)
        assert results[0].combined_score == pytest.approx(0.15)

    def test_invalid_hybrid_weights(self, engine):
        with pytest.raises(ValueError):
            asyncio.run(engine.hybrid_search("salario", "C1", semantic_weight=0, keyword_weight=0))

    def test_searches_are_logged(self, engine, store):
        asyncio.run(engine.store_document_embeddings("D1", "C1", "payslip", PAYSLIP_TEXT))
        asyncio.run(engine.find_similar_documents("salario base", "C1", "payslip", threshold=0.0))
        asyncio.run(engine.hybrid_search("salario base", "C1"))

        logs = store.recent_searches("C1")

        assert {log.search_type for log in logs} == {"semantic", "hybrid"}
        assert all(log.results_count >= 1 for log in logs)

    def test_search_log_failure_does_not_fail_search(self, engine, store):
        asyncio.run(engine.store_document_embeddings("D1", "C1", "payslip", PAYSLIP_TEXT))

        with patch.object(store, "log_search", side_effect=RuntimeError("db down")):
            results = asyncio.run(engine.find_similar_documents("salario", "C1", "payslip", threshold=0.0))

        assert len(results) >= 1

    def test_search_similar_memories(self, engine, store, payslip):
        asyncio.run(engine.learn_from_document("C1", "E1", payslip, document_id="D1"))
        summary = store.list_patterns("C1", pattern_type=PatternType.SUMMARY)[0]

        matches = asyncio.run(engine.search_similar_memories(summary.pattern, "C1", threshold=0.99))

        assert len(matches) == 1
        assert isinstance(matches[0], MemoryMatch)
        assert matches[0].pattern.id == summary.id
        assert store.get_pattern(summary.id).last_used_at >= summary.last_used_at


class TestLearning:
    """Tests for learn_from_document and validation."""

    def test_learn_scopes_patterns(self, engine, store, payslip):
        learned = asyncio.run(engine.learn_from_document("C1", "E1", payslip, document_id="D1"))

        employee = store.list_patterns("C1", "payslip", "E1")
        assert {p.pattern_type for p in employee} == {PatternType.EMPLOYEE, PatternType.SUMMARY}
        assert len(learned) == len(store.list_patterns("C1"))
        summary = [p for p in employee if p.pattern_type == PatternType.SUMMARY][0]
        assert summary.embedding is not None

    def test_concurrent_learning_counts_both(self, engine, store, payslip):
        async def learn_twice():
            await asyncio.gather(
                engine.learn_from_document("C1", "E1", payslip),
                engine.learn_from_document("C1", "E1", payslip),
            )

        asyncio.run(learn_twice())

        company = store.list_patterns("C1", pattern_type=PatternType.COMPANY)
        assert len(company) == 1
        assert company[0].usage_count == 2
        assert company[0].confidence == pytest.approx(0.75)

    def test_summary_embedding_failure_is_not_fatal(self, store, payslip):
        engine = build_engine(FakeProvider(fail_on="Employee:"), store)

        learned = asyncio.run(engine.learn_from_document("C1", "E1", payslip, document_id="D1"))

        summary = [p for p in learned if p.pattern_type == PatternType.SUMMARY][0]
        assert summary.embedding is None

    def test_malformed_document(self, engine, store):
        with pytest.raises(ParseError):
            asyncio.run(engine.learn_from_document("C1", "E1", {"perceptions": "001"}))

        assert store.list_patterns("C1") == []

    def test_learn_from_documents_skips_bad_items(self, engine, payslip):
        results = asyncio.run(engine.learn_from_documents([
            {"company_id": "C1", "employee_id": "E1", "document_data": payslip, "document_id": "D1"},
            {"company_id": "C1", "employee_id": "E1", "document_data": {"gross_salary": "mucho"},
             "document_id": "D2"},
        ]))

        assert results[0].is_ok
        assert isinstance(results[1].error, ParseError)
        assert results[1].key == "D2"

    def test_validate_and_reject(self, engine, store, payslip):
        asyncio.run(engine.learn_from_document("C1", "E1", payslip))
        company = store.list_patterns("C1", pattern_type=PatternType.COMPANY)[0]

        validated = asyncio.run(engine.validate_memory(company.id, True, "correct"))
        assert validated.confidence == 0.95
        assert validated.validation_status == ValidationStatus.VALIDATED

        rejected = asyncio.run(engine.validate_memory(company.id, False))
        assert rejected.confidence == 0.3
        assert store.list_patterns("C1", pattern_type=PatternType.COMPANY) == []
        assert store.list_patterns("C1", pattern_type=PatternType.COMPANY, include_rejected=True)[0].feedback == "correct"

    def test_unknown_memory_id(self, engine):
        with pytest.raises(PatternNotFound):
            asyncio.run(engine.set_validation_status("missing", ValidationStatus.VALIDATED))

    def test_rejected_summary_hides_chunks(self, engine, store, payslip):
        asyncio.run(engine.store_document_embeddings("D1", "C1", "payslip", PAYSLIP_TEXT, employee_id="E1"))
        asyncio.run(engine.learn_from_document("C1", "E1", payslip, document_id="D1"))
        before = asyncio.run(engine.find_similar_documents("salario base", "C1", "payslip", threshold=0.0))
        assert before

        summary = store.list_patterns("C1", pattern_type=PatternType.SUMMARY)[0]
        asyncio.run(engine.validate_memory(summary.id, False, "wrong employee"))

        after = asyncio.run(engine.find_similar_documents("salario base", "C1", "payslip", threshold=0.0))
        assert list(after) == []


class TestContextAndAnalytics:
    """Tests for memory context, prompt context and analytics."""

    def test_memory_context(self, engine, payslip):
        asyncio.run(engine.store_document_embeddings("D1", "C1", "payslip", PAYSLIP_TEXT, employee_id="E1"))
        asyncio.run(engine.learn_from_document("C1", "E1", payslip, document_id="D1"))

        context = asyncio.run(engine.get_memory_context("C1", "payslip", "E1", query_text="salario base"))

        assert len(context.company_patterns) == 3
        assert all(p.employee_id is None for p in context.company_patterns)
        assert len(context.employee_patterns) == 2
        assert context.learned_keywords

    def test_build_context(self, engine, payslip):
        asyncio.run(engine.learn_from_document("C1", "E1", payslip))

        text = asyncio.run(engine.build_context("", "C1", "payslip", employee_id="E1"))

        assert text.startswith("[Memory]")
        assert "[Source" not in text

    def test_build_context_respects_budget(self, engine, payslip):
        asyncio.run(engine.learn_from_document("C1", "E1", payslip))

        assert asyncio.run(engine.build_context("", "C1", "payslip", max_tokens=1)) == ""

    def test_analytics(self, engine, store, payslip):
        asyncio.run(engine.store_document_embeddings("D1", "C1", "payslip", PAYSLIP_TEXT))
        asyncio.run(engine.learn_from_document("C1", "E1", payslip))
        asyncio.run(engine.learn_from_document("C1", "E1", payslip))
        company = store.list_patterns("C1", pattern_type=PatternType.COMPANY)[0]
        asyncio.run(engine.validate_memory(company.id, False))

        analytics = asyncio.run(engine.get_memory_analytics("C1", top_n=3))

        assert analytics.total_patterns == len(store.list_patterns("C1", include_rejected=True))
        assert analytics.by_status == {"pending": analytics.total_patterns - 1, "validated": 0, "rejected": 1}
        assert analytics.by_type["company"] == 1
        assert analytics.weighted_confidence == pytest.approx(0.75)
        assert len(analytics.top_patterns) == 3
        assert all(not p.is_rejected for p in analytics.top_patterns)
        assert analytics.chunk_count == store.count_chunks("C1")

    def test_analytics_empty_company(self, engine):
        analytics = asyncio.run(engine.get_memory_analytics("nobody"))

        assert analytics.total_patterns == 0
        assert analytics.weighted_confidence == 0.0
        assert analytics.by_status == {"pending": 0, "validated": 0, "rejected": 0}
