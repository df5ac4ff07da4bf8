"""
Shared fixtures for memory engine tests.

FakeProvider maps text to deterministic vectors so no network call is made.
"""

import hashlib
import math
import time

import pytest

from src.memory.chunker import chunk_text
from src.memory.config import (
    ChunkingConfig,
    DatabaseConfig,
    EmbeddingConfig,
    LearnerConfig,
    LoggingConfig,
    SearchConfig,
    Settings,
    VoyageConfig,
)
from src.memory.embedder import EmbeddingOrchestrator, EmbeddingProvider
from src.memory.engine import MemoryEngine
from src.memory.errors import ProviderError
from src.memory.models import ChunkMetadata, ChunkRecord, InputType, TextChunk
from src.memory.store import InMemoryStore


class FakeProvider(EmbeddingProvider):
    """
    In-process embedding provider.

    Args:
        vectors: Fixed vectors for specific texts
        dimensions: Length of hashed vectors for other texts
        fail_times: Number of leading calls that raise ProviderError
        fail_on: Substring that makes any call containing it fail
        delay: Seconds to sleep per call (runs in a worker thread)
    """

    def __init__(self, vectors=None, dimensions=8, fail_times=0, fail_on=None, delay=0.0):
        self.vectors = dict(vectors or {})
        self.dimensions = dimensions
        self.fail_times = fail_times
        self.fail_on = fail_on
        self.delay = delay
        self.calls = []

    def vector_for(self, text):
        if text in self.vectors:
            return list(self.vectors[text])
        digest = hashlib.sha256(text.encode("utf-8")).digest()
        return [b / 255.0 + 0.01 for b in digest[:self.dimensions]]

    def embed(self, texts, input_type=InputType.DOCUMENT):
        self.calls.append((list(texts), input_type))
        if self.delay:
            time.sleep(self.delay)
        if self.fail_times > 0:
            self.fail_times -= 1
            raise ProviderError("temporary failure", status_code=503)
        if self.fail_on and any(self.fail_on in t for t in texts):
            raise ProviderError("provider rejected input", status_code=500)
        return [self.vector_for(t) for t in texts]


def unit(angle_cos):
    """2-d unit vector whose cosine with [1, 0] is ``angle_cos``."""
    return [angle_cos, math.sqrt(1 - angle_cos ** 2)]


def make_settings(**learner_overrides):
    return Settings(
        voyage=VoyageConfig(api_key="test-key"),
        embedding=EmbeddingConfig(
            batch_size=4,
            max_concurrency=2,
            max_retries=1,
            retry_base_delay=0.0,
            retry_max_delay=0.0,
            dimensions=None,
            timeout=None,
        ),
        chunking=ChunkingConfig(max_chunk_size=400, overlap=50, dedup_threshold=0.95),
        search=SearchConfig(limit=5, threshold=0.7, hybrid_limit=10, semantic_weight=0.7, keyword_weight=0.3),
        learner=LearnerConfig(**{
            "default_confidence": 0.75,
            "merge_threshold": 0.85,
            "recency_half_life_days": 90.0,
            "auto_validate_above": 0.9,
            "embed_summaries": True,
            **learner_overrides,
        }),
        database=DatabaseConfig(url="postgresql://localhost/test"),
        logging=LoggingConfig(level="INFO", log_file=None, json_logs=False),
    )


def make_record(text, embedding, document_id="D1", company_id="C1", document_type="payslip",
                keywords=None, employee_id=None):
    """Chunk row with an explicit vector and keyword set."""
    if keywords is None:
        chunk = chunk_text(text)[0]
    else:
        chunk = TextChunk(
            text=text,
            index=0,
            metadata=ChunkMetadata(
                chunk_position=0,
                char_start=0,
                char_end=len(text),
                total_chunks=1,
                keywords=tuple(keywords),
            ),
        )
    return ChunkRecord(
        company_id=company_id,
        document_id=document_id,
        document_type=document_type,
        chunk=chunk,
        embedding=list(embedding),
        employee_id=employee_id,
    )


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def engine(provider, store, settings):
    orchestrator = EmbeddingOrchestrator(provider, config=settings.embedding)
    return MemoryEngine(orchestrator, store=store, settings=settings)


@pytest.fixture
def payslip():
    return {
        "company": {"name": "Acme Servicios SL", "cif": "B12345678"},
        "employee": {"name": "Lucia Perez", "dni": "12345678Z", "category": "Oficial 1a"},
        "period_start": "2024-03-01",
        "period_end": "2024-03-31",
        "gross_salary": "2.150,00",
        "net_pay": 1720.5,
        "perceptions": [
            {"code": "001", "concept": "Salario base", "amount": 1800},
            {"code": "010", "concept": "Plus transporte", "amount": "350,00"},
        ],
        "deductions": [
            {"code": "IRPF", "concept": "Retencion IRPF", "amount": 280.5},
            {"code": "SS", "concept": "Contingencias comunes", "amount": 149},
        ],
    }
