"""
Embedding Orchestrator
======================

Turns chunks into vectors through an external embedding provider while
accounting for tokens and cost.

Providers:
- Voyage AI voyage-3.5-lite over HTTP (default)
- OpenAI text-embedding-3-small

Token counts are estimated locally (characters / 4, rounded up) before the
provider is called, so a failed call is still costed.
"""

import asyncio
import logging
import math
import os
from abc import ABC, abstractmethod
from typing import List, Optional, Sequence

import requests

from .config import EmbeddingConfig, VoyageConfig
from .dedup import DEFAULT_SIMILARITY_THRESHOLD, deduplicate_with_count
from .errors import (
    ConfigError,
    DimensionMismatch,
    EmbeddingCancelled,
    EmbeddingTimeout,
    ProviderError,
)
from .models import (
    ChunkEmbedding,
    EmbeddingBatchResult,
    EmbeddingResult,
    InputType,
    TextChunk,
    TokenUsage,
)

logger = logging.getLogger(__name__)

CHARS_PER_TOKEN = 4

# voyage-3.5-lite: $0.02 per 1M tokens
VOYAGE_COST_PER_TOKEN = 0.02 / 1_000_000


def estimate_tokens(text: str) -> int:
    """Estimate provider tokens as ceil(characters / 4)."""
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def calculate_voyage_cost(tokens: int) -> float:
    """Estimated cost in USD for a token count."""
    return tokens * VOYAGE_COST_PER_TOKEN


# =============================================================================
# Providers
# =============================================================================

class EmbeddingProvider(ABC):
    """Blocking embedding provider client."""

    model: str = "unknown"

    @abstractmethod
    def embed(self, texts: List[str], input_type: InputType = InputType.DOCUMENT) -> List[List[float]]:
        """
        Embed texts, returning one vector per input in input order.

        Raises:
            ConfigError: Credentials rejected
            ProviderError: Any other failure
        """
        pass


class VoyageEmbeddingProvider(EmbeddingProvider):
    """
    Voyage AI embeddings over HTTP.

    Cost: $0.02 per 1M tokens (voyage-3.5-lite)
    Max inputs per request: 128
    """

    MAX_BATCH = 128

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        api_url: Optional[str] = None,
        request_timeout: Optional[float] = None,
        config: Optional[VoyageConfig] = None,
    ):
        config = config or VoyageConfig()
        self.api_key = api_key or config.require_api_key()
        self.model = model or config.model
        self.api_url = api_url or config.api_url
        self.request_timeout = request_timeout or config.request_timeout

    def embed(self, texts: List[str], input_type: InputType = InputType.DOCUMENT) -> List[List[float]]:
        if len(texts) > self.MAX_BATCH:
            raise ValueError(f"Voyage accepts at most {self.MAX_BATCH} inputs per request")

        try:
            response = requests.post(
                self.api_url,
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
                json={
                    "input": texts,
                    "model": self.model,
                    "input_type": InputType(input_type).value,
                },
                timeout=self.request_timeout,
            )
        except requests.RequestException as e:
            raise ProviderError(f"Voyage request failed: {e}")

        if response.status_code in (401, 403):
            raise ConfigError(f"Voyage rejected credentials: {response.status_code}")
        if response.status_code != 200:
            raise ProviderError(
                f"Voyage error: {response.status_code} - {response.text[:200]}",
                status_code=response.status_code,
            )

        try:
            data = response.json().get("data")
        except ValueError as e:
            raise ProviderError(f"Invalid JSON from Voyage: {e}")

        if not isinstance(data, list) or len(data) != len(texts):
            raise ProviderError("Invalid response from Voyage AI - data length mismatch")

        # Rows carry their input position; never rely on response order
        ordered = sorted(enumerate(data), key=lambda item: item[1].get("index", item[0]))
        vectors = []
        for _, item in ordered:
            embedding = item.get("embedding")
            if not isinstance(embedding, list) or not embedding:
                raise ProviderError("Invalid response from Voyage AI - missing embedding")
            vectors.append([float(x) for x in embedding])
        return vectors


class OpenAIEmbeddingProvider(EmbeddingProvider):
    """
    OpenAI text-embedding-3-small.

    The intent flag is ignored; queries and documents share one space.
    """

    MODEL = "text-embedding-3-small"
    DIMENSIONS = 1536

    def __init__(self, api_key: Optional[str] = None, dimensions: Optional[int] = None):
        self.api_key = api_key or os.getenv("OPENAI_API_KEY")
        if not self.api_key:
            raise ConfigError("OpenAI API key required for embeddings")
        self.model = self.MODEL
        self.dimensions = dimensions or self.DIMENSIONS
        self._client = None

    @property
    def client(self):
        if self._client is None:
            from openai import OpenAI
            self._client = OpenAI(api_key=self.api_key)
        return self._client

    def embed(self, texts: List[str], input_type: InputType = InputType.DOCUMENT) -> List[List[float]]:
        import openai

        try:
            response = self.client.embeddings.create(
                model=self.model,
                input=texts,
                dimensions=self.dimensions,
            )
        except openai.AuthenticationError as e:
            raise ConfigError(f"OpenAI rejected credentials: {e}")
        except openai.OpenAIError as e:
            raise ProviderError(f"OpenAI embedding failed: {e}")

        if len(response.data) != len(texts):
            raise ProviderError("Invalid response from OpenAI - data length mismatch")
        return [list(item.embedding) for item in sorted(response.data, key=lambda d: d.index)]


# =============================================================================
# Orchestrator
# =============================================================================

class EmbeddingOrchestrator:
    """
    Batches chunk text to the provider with bounded concurrency.

    Handles:
    - Deduplication before any paid call
    - Concurrent batches under a semaphore, reassembled by position
    - Exponential backoff on ProviderError (ConfigError is never retried)
    - Deadlines and caller cancellation with partial TokenUsage
    - One fixed dimensionality for the orchestrator's lifetime
    """

    def __init__(
        self,
        provider: EmbeddingProvider,
        config: Optional[EmbeddingConfig] = None,
        dedup_threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
    ):
        self.provider = provider
        self.config = config or EmbeddingConfig()
        self.dedup_threshold = dedup_threshold

        self._dimensions: Optional[int] = self.config.dimensions
        self._total_tokens = 0
        self._total_requests = 0

    @property
    def dimensions(self) -> Optional[int]:
        return self._dimensions

    @property
    def total_tokens(self) -> int:
        return self._total_tokens

    @property
    def total_requests(self) -> int:
        return self._total_requests

    @property
    def estimated_cost(self) -> float:
        return calculate_voyage_cost(self._total_tokens)

    def _check_vectors(self, vectors: Sequence[Sequence[float]], expected_count: int) -> None:
        if len(vectors) != expected_count:
            raise ProviderError(f"Provider returned {len(vectors)} vectors for {expected_count} inputs")
        for vector in vectors:
            if self._dimensions is None:
                self._dimensions = len(vector)
            elif len(vector) != self._dimensions:
                raise DimensionMismatch(self._dimensions, len(vector))

    async def _embed_with_retry(self, texts: List[str], input_type: InputType) -> List[List[float]]:
        """
        Call the provider with exponential backoff.

        Raises:
            ConfigError: Immediately, without retry
            ProviderError: After all retries fail
        """
        last_error: Optional[ProviderError] = None

        for attempt in range(self.config.max_retries + 1):
            try:
                vectors = await asyncio.to_thread(self.provider.embed, texts, input_type)
                self._total_requests += 1
                self._check_vectors(vectors, len(texts))
                return vectors

            except ProviderError as e:
                last_error = e
                if attempt < self.config.max_retries:
                    wait_time = min(
                        self.config.retry_base_delay * (2 ** attempt),
                        self.config.retry_max_delay,
                    )
                    logger.warning(
                        f"Embedding provider error (attempt {attempt + 1}/{self.config.max_retries + 1}): "
                        f"{e}, retrying in {wait_time:.1f}s"
                    )
                    await asyncio.sleep(wait_time)

        raise ProviderError(
            f"All retries failed: {last_error}",
            status_code=last_error.status_code if last_error else None,
        )

    async def _embed_single(self, text: str, input_type: InputType) -> EmbeddingResult:
        if not text or not text.strip():
            raise ValueError("Cannot embed empty text")

        tokens = estimate_tokens(text)
        usage = TokenUsage(total_tokens=tokens, chunks_processed=1)
        self._total_tokens += tokens

        try:
            call = self._embed_with_retry([text], input_type)
            if self.config.timeout is not None:
                vectors = await asyncio.wait_for(call, timeout=self.config.timeout)
            else:
                vectors = await call
        except asyncio.TimeoutError:
            raise EmbeddingTimeout(
                f"Embedding deadline of {self.config.timeout}s expired",
                token_usage=TokenUsage(total_tokens=tokens),
            )
        except (ProviderError, DimensionMismatch) as e:
            e.token_usage = TokenUsage(total_tokens=tokens)
            raise

        logger.debug(f"Embedded {tokens} tokens ({input_type.value})")
        return EmbeddingResult(embedding=vectors[0], text=text, token_usage=usage)

    async def generate_embedding(self, text: str) -> EmbeddingResult:
        """Embed a document string."""
        return await self._embed_single(text, InputType.DOCUMENT)

    async def generate_query_embedding(self, text: str) -> EmbeddingResult:
        """Embed a search query (query intent, same vector space)."""
        return await self._embed_single(text, InputType.QUERY)

    async def generate_embeddings(
        self,
        chunks: Sequence[TextChunk],
        timeout: Optional[float] = None,
        deduplicate: bool = True,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> EmbeddingBatchResult:
        """
        Embed chunks in concurrent provider batches.

        Args:
            chunks: Chunks in document order
            timeout: Overall deadline in seconds (defaults to config.timeout)
            deduplicate: Drop near-duplicate chunks before embedding
            cancel_event: Setting this event aborts in-flight batches

        Returns:
            EmbeddingBatchResult with one entry per retained chunk, in order

        Raises:
            ProviderError: A batch failed after retries (token_usage is partial)
            EmbeddingTimeout / EmbeddingCancelled: Aborted (token_usage is partial)
        """
        chunks = list(chunks)
        if deduplicate:
            unique, skipped = deduplicate_with_count(chunks, self.dedup_threshold)
        else:
            unique, skipped = chunks, 0

        if not unique:
            return EmbeddingBatchResult(
                results=[],
                token_usage=TokenUsage(chunks_processed=len(chunks), duplicates_skipped=skipped),
            )

        batch_size = min(self.config.batch_size, VoyageEmbeddingProvider.MAX_BATCH)
        batches = [
            list(range(i, min(i + batch_size, len(unique))))
            for i in range(0, len(unique), batch_size)
        ]
        vectors: List[Optional[List[float]]] = [None] * len(unique)
        state = {"tokens": 0, "embedded": 0}
        semaphore = asyncio.Semaphore(self.config.max_concurrency)

        async def run_batch(positions: List[int]) -> None:
            async with semaphore:
                texts = [unique[p].text for p in positions]
                # Accrued when the batch is sent, so failures are costed
                batch_tokens = sum(estimate_tokens(t) for t in texts)
                state["tokens"] += batch_tokens
                self._total_tokens += batch_tokens

                batch_vectors = await self._embed_with_retry(texts, InputType.DOCUMENT)
                for position, vector in zip(positions, batch_vectors):
                    vectors[position] = vector
                state["embedded"] += len(positions)
                logger.debug(f"Embedded batch of {len(texts)} chunks ({batch_tokens} tokens)")

        def partial_usage() -> TokenUsage:
            return TokenUsage(
                total_tokens=state["tokens"],
                chunks_processed=skipped + state["embedded"],
                duplicates_skipped=skipped,
            )

        timeout = timeout if timeout is not None else self.config.timeout
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout if timeout is not None else None

        tasks = [asyncio.ensure_future(run_batch(b)) for b in batches]
        pending = set(tasks)
        waiter = asyncio.ensure_future(cancel_event.wait()) if cancel_event is not None else None
        error: Optional[BaseException] = None
        aborted: Optional[str] = None

        try:
            while pending:
                remaining = None if deadline is None else deadline - loop.time()
                if remaining is not None and remaining <= 0:
                    aborted = "timeout"
                    break

                wait_set = pending | ({waiter} if waiter is not None else set())
                done, _ = await asyncio.wait(
                    wait_set, timeout=remaining, return_when=asyncio.FIRST_COMPLETED
                )
                if not done:
                    aborted = "timeout"
                    break

                for task in done:
                    if task is waiter:
                        continue
                    pending.discard(task)
                    exc = task.exception()
                    if exc is not None and error is None:
                        error = exc

                if error is not None:
                    break
                if waiter is not None and waiter in done:
                    aborted = "cancelled"
                    break
        except asyncio.CancelledError:
            for task in tasks:
                task.cancel()
            raise
        finally:
            if waiter is not None:
                waiter.cancel()
            if pending:
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)

        if error is not None:
            if isinstance(error, ProviderError):
                raise ProviderError(
                    f"Embedding batch failed: {error.message}",
                    token_usage=partial_usage(),
                    status_code=error.status_code,
                ) from error
            if isinstance(error, DimensionMismatch):
                error.token_usage = partial_usage()
            raise error

        if aborted == "timeout":
            raise EmbeddingTimeout(
                f"Embedding deadline of {timeout}s expired with {len(pending)} batches pending",
                token_usage=partial_usage(),
            )
        if aborted == "cancelled":
            raise EmbeddingCancelled(
                f"Embedding cancelled with {len(pending)} batches pending",
                token_usage=partial_usage(),
            )

        usage = partial_usage()
        logger.info(
            f"Embedded {usage.embedded_chunks} chunks, skipped {skipped} duplicates, "
            f"{usage.total_tokens} tokens, ~${usage.estimated_cost:.6f}"
        )
        return EmbeddingBatchResult(
            results=[ChunkEmbedding(chunk=unique[p], embedding=vectors[p]) for p in range(len(unique))],
            token_usage=usage,
        )


def build_provider(name: str = "voyage", config: Optional[VoyageConfig] = None) -> EmbeddingProvider:
    """Construct a provider by name ("voyage" or "openai")."""
    if name == "voyage":
        return VoyageEmbeddingProvider(config=config)
    if name == "openai":
        return OpenAIEmbeddingProvider()
    raise ConfigError(f"Unknown embedding provider: {name}")
