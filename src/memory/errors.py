"""
Memory Engine Errors
====================

Exception taxonomy for the memory engine.

- ConfigError: missing credentials or invalid settings (fatal, never retried)
- ProviderError: embedding call failed (retryable, carries partial TokenUsage)
- DimensionMismatch: vectors of different lengths compared or stored (carries
  TokenUsage when embedding was already paid for)
- ParseError: malformed structured document data reaching the learner
"""

from typing import Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from .models import TokenUsage


class MemoryEngineError(Exception):
    """Base exception for memory engine errors."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(self.message)


class ConfigError(MemoryEngineError):
    """Missing provider credentials or invalid configuration."""
    pass


class ProviderError(MemoryEngineError):
    """Embedding provider call failed."""

    def __init__(
        self,
        message: str,
        token_usage: Optional["TokenUsage"] = None,
        status_code: Optional[int] = None,
    ):
        self.token_usage = token_usage
        self.status_code = status_code
        super().__init__(message)


class EmbeddingTimeout(ProviderError):
    """Deadline expired before all embedding batches completed."""
    pass


class EmbeddingCancelled(ProviderError):
    """Caller cancelled embedding before all batches completed."""
    pass


class DimensionMismatch(MemoryEngineError):
    """Two vectors in one memory space have different lengths."""

    def __init__(self, expected: int, actual: int, token_usage: Optional["TokenUsage"] = None):
        self.expected = expected
        self.actual = actual
        self.token_usage = token_usage
        super().__init__(f"Vector dimension mismatch: expected {expected}, got {actual}")


class ParseError(MemoryEngineError):
    """Structured document data could not be interpreted."""
    pass


class PatternNotFound(MemoryEngineError, KeyError):
    """No memory pattern with the requested id."""

    def __init__(self, memory_id: str):
        self.memory_id = memory_id
        super().__init__(f"Memory pattern not found: {memory_id}")

    def __str__(self) -> str:
        return self.message
