"""
Memory Engine Configuration
===========================

Centralized configuration management using environment variables.
Supports both .env files and system environment variables.

Environment Variables:
    VOYAGE_API_KEY: Voyage AI key (required for the Voyage provider)
    VOYAGE_MODEL: Embedding model (default: voyage-3.5-lite)
    VOYAGE_API_URL: Embeddings endpoint
    VOYAGE_REQUEST_TIMEOUT: HTTP timeout in seconds (default: 30)

    EMBEDDING_BATCH_SIZE: Inputs per provider request (default: 128)
    EMBEDDING_MAX_CONCURRENCY: Concurrent provider requests (default: 4)
    EMBEDDING_MAX_RETRIES: Retry attempts per batch (default: 3)
    EMBEDDING_RETRY_BASE_DELAY / EMBEDDING_RETRY_MAX_DELAY: Backoff bounds
    EMBEDDING_DIMENSIONS: Expected vector length (optional)
    EMBEDDING_TIMEOUT: Deadline for one batch call in seconds (optional)

    CHUNK_MAX_SIZE: Characters per chunk (default: 400)
    CHUNK_OVERLAP: Overlap characters (default: 50)
    DEDUP_SIMILARITY_THRESHOLD: Near-duplicate bar (default: 0.95)

    SEARCH_LIMIT / SEARCH_THRESHOLD: Semantic search defaults (5 / 0.7)
    HYBRID_LIMIT: Hybrid search result count (default: 10)
    HYBRID_SEMANTIC_WEIGHT / HYBRID_KEYWORD_WEIGHT: Fusion weights (0.7 / 0.3)

    MEMORY_DEFAULT_CONFIDENCE: Initial pattern confidence (default: 0.75)
    MEMORY_MERGE_THRESHOLD: Fuzzy pattern match bar (default: 0.85)
    MEMORY_RECENCY_HALF_LIFE_DAYS: Evidence weight doubling period (default: 90)
    MEMORY_AUTO_VALIDATE_ABOVE: Confidence that skips review (default: 0.9)
    MEMORY_EMBED_SUMMARIES: Embed document summaries for memory search (default: true)

    DATABASE_URL or DATABASE_HOST/PORT/NAME/USER/PASSWORD: PostgreSQL

    LOG_LEVEL / LOG_JSON / LOG_FILE: Logging output (INFO / false / none)
    LOG_MAX_BYTES / LOG_BACKUP_COUNT: Log file rotation (10 MiB / 5 files)
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from .errors import ConfigError

# Load environment variables from .env file if present
env_path = Path(__file__).parent.parent.parent / ".env"
if env_path.exists():
    load_dotenv(env_path)


def get_env(key: str, default: Optional[str] = None, required: bool = False) -> Optional[str]:
    """
    Get environment variable with optional default and required validation.

    Raises:
        ConfigError: If required=True and variable is not set
    """
    value = os.getenv(key, default)
    if required and not value:
        raise ConfigError(f"Required environment variable '{key}' is not set")
    return value


def get_env_int(key: str, default: int) -> int:
    """Get environment variable as integer."""
    value = os.getenv(key)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError:
        raise ConfigError(f"Environment variable '{key}' must be an integer, got: {value}")


def get_env_float(key: str, default: Optional[float]) -> Optional[float]:
    """Get environment variable as float."""
    value = os.getenv(key)
    if value is None or value == "":
        return default
    try:
        return float(value)
    except ValueError:
        raise ConfigError(f"Environment variable '{key}' must be a float, got: {value}")


def get_env_bool(key: str, default: bool) -> bool:
    """Get environment variable as boolean."""
    value = os.getenv(key)
    if value is None:
        return default
    return value.lower() in ("true", "1", "yes", "on")


def _optional_int(key: str) -> Optional[int]:
    value = get_env_int(key, 0)
    return value or None


@dataclass
class VoyageConfig:
    """Voyage AI embedding provider configuration."""

    api_key: Optional[str] = field(default_factory=lambda: get_env("VOYAGE_API_KEY"))
    model: str = field(default_factory=lambda: get_env("VOYAGE_MODEL", "voyage-3.5-lite"))
    api_url: str = field(default_factory=lambda: get_env(
        "VOYAGE_API_URL", "https://api.voyageai.com/v1/embeddings"
    ))
    request_timeout: float = field(default_factory=lambda: get_env_float("VOYAGE_REQUEST_TIMEOUT", 30.0))

    def require_api_key(self) -> str:
        if not self.api_key:
            raise ConfigError("VOYAGE_API_KEY is required for the Voyage embedding provider")
        return self.api_key


@dataclass
class EmbeddingConfig:
    """Batching, concurrency and retry policy for embedding calls."""

    batch_size: int = field(default_factory=lambda: get_env_int("EMBEDDING_BATCH_SIZE", 128))
    max_concurrency: int = field(default_factory=lambda: get_env_int("EMBEDDING_MAX_CONCURRENCY", 4))
    max_retries: int = field(default_factory=lambda: get_env_int("EMBEDDING_MAX_RETRIES", 3))
    retry_base_delay: float = field(default_factory=lambda: get_env_float("EMBEDDING_RETRY_BASE_DELAY", 1.0))
    retry_max_delay: float = field(default_factory=lambda: get_env_float("EMBEDDING_RETRY_MAX_DELAY", 30.0))
    dimensions: Optional[int] = field(default_factory=lambda: _optional_int("EMBEDDING_DIMENSIONS"))
    timeout: Optional[float] = field(default_factory=lambda: get_env_float("EMBEDDING_TIMEOUT", None))

    def __post_init__(self):
        """Validate configuration after initialization."""
        if self.batch_size <= 0:
            raise ConfigError("batch_size must be positive")
        if self.max_concurrency <= 0:
            raise ConfigError("max_concurrency must be positive")
        if self.max_retries < 0:
            raise ConfigError("max_retries cannot be negative")
        if self.dimensions is not None and self.dimensions <= 0:
            raise ConfigError("dimensions must be positive")


@dataclass
class ChunkingConfig:
    """Chunking and deduplication configuration."""

    max_chunk_size: int = field(default_factory=lambda: get_env_int("CHUNK_MAX_SIZE", 400))
    overlap: int = field(default_factory=lambda: get_env_int("CHUNK_OVERLAP", 50))
    dedup_threshold: float = field(default_factory=lambda: get_env_float("DEDUP_SIMILARITY_THRESHOLD", 0.95))

    def __post_init__(self):
        if self.max_chunk_size <= 0:
            raise ConfigError("max_chunk_size must be positive")
        if not 0 <= self.overlap < self.max_chunk_size:
            raise ConfigError("overlap must be in [0, max_chunk_size)")
        if not 0 < self.dedup_threshold <= 1:
            raise ConfigError("dedup_threshold must be in (0, 1]")


@dataclass
class SearchConfig:
    """Default search parameters."""

    limit: int = field(default_factory=lambda: get_env_int("SEARCH_LIMIT", 5))
    threshold: float = field(default_factory=lambda: get_env_float("SEARCH_THRESHOLD", 0.7))
    hybrid_limit: int = field(default_factory=lambda: get_env_int("HYBRID_LIMIT", 10))
    semantic_weight: float = field(default_factory=lambda: get_env_float("HYBRID_SEMANTIC_WEIGHT", 0.7))
    keyword_weight: float = field(default_factory=lambda: get_env_float("HYBRID_KEYWORD_WEIGHT", 0.3))

    def __post_init__(self):
        if self.limit <= 0 or self.hybrid_limit <= 0:
            raise ConfigError("search limits must be positive")
        if self.semantic_weight < 0 or self.keyword_weight < 0:
            raise ConfigError("hybrid weights cannot be negative")
        if self.semantic_weight + self.keyword_weight == 0:
            raise ConfigError("at least one hybrid weight must be positive")


@dataclass
class LearnerConfig:
    """Pattern learning configuration."""

    default_confidence: float = field(default_factory=lambda: get_env_float("MEMORY_DEFAULT_CONFIDENCE", 0.75))
    merge_threshold: float = field(default_factory=lambda: get_env_float("MEMORY_MERGE_THRESHOLD", 0.85))
    recency_half_life_days: float = field(
        default_factory=lambda: get_env_float("MEMORY_RECENCY_HALF_LIFE_DAYS", 90.0)
    )
    auto_validate_above: float = field(default_factory=lambda: get_env_float("MEMORY_AUTO_VALIDATE_ABOVE", 0.9))
    embed_summaries: bool = field(default_factory=lambda: get_env_bool("MEMORY_EMBED_SUMMARIES", True))

    def __post_init__(self):
        if not 0 <= self.default_confidence <= 1:
            raise ConfigError("default_confidence must be in [0, 1]")
        if not 0 < self.merge_threshold <= 1:
            raise ConfigError("merge_threshold must be in (0, 1]")
        if self.recency_half_life_days <= 0:
            raise ConfigError("recency_half_life_days must be positive")


@dataclass
class DatabaseConfig:
    """PostgreSQL (pgvector) configuration."""

    url: Optional[str] = field(default_factory=lambda: get_env("DATABASE_URL"))
    host: str = field(default_factory=lambda: get_env("DATABASE_HOST", "localhost"))
    port: int = field(default_factory=lambda: get_env_int("DATABASE_PORT", 5432))
    name: str = field(default_factory=lambda: get_env("DATABASE_NAME", "payroll_memory"))
    user: str = field(default_factory=lambda: get_env("DATABASE_USER", "postgres"))
    password: str = field(default_factory=lambda: get_env("DATABASE_PASSWORD", ""))
    ssl_mode: str = field(default_factory=lambda: get_env("DATABASE_SSL_MODE", "prefer"))
    connect_timeout: int = field(default_factory=lambda: get_env_int("DATABASE_CONNECT_TIMEOUT", 10))

    @property
    def connection_dict(self) -> dict:
        """Connection parameters as dictionary for psycopg2."""
        if self.url:
            return {"dsn": self.url}
        return {
            "host": self.host,
            "port": self.port,
            "dbname": self.name,
            "user": self.user,
            "password": self.password,
            "sslmode": self.ssl_mode,
            "connect_timeout": self.connect_timeout,
        }


@dataclass
class LoggingConfig:
    """Logging configuration."""

    level: str = field(default_factory=lambda: get_env("LOG_LEVEL", "INFO"))
    log_file: Optional[str] = field(default_factory=lambda: get_env("LOG_FILE"))
    json_logs: bool = field(default_factory=lambda: get_env_bool("LOG_JSON", False))
    max_bytes: int = field(default_factory=lambda: get_env_int("LOG_MAX_BYTES", 10 * 1024 * 1024))
    backup_count: int = field(default_factory=lambda: get_env_int("LOG_BACKUP_COUNT", 5))

    def __post_init__(self):
        if self.max_bytes < 0 or self.backup_count < 0:
            raise ConfigError("log rotation settings cannot be negative")


@dataclass
class Settings:
    """Main settings container."""

    voyage: VoyageConfig = field(default_factory=VoyageConfig)
    embedding: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    chunking: ChunkingConfig = field(default_factory=ChunkingConfig)
    search: SearchConfig = field(default_factory=SearchConfig)
    learner: LearnerConfig = field(default_factory=LearnerConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    app_name: str = "payroll-memory"
    environment: str = field(default_factory=lambda: get_env("ENVIRONMENT", "development"))

    def is_production(self) -> bool:
        return self.environment.lower() in ("production", "prod")


def load_settings() -> Settings:
    """
    Load and validate all settings from the environment.

    Raises:
        ConfigError: If configuration is invalid
    """
    return Settings()


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get cached settings, loading them on first use."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings() -> None:
    """Drop cached settings (tests)."""
    global _settings
    _settings = None
