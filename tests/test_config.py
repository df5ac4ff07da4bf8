"""
Tests for environment configuration, logging setup and the CLI parser.
"""

import json
import logging
from unittest.mock import patch

import pytest

from src.memory import config as config_module
from src.memory.cli import build_parser
from src.memory.config import (
    ChunkingConfig,
    DatabaseConfig,
    EmbeddingConfig,
    LearnerConfig,
    LoggingConfig,
    SearchConfig,
    Settings,
    get_env,
    get_env_bool,
    get_env_int,
    get_settings,
    reset_settings,
)
from src.memory.errors import ConfigError
from src.memory.logging_config import JSONFormatter, setup_logging_from_config


class TestEnvHelpers:

    @patch.dict("os.environ", {"X_INT": "12", "X_BAD": "doce", "X_FLAG": "Yes"})
    def test_typed_values(self):
        assert get_env_int("X_INT", 0) == 12
        assert get_env_int("X_MISSING", 7) == 7
        assert get_env_bool("X_FLAG", False) is True

        with pytest.raises(ConfigError):
            get_env_int("X_BAD", 0)

    @patch.dict("os.environ", {}, clear=True)
    def test_required_variable(self):
        with pytest.raises(ConfigError):
            get_env("VOYAGE_API_KEY", required=True)


class TestSettings:
    """Tests for dataclass defaults and validation."""

    @patch.dict("os.environ", {}, clear=True)
    def test_defaults(self):
        settings = Settings()

        assert settings.voyage.api_key is None
        assert settings.voyage.model == "voyage-3.5-lite"
        assert settings.embedding.batch_size == 128
        assert settings.embedding.dimensions is None
        assert settings.chunking.max_chunk_size == 400
        assert settings.chunking.overlap == 50
        assert settings.search.threshold == 0.7
        assert (settings.search.semantic_weight, settings.search.keyword_weight) == (0.7, 0.3)
        assert settings.learner.default_confidence == 0.75
        assert settings.learner.embed_summaries is True
        assert not settings.is_production()

    @patch.dict("os.environ", {
        "EMBEDDING_DIMENSIONS": "512",
        "CHUNK_MAX_SIZE": "800",
        "HYBRID_KEYWORD_WEIGHT": "0.5",
        "MEMORY_EMBED_SUMMARIES": "false",
        "ENVIRONMENT": "production",
    })
    def test_env_overrides(self):
        settings = Settings()

        assert settings.embedding.dimensions == 512
        assert settings.chunking.max_chunk_size == 800
        assert settings.search.keyword_weight == 0.5
        assert settings.learner.embed_summaries is False
        assert settings.is_production()

    def test_invalid_values(self):
        with pytest.raises(ConfigError):
            EmbeddingConfig(batch_size=0)
        with pytest.raises(ConfigError):
            ChunkingConfig(max_chunk_size=100, overlap=100)
        with pytest.raises(ConfigError):
            SearchConfig(semantic_weight=0.0, keyword_weight=0.0)
        with pytest.raises(ConfigError):
            LearnerConfig(default_confidence=1.5)

    def test_database_connection_dict(self):
        assert DatabaseConfig(url="postgresql://u@h/db").connection_dict == {"dsn": "postgresql://u@h/db"}

        params = DatabaseConfig(url=None, host="db", port=6543, name="mem").connection_dict
        assert params["host"] == "db"
        assert params["port"] == 6543
        assert params["dbname"] == "mem"

    def test_settings_cached(self):
        reset_settings()
        try:
            assert get_settings() is get_settings()
        finally:
            reset_settings()
        assert config_module._settings is None


class TestJSONFormatter:

    def test_extra_fields_emitted(self):
        record = logging.LogRecord("src.memory.engine", logging.INFO, __file__, 1, "Stored %d chunks", (3,), None)
        record.company_id = "C1"
        record.tokens = 120

        entry = json.loads(JSONFormatter().format(record))

        assert entry["msg"] == "Stored 3 chunks"
        assert entry["level"] == "INFO"
        assert entry["company_id"] == "C1"
        assert entry["tokens"] == 120
        assert "document_id" not in entry


class TestCliParser:

    def test_search_arguments(self):
        args = build_parser().parse_args(["search", "salary slip March", "--company", "C1", "--semantic"])

        assert args.command == "search"
        assert args.semantic is True
        assert args.document_type == "payslip"
        assert args.provider == "voyage"

    def test_validate_arguments(self):
        args = build_parser().parse_args(["--provider", "openai", "validate", "m-1", "--reject", "--feedback", "bad"])

        assert args.provider == "openai"
        assert args.reject is True
        assert args.feedback == "bad"


class TestLoggingConfig:

    @patch.dict("os.environ", {"LOG_MAX_BYTES": "2048", "LOG_BACKUP_COUNT": "2", "LOG_FILE": "logs/memory.log"}, clear=True)
    def test_rotation_passed_to_setup(self):
        config = LoggingConfig()

        with patch("src.memory.logging_config.setup_logging") as mock_setup:
            setup_logging_from_config(config)

        assert (config.max_bytes, config.backup_count) == (2048, 2)
        mock_setup.assert_called_once_with(
            level="INFO",
            json_output=False,
            log_file="logs/memory.log",
            max_bytes=2048,
            backup_count=2,
        )

    @patch.dict("os.environ", {}, clear=True)
    def test_rotation_defaults(self):
        config = LoggingConfig()

        assert config.max_bytes == 10 * 1024 * 1024
        assert config.backup_count == 5
        with pytest.raises(ConfigError):
            LoggingConfig(backup_count=-1)
