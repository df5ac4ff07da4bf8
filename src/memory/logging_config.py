"""
Memory Engine Logging Configuration
===================================

Console logging for development, JSON lines for production, optional
rotating log file.

Usage:
    from src.memory.logging_config import setup_logging

    setup_logging(json_output=True, log_file="logs/memory.log")

Structured fields passed through ``extra=`` (company_id, document_id,
tokens, cost_usd, duration, search_type) are emitted as JSON keys.
"""

import json
import logging
import logging.handlers
import os
import sys
from datetime import datetime, timezone
from typing import Optional

from .config import LoggingConfig

EXTRA_FIELDS = ("company_id", "document_id", "tokens", "cost_usd", "duration", "search_type")


class JSONFormatter(logging.Formatter):
    """
    One JSON object per record:
        {"ts": "...", "level": "INFO", "logger": "src.memory.engine", "msg": "...", "company_id": "..."}
    """

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }

        if record.exc_info and record.exc_info[0] is not None:
            log_entry["exception"] = self.formatException(record.exc_info)

        for key in EXTRA_FIELDS:
            val = getattr(record, key, None)
            if val is not None:
                log_entry[key] = val

        return json.dumps(log_entry, default=str)


def setup_logging(
    level: str = "INFO",
    json_output: bool = False,
    log_file: Optional[str] = None,
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 5,
):
    """
    Configure root logging.

    Args:
        level: Root log level (DEBUG, INFO, WARNING, ERROR)
        json_output: Emit JSON lines instead of human-readable text
        log_file: Optional rotating log file
        max_bytes: Max file size before rotation
        backup_count: Rotated files to keep
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.handlers.clear()

    if json_output:
        formatter = JSONFormatter()
    else:
        formatter = logging.Formatter(
            "%(asctime)s [%(levelname)-8s] %(name)-28s | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(formatter)
    root.addHandler(console)

    if log_file:
        os.makedirs(os.path.dirname(log_file) or ".", exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=max_bytes,
            backupCount=backup_count,
        )
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    # Quiet noisy libraries
    for name in ("urllib3", "httpx", "openai"):
        logging.getLogger(name).setLevel(logging.WARNING)

    root.info(
        "Logging configured: level=%s json=%s file=%s",
        level, json_output, log_file or "none",
    )


def setup_logging_from_config(config: Optional[LoggingConfig] = None) -> None:
    config = config or LoggingConfig()
    setup_logging(
        level=config.level,
        json_output=config.json_logs,
        log_file=config.log_file,
        max_bytes=config.max_bytes,
        backup_count=config.backup_count,
    )
