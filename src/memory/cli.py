"""
Memory CLI
==========

Operator commands for the payroll memory store.

Usage:
    python -m src.memory.cli init                                   # Apply database schema
    python -m src.memory.cli ingest doc.txt --company C1 --document D1
    python -m src.memory.cli learn doc.json --company C1 --employee E1
    python -m src.memory.cli search "salary slip March" --company C1
    python -m src.memory.cli validate <memory_id> --reject --feedback "wrong CIF"
    python -m src.memory.cli stats --company C1
"""

import argparse
import asyncio
import json
import logging
import os
import sys

from .config import get_settings
from .engine import DEFAULT_DOCUMENT_TYPE, MemoryEngine
from .errors import MemoryEngineError
from .logging_config import setup_logging_from_config
from .store import PgVectorStore

logger = logging.getLogger(__name__)

MIGRATION_PATH = os.path.join(
    os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))),
    "database", "migrations", "001_memory_pgvector.sql",
)


def _engine(args) -> MemoryEngine:
    settings = get_settings()
    return MemoryEngine.from_settings(settings, provider_name=args.provider, store=PgVectorStore(settings.database))


def init_schema(args) -> bool:
    """Apply the pgvector schema."""
    if not os.path.exists(MIGRATION_PATH):
        logger.error(f"Migration file not found: {MIGRATION_PATH}")
        return False

    with open(MIGRATION_PATH, "r") as f:
        migration_sql = f.read()

    store = PgVectorStore(get_settings().database)
    try:
        store.apply_migrations(migration_sql)
        return True
    finally:
        store.close()


def ingest(args) -> bool:
    """Chunk, embed and store a text file."""
    with open(args.path, "r", encoding="utf-8") as f:
        text = f.read()

    engine = _engine(args)
    try:
        usage = asyncio.run(engine.store_document_embeddings(
            document_id=args.document,
            company_id=args.company,
            document_type=args.document_type,
            extracted_text=text,
            employee_id=args.employee,
        ))
    finally:
        engine.store.close()

    print(f"Chunks processed:   {usage.chunks_processed}")
    print(f"Duplicates skipped: {usage.duplicates_skipped}")
    print(f"Tokens:             {usage.total_tokens}")
    print(f"Estimated cost:     ${usage.estimated_cost:.6f}")
    return True


def learn(args) -> bool:
    """Learn patterns from a processed document (JSON)."""
    with open(args.path, "r", encoding="utf-8") as f:
        document_data = json.load(f)

    engine = _engine(args)
    try:
        patterns = asyncio.run(engine.learn_from_document(
            company_id=args.company,
            employee_id=args.employee,
            document_data=document_data,
            confidence=args.confidence,
            document_type=args.document_type,
            document_id=args.document,
        ))
    finally:
        engine.store.close()

    for pattern in patterns:
        print(f"  [{pattern.validation_status.value:9}] {pattern.confidence:.2f} x{pattern.usage_count} {pattern.pattern}")
    return True


def search(args) -> bool:
    """Run a hybrid or semantic search and print the results."""
    engine = _engine(args)
    try:
        if args.semantic:
            results = asyncio.run(engine.find_similar_documents(
                args.query, args.company, args.document_type, limit=args.limit, threshold=args.threshold,
            ))
        else:
            results = asyncio.run(engine.hybrid_search(args.query, args.company, limit=args.limit))
    finally:
        engine.store.close()

    print(f"\n{'=' * 60}")
    print(f"Query: {args.query}")
    print(f"Results: {len(results)}")
    print("=" * 60)

    for i, r in enumerate(results, 1):
        if args.semantic:
            print(f"\n[{i}] Similarity: {r.similarity_score:.3f}  document={r.document_id}")
        else:
            print(
                f"\n[{i}] Combined: {r.combined_score:.3f} "
                f"(semantic {r.semantic_score:.3f}, keyword {r.keyword_score:.3f})  document={r.document_id}"
            )
        print(f"    {r.text_chunk[:200]}")

    for warning in results.warnings:
        print(f"\nwarning: {warning}")
    return True


def validate(args) -> bool:
    """Validate or reject a learned pattern."""
    engine = _engine(args)
    try:
        pattern = asyncio.run(engine.validate_memory(args.memory_id, not args.reject, args.feedback))
    finally:
        engine.store.close()

    print(f"{pattern.id}: {pattern.validation_status.value} (confidence {pattern.confidence:.2f})")
    return True


def show_stats(args) -> bool:
    """Show memory analytics for a company."""
    engine = _engine(args)
    try:
        analytics = asyncio.run(engine.get_memory_analytics(args.company))
    finally:
        engine.store.close()

    print(f"\n{'=' * 60}")
    print(f"MEMORY STATISTICS: {analytics.company_id}")
    print("=" * 60)
    print(f"\nPatterns: {analytics.total_patterns}  (usage {analytics.total_usage})")
    print(f"Weighted confidence: {analytics.weighted_confidence:.3f}")
    print(f"Stored chunks: {analytics.chunk_count}")

    print("\nBy status:")
    for status, count in analytics.by_status.items():
        print(f"  {status}: {count}")

    print("\nBy type:")
    for pattern_type, count in sorted(analytics.by_type.items()):
        print(f"  {pattern_type}: {count}")

    print("\nTop patterns:")
    for pattern in analytics.top_patterns:
        print(f"  x{pattern.usage_count} {pattern.confidence:.2f} {pattern.pattern}")
    return True


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Payroll memory CLI")
    parser.add_argument("--provider", default="voyage", choices=["voyage", "openai"], help="Embedding provider")
    subparsers = parser.add_subparsers(dest="command", help="Command")

    subparsers.add_parser("init", help="Apply database schema")

    ingest_parser = subparsers.add_parser("ingest", help="Embed and store a text file")
    ingest_parser.add_argument("path", help="Extracted text file")
    ingest_parser.add_argument("--company", required=True)
    ingest_parser.add_argument("--document", required=True)
    ingest_parser.add_argument("--employee")
    ingest_parser.add_argument("--document-type", default=DEFAULT_DOCUMENT_TYPE)

    learn_parser = subparsers.add_parser("learn", help="Learn patterns from processed JSON")
    learn_parser.add_argument("path", help="Processed document JSON")
    learn_parser.add_argument("--company", required=True)
    learn_parser.add_argument("--employee")
    learn_parser.add_argument("--document")
    learn_parser.add_argument("--document-type", default=DEFAULT_DOCUMENT_TYPE)
    learn_parser.add_argument("--confidence", type=float)

    search_parser = subparsers.add_parser("search", help="Search stored chunks")
    search_parser.add_argument("query", help="Search query")
    search_parser.add_argument("--company", required=True)
    search_parser.add_argument("--document-type", default=DEFAULT_DOCUMENT_TYPE)
    search_parser.add_argument("--semantic", action="store_true", help="Vector search only")
    search_parser.add_argument("--limit", type=int)
    search_parser.add_argument("--threshold", type=float)

    validate_parser = subparsers.add_parser("validate", help="Validate or reject a pattern")
    validate_parser.add_argument("memory_id")
    validate_parser.add_argument("--reject", action="store_true")
    validate_parser.add_argument("--feedback")

    stats_parser = subparsers.add_parser("stats", help="Show memory analytics")
    stats_parser.add_argument("--company", required=True)

    return parser


COMMANDS = {
    "init": init_schema,
    "ingest": ingest,
    "learn": learn,
    "search": search,
    "validate": validate,
    "stats": show_stats,
}


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command not in COMMANDS:
        parser.print_help()
        return

    setup_logging_from_config(get_settings().logging)
    try:
        success = COMMANDS[args.command](args)
    except MemoryEngineError as e:
        logger.error(f"{args.command} failed: {e}")
        success = False

    sys.exit(0 if success else 1)


if __name__ == "__main__":
    main()
