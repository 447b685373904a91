"""
Maintenance CLI for ydocstore.

Inspects and maintains the update log of a SQLite database:
1. list    - document ids with stored rows
2. stats   - delta count, size and checkpoint watermark of a document
3. compact - fold a document's log into one full-state update
4. export  - write a document's full state as a Yjs update file
5. delete  - remove a document

Usage:
    ydocstore [--db-path PATH] [--table NAME] [-v] <command> [args]

Configuration is read from the environment (STORE_*, SQLITE_*, LOG_*),
with --db-path and --table taking precedence.

Invariants:
    - Every command opens and closes its own store
    - Failures exit with status 1 and a message on stderr

How to change safely:
    - Add new commands additively
    - Commands must go through DocumentLogService, not raw SQL
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from dataclasses import replace
from pathlib import Path

import json_log_formatter

from ..config import CompactionMode, ObservabilityConfig, ServiceConfig
from ..document import DocumentAdapter, YDocAdapter
from ..errors import DocStoreError
from ..service import DocumentLogService
from ..store import LogStore

logger = logging.getLogger(__name__)


def setup_logging(config: ObservabilityConfig, verbose: bool = False) -> None:
    """Configure root logging.

    Args:
        config: Logging configuration
        verbose: Force DEBUG level
    """
    level = logging.DEBUG if verbose else getattr(logging, config.log_level.upper(), logging.INFO)

    if config.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ydocstore",
        description="Inspect and maintain a ydocstore update log",
    )
    parser.add_argument("--db-path", help="SQLite database file (overrides STORE_DB_PATH)")
    parser.add_argument("--table", help="Log table name (overrides STORE_TABLE_NAME)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")

    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("list", help="List stored documents")

    stats = commands.add_parser("stats", help="Show log statistics of a document")
    stats.add_argument("document_id")

    compact = commands.add_parser("compact", help="Compact a document's log")
    compact.add_argument("document_id")

    export = commands.add_parser("export", help="Write a document's full state to a file")
    export.add_argument("document_id")
    export.add_argument("--output", "-o", required=True, help="Destination file")

    delete = commands.add_parser("delete", help="Delete a document")
    delete.add_argument("document_id")

    return parser


def load_config(args: argparse.Namespace) -> ServiceConfig:
    """Build configuration from the environment and command-line overrides."""
    config = ServiceConfig.from_env()
    storage = config.storage
    if args.db_path:
        storage = replace(storage, db_path=args.db_path)
    if args.table:
        storage = replace(storage, table_name=args.table)
    config.storage = storage
    # Maintenance commands never trigger compaction implicitly
    config.compaction = replace(config.compaction, mode=CompactionMode.DISABLED)
    config.validate()
    return config


async def run(
    args: argparse.Namespace,
    config: ServiceConfig,
    adapter: DocumentAdapter | None = None,
) -> int:
    """Execute one command.

    Args:
        args: Parsed command-line arguments
        config: Service configuration
        adapter: Document model (defaults to YDocAdapter)

    Returns:
        Process exit code
    """
    store = await LogStore.connect(config.storage)
    service = DocumentLogService(store, adapter or YDocAdapter(), config.compaction)

    try:
        if args.command == "list":
            for document_id in await service.list_documents():
                print(document_id)

        elif args.command == "stats":
            stats = await store.get_stats(args.document_id)
            print(f"Document: {args.document_id}")
            print(f"  Deltas: {stats['deltas']}")
            print(f"  Delta bytes: {stats['delta_bytes']}")
            print(f"  Latest sequence: {stats['latest_sequence']}")
            print(f"  High watermark: {stats['high_watermark']}")

        elif args.command == "compact":
            watermark = await service.compact_document(args.document_id)
            if watermark is None:
                print(f"Nothing to compact for {args.document_id}")
            else:
                print(f"Compacted {args.document_id}: high watermark {watermark}")

        elif args.command == "export":
            if not await service.has_document(args.document_id):
                print(f"Document not found: {args.document_id}", file=sys.stderr)
                return 1
            update = await service.encode_document(args.document_id)
            Path(args.output).write_bytes(update)
            print(f"Exported {args.document_id} ({len(update)} bytes) to {args.output}")

        elif args.command == "delete":
            rows = await service.delete_document(args.document_id)
            print(f"Deleted {args.document_id} ({rows} rows)")

    finally:
        await service.close()

    return 0


def main() -> None:
    """CLI entry point for the maintenance tool."""
    args = build_parser().parse_args()

    try:
        config = load_config(args)
    except ValueError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(config.observability, verbose=args.verbose)
    config.log_config()

    try:
        code = asyncio.run(run(args, config))
    except DocStoreError as e:
        print(f"{args.command} failed: {e.message}", file=sys.stderr)
        sys.exit(1)

    sys.exit(code)


if __name__ == "__main__":
    main()
