#!/usr/bin/env python3
"""
Inkrow Command Line Interface
=============================

Offline operations on persisted documents and the result cache.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio | 2026-01-12

Usage:
    inkrow config                   Show effective configuration
    inkrow validate doc.json        Validate every row of a document
    inkrow timeline doc.json        Export the activation timeline as JSON
    inkrow cache purge              Purge expired cache entries
    inkrow version                  Show version
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import List, Optional

from inkrow_core.caching import DiskCache, NamespacedCache, create_cache_backend
from inkrow_core.cas import SympyEquivalenceService
from inkrow_core.config import find_config_file, load_config
from inkrow_core.logging_utils import configure_logging
from inkrow_core.models import ValidationStatus
from inkrow_core.persistence import JsonDocumentStore
from inkrow_core.rows import RowManager
from inkrow_core.validation import ValidationOrchestrator, ValidationSummary
from inkrow_core.version import get_short_banner

# =============================================================================
# ANSI Colors
# =============================================================================

class Colors:
    """ANSI color codes for terminal output."""
    RED = '\033[0;31m'
    GREEN = '\033[0;32m'
    YELLOW = '\033[1;33m'
    BLUE = '\033[0;34m'
    CYAN = '\033[0;36m'
    BOLD = '\033[1m'
    NC = '\033[0m'  # No Color

    @classmethod
    def disable(cls):
        """Disable colors (for non-TTY output)."""
        cls.RED = cls.GREEN = cls.YELLOW = cls.BLUE = ''
        cls.CYAN = cls.BOLD = cls.NC = ''


def print_ok(msg: str) -> None:
    print(f"{Colors.GREEN}✓{Colors.NC} {msg}")


def print_warn(msg: str) -> None:
    print(f"{Colors.YELLOW}⚠{Colors.NC} {msg}")


def print_error(msg: str) -> None:
    print(f"{Colors.RED}✗{Colors.NC} {msg}")


def print_header(msg: str) -> None:
    print(f"\n{Colors.BOLD}{Colors.CYAN}{msg}{Colors.NC}")
    print("=" * len(msg))


STATUS_MARKS = {
    ValidationStatus.VALIDATED: print_ok,
    ValidationStatus.INVALID: print_warn,
    ValidationStatus.ERROR: print_error,
}


# =============================================================================
# Commands
# =============================================================================

def cmd_config(args: argparse.Namespace) -> int:
    """Show current configuration."""
    print_header("Inkrow Configuration")

    path = Path(args.config) if args.config else find_config_file()
    if path:
        print_ok(f"Config file: {path}")
    else:
        print_warn("No configuration file found, using defaults")
    print()

    config = load_config(path)
    for section, values in config.to_dict().items():
        if not isinstance(values, dict):
            continue
        print(f"{Colors.BOLD}{section}:{Colors.NC}")
        for key, value in values.items():
            print(f"  {key}: {value}")
        print()
    return 0


def cmd_validate(args: argparse.Namespace) -> int:
    """Validate every row of a persisted document."""
    config = load_config(Path(args.config) if args.config else None)
    store = JsonDocumentStore(Path(args.document))
    if not store.exists():
        print_error(f"Document not found: {args.document}")
        return 1

    rows = RowManager(row_height=config.tiling.row_height, start_y=config.tiling.start_y)
    store.load_into(rows)
    if store.last_error is not None:
        print_error(store.last_error.describe())
        return 1

    backend = create_cache_backend(
        config.cache.backend,
        cache_dir=Path(config.cache.cache_dir),
        max_size=config.cache.max_size,
        ttl=config.cache.ttl,
    )
    service = SympyEquivalenceService(timeout=config.validation.timeout)
    orchestrator = ValidationOrchestrator(
        rows,
        service,
        cache=NamespacedCache(backend, "validation", default_ttl=config.cache.ttl),
        config=config.validation,
    )

    async def run() -> ValidationSummary:
        try:
            return await orchestrator.validate_all()
        finally:
            await service.close()

    summary = asyncio.run(run())

    print_header(f"Validation of {args.document}")
    for row in rows.get_rows():
        if not row.has_expression:
            continue
        mark = STATUS_MARKS.get(row.validation_status, print_warn)
        detail = row.validation_result.method.value if row.validation_result else "-"
        if row.error_message:
            detail = row.error_message
        mark(f"{row.id}: {row.expression}  [{row.validation_status.value}, {detail}]")

    print()
    counts = summary.to_dict()
    print(", ".join(f"{key}={value}" for key, value in counts.items()))

    if args.save:
        store.save(rows.serialize())
        print_ok(f"Saved {args.document}")
    return 0 if summary.invalid == 0 and summary.errors == 0 else 2


def cmd_timeline(args: argparse.Namespace) -> int:
    """Export the activation timeline."""
    store = JsonDocumentStore(Path(args.document))
    rows = RowManager()
    store.load_into(rows)
    if store.last_error is not None:
        print_error(store.last_error.describe())
        return 1
    timeline = [entry.to_dict() for entry in rows.get_activation_timeline()]
    print(json.dumps(timeline, indent=2))
    return 0


def cmd_cache_purge(args: argparse.Namespace) -> int:
    """Purge expired entries of the disk cache."""
    config = load_config(Path(args.config) if args.config else None)
    cache_dir = Path(args.cache_dir or config.cache.cache_dir)
    if not cache_dir.exists():
        print_warn(f"No cache at {cache_dir}")
        return 0
    cache = DiskCache(cache_dir=cache_dir, max_size=config.cache.max_size, default_ttl=config.cache.ttl)
    purged = cache.purge_expired()
    print_ok(f"Purged {purged} expired entr{'y' if purged == 1 else 'ies'}, {cache.size()} left in {cache_dir}")
    return 0


def cmd_version(args: argparse.Namespace) -> int:
    print(get_short_banner())
    return 0


# =============================================================================
# Main
# =============================================================================

def main(argv: Optional[List[str]] = None) -> int:
    """Main CLI entry point."""
    # Disable colors if not TTY
    if not sys.stdout.isatty():
        Colors.disable()

    parser = argparse.ArgumentParser(
        prog="inkrow",
        description="Inkrow - Row pipeline for handwritten math",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  inkrow config                     Show current configuration
  inkrow validate notes.json --save Validate rows and store the results
  inkrow timeline notes.json        Print the activation timeline
  inkrow cache purge                Drop expired cache entries
        """
    )
    parser.add_argument("-c", "--config", help="Path to inkrow.yaml")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # config
    sub = subparsers.add_parser("config", help="Show current configuration")
    sub.set_defaults(func=cmd_config)

    # validate
    sub = subparsers.add_parser("validate", help="Validate a persisted document")
    sub.add_argument("document", help="Document JSON file")
    sub.add_argument("--save", action="store_true", help="Write validation results back")
    sub.set_defaults(func=cmd_validate)

    # timeline
    sub = subparsers.add_parser("timeline", help="Export the activation timeline")
    sub.add_argument("document", help="Document JSON file")
    sub.set_defaults(func=cmd_timeline)

    # cache commands
    cache_parser = subparsers.add_parser("cache", help="Cache maintenance")
    cache_sub = cache_parser.add_subparsers(dest="cache_command")

    # cache purge
    sub = cache_sub.add_parser("purge", help="Purge expired entries")
    sub.add_argument("--cache-dir", help="Cache directory (default from config)")
    sub.set_defaults(func=cmd_cache_purge)

    # version
    sub = subparsers.add_parser("version", help="Show version")
    sub.set_defaults(func=cmd_version)

    args = parser.parse_args(argv)
    configure_logging("DEBUG" if args.verbose else "WARNING")

    if getattr(args, "func", None) is None:
        parser.print_help()
        return 0

    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
