#!/usr/bin/env python3
"""
Run one auto-close sweep: close every permit whose end date (or extension)
has passed, then print the result as JSON.

Scheduling is left to the caller (cron, systemd timer, k8s CronJob).

Usage:
    python3 scripts/run_auto_close.py [--config <yaml>] [--db-url <url>] [options]

Examples:
    # Sweep as of now, using config/permit_kernel.yaml
    python3 scripts/run_auto_close.py --config config/permit_kernel.yaml

    # Sweep as of a fixed instant, at most 100 permits per scan
    python3 scripts/run_auto_close.py --as-of 2024-02-02T00:00:00+00:00 --limit 100

Output:
    {"closedCount": 2, "regularClosed": 1, "extendedClosed": 1, "failures": []}

Exit status is 0 when every candidate was handled, 1 when some permits
failed to close (they are listed under "failures"), 2 on a fatal error.
"""

from __future__ import annotations

import argparse
import json
import sys
from datetime import datetime, timezone
from pathlib import Path

# Project root on sys.path
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def _parse_as_of(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        # Naive input is read as UTC
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _positive_int(value: str) -> int:
    try:
        parsed = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid int value: '{value}'") from None
    if parsed < 1:
        raise argparse.ArgumentTypeError(f"must be at least 1, got {parsed}")
    return parsed


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Close expired permits once and print the sweep result as JSON.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="YAML config file (default: built-in defaults).",
    )
    parser.add_argument(
        "--db-url",
        default=None,
        help="Database URL (overrides the config file and DATABASE_URL).",
    )
    parser.add_argument(
        "--as-of",
        type=_parse_as_of,
        default=None,
        help="ISO-8601 instant to sweep as of (default: now). Naive values are UTC.",
    )
    parser.add_argument(
        "--limit",
        type=_positive_int,
        default=None,
        help="Maximum permits per scan (default: config sweep_batch_limit).",
    )
    parser.add_argument(
        "--create-tables",
        action="store_true",
        help="Create the schema first (development databases).",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)

    # Lazy imports so we fail fast on args first
    from dataclasses import replace

    from permit_kernel.config import load_config
    from permit_kernel.db.engine import (
        create_tables,
        get_session_factory,
        init_engine_from_url,
    )
    from permit_kernel.exceptions import PermitKernelError
    from permit_kernel.logging_config import configure_logging
    from permit_kernel.services.permit_orchestrator import PermitOrchestrator

    try:
        config = load_config(args.config)
    except (OSError, ValueError) as e:
        print(f"ERROR: Failed to load config: {e}", file=sys.stderr)
        return 2
    if args.db_url:
        config = replace(config, database_url=args.db_url)

    configure_logging(level=config.log_level.upper())
    init_engine_from_url(config.database_url, **config.engine_kwargs())
    if args.create_tables:
        create_tables()

    orchestrator = PermitOrchestrator(get_session_factory(), config=config)
    try:
        result = orchestrator.run_auto_close(now=args.as_of, limit=args.limit)
    except PermitKernelError as e:
        print(f"ERROR: {e.code}: {e}", file=sys.stderr)
        return 2

    print(json.dumps(result.to_dict()))
    return 1 if result.failures else 0


if __name__ == "__main__":
    sys.exit(main())
