#!/usr/bin/env python3
"""
Session Cleanup — remove expired paused runs and customer contexts.

Run manually or from cron against the configured persistence backend.

Usage:
    python scripts/cleanup_sessions.py              # older than 7 days (default)
    python scripts/cleanup_sessions.py --days 3
    python scripts/cleanup_sessions.py --hours 12
"""
import asyncio
import os
import sys
import time
import argparse

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import structlog

from config.settings import DAY_S, HOUR_S, PersistenceConfig

logger = structlog.get_logger()

DEFAULT_DAYS = 7


def max_age_from_args(days: float = None, hours: float = None) -> int:
    """--hours wins over --days; neither means DEFAULT_DAYS."""
    if hours is not None:
        return int(hours * HOUR_S)
    return int((days if days is not None else DEFAULT_DAYS) * DAY_S)


async def run_cleanup(max_age_s: int, persistence: PersistenceConfig = None) -> dict[str, int]:
    from database.store_factory import create_stores

    run_states, contexts = create_stores(persistence or PersistenceConfig())
    try:
        await run_states.init()
        await contexts.init()
        return {
            "run_states_removed": await run_states.cleanup_expired(max_age_s),
            "contexts_removed": await contexts.cleanup_expired(max_age_s),
        }
    finally:
        await run_states.close()
        await contexts.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Remove expired conversation sessions")
    parser.add_argument("-d", "--days", type=float, default=None,
                        help=f"Remove sessions older than N days (default: {DEFAULT_DAYS})")
    parser.add_argument("-H", "--hours", type=float, default=None,
                        help="Remove sessions older than N hours (overrides --days)")
    parser.add_argument("--config", default=None, help="Path to settings.yaml")
    return parser


def main(argv: list[str] = None) -> int:
    args = build_parser().parse_args(argv)

    from config.settings import load_settings
    from utils.logging import setup_logging

    settings = load_settings(args.config)
    setup_logging(settings.logging.level, settings.logging.format, settings.logging.redact_pii)

    max_age_s = max_age_from_args(args.days, args.hours)
    print(f"Cleaning up sessions older than {max_age_s / HOUR_S:g} hours "
          f"(backend: {settings.persistence.backend})...")

    start = time.monotonic()
    counts = asyncio.run(run_cleanup(max_age_s, settings.persistence))
    duration_ms = int((time.monotonic() - start) * 1000)

    total = sum(counts.values())
    logger.info("manual_cleanup_completed", max_age_s=max_age_s, duration_ms=duration_ms, **counts)
    if total:
        print(f"Cleanup complete. ✓  run states: {counts['run_states_removed']}, "
              f"contexts: {counts['contexts_removed']}, duration: {duration_ms}ms")
    else:
        print(f"No sessions needed cleanup. ✓  duration: {duration_ms}ms")
    return 0


if __name__ == "__main__":
    sys.exit(main())
