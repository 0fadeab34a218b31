"""Manual ingestion runner for testing and debugging sources.

Runs one ingestion cycle for a source (or every enabled source) against the
configured database, without starting the scheduler, and prints the counts.

Usage:
    python scripts/run_ingestion.py --list
    python scripts/run_ingestion.py --source slickdeals_rss
    python scripts/run_ingestion.py --all
"""

import argparse
import asyncio
import os
import sys
from typing import List, Optional

# Add backend to path so we can import dealintake modules
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "backend"))

from dealintake.core.exceptions import DealIntakeException
from dealintake.db.session import async_session_factory, engine
from dealintake.ingestion.catalog import build_default_registry
from dealintake.ingestion.pipeline import JobResult, summarize
from dealintake.main import build_scheduler, init_db


def list_sources() -> None:
    """Print the source catalog with enablement and schedule."""
    registry = build_default_registry()

    print(f"\n{'='*70}")
    print("  Source Catalog")
    print(f"{'='*70}")
    for source in registry:
        flag = "on " if source.enabled else "off"
        schedule = source.schedule or "push"
        print(f"  [{flag}] {source.key:<22} {source.type.value:<8} {schedule:<14} p{source.priority}")
    print(f"{'='*70}\n")


def _print_result(result: Optional[JobResult], source_key: str) -> None:
    if result is None:
        print(f"  {source_key}: skipped (in flight or rate limited)")
        return
    stats = result.stats
    print(
        f"  {source_key}: {result.status} in {result.duration_seconds:.1f}s | "
        f"fetched={stats.fetched} inserted={stats.inserted} "
        f"skipped={stats.skipped} errored={stats.errored} capped={stats.capped}"
    )
    if result.error:
        print(f"      error: {result.error}")


async def run_sources(source_keys: List[str]) -> int:
    """Run one cycle per source and print a summary. Returns an exit code."""
    await init_db(engine)
    scheduler = build_scheduler(async_session_factory)

    results: List[JobResult] = []
    exit_code = 0
    try:
        keys = source_keys or [s.key for s in scheduler.registry.list_enabled()]
        print(f"\n🔍 Running {len(keys)} source(s)...\n")
        for key in keys:
            try:
                result = await scheduler.run_source(key)
            except DealIntakeException as e:
                print(f"  {key}: ❌ {e.message}")
                exit_code = 1
                continue
            _print_result(result, key)
            if result is not None:
                results.append(result)
                if not result.succeeded:
                    exit_code = 1
    finally:
        await scheduler.aclose()
        await engine.dispose()

    totals = summarize(results)
    print(f"\n{'='*70}")
    print("  Summary")
    print(f"{'='*70}")
    for name, value in totals.items():
        print(f"  {name.capitalize():<12} {value}")
    print(f"{'='*70}\n")
    return exit_code


def main():
    """Parse arguments and run the requested sources."""
    parser = argparse.ArgumentParser(
        description="Run ingestion sources once, outside the scheduler",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python scripts/run_ingestion.py --list
  python scripts/run_ingestion.py --source slickdeals_rss
  python scripts/run_ingestion.py --source slickdeals_rss --source impact
  python scripts/run_ingestion.py --all
        """,
    )

    group = parser.add_mutually_exclusive_group(required=True)
    group.add_argument("--list", action="store_true", help="List the source catalog")
    group.add_argument(
        "--source",
        action="append",
        help="Source key to run (repeatable)",
    )
    group.add_argument("--all", action="store_true", help="Run every enabled source")

    args = parser.parse_args()

    if args.list:
        list_sources()
        return

    sys.exit(asyncio.run(run_sources(args.source or [])))


if __name__ == "__main__":
    main()
