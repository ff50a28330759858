"""
Ingestion CLI
Runs one budgeted ingestion cycle, or prints progress status.
Run with: python -m fundsync.cli.ingest --budget-ms 50000
"""

import argparse
import asyncio
import logging
import sys

from fundsync.core.config import settings
from fundsync.core.database import create_all_tables
from fundsync.core.exceptions import FundSyncException
from fundsync.core.logging_config import setup_logging
from fundsync.providers.registry import ProviderRegistry
from fundsync.services.progress_store import SqlProgressStore
from fundsync.services.scheduler import CycleOptions, CycleSummary, create_scheduler

logger = logging.getLogger(__name__)


async def print_status() -> None:
    store = SqlProgressStore()
    state = await store.load_global_phase()
    summary = await store.aggregate()
    print("\n=== Ingestion Status ===")
    print(f"Phase:          {state.phase.value}")
    print(f"Cursor:         {state.cursor or '-'}")
    print(f"Last run:       {state.last_run_at or 'Never'}")
    print(f"Last discovery: {state.last_discovered_at or 'Never'}")
    print(summary.format())


def print_summary(summary: CycleSummary) -> None:
    print("\n=== Cycle Summary ===")
    print(f"Cycle:     {summary.cycle_id}")
    print(f"Phase:     {summary.phase.value}")
    print(f"Attempted: {summary.attempted}")
    print(f"Succeeded: {summary.succeeded}")
    print(f"Failed:    {summary.failed}")
    print(f"Batches:   {summary.batches}")
    print(f"Elapsed:   {summary.elapsed_ms:.0f}ms ({summary.stop_reason})")
    for ticker, error in sorted(summary.errors.items()):
        print(f"  {ticker}: {error}")


async def run_ingest(args) -> int:
    await create_all_tables()

    if args.status:
        await print_status()
        return 0

    options = CycleOptions(
        target_entities=args.tickers or None,
        force_full_refresh=args.force_refresh,
        reset_all=args.reset_all,
        exclude_errors=not args.include_errors,
    )
    async with ProviderRegistry.from_settings() as registry:
        scheduler = create_scheduler(registry)
        try:
            summary = await scheduler.run_cycle(args.budget_ms, options)
        except FundSyncException as e:
            logger.error(f"Cycle aborted: {e.message}")
            return 1

    print_summary(summary)
    return 0 if summary.failed == 0 else 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="FundSync Ingestion CLI")

    parser.add_argument(
        "--budget-ms",
        type=int,
        default=settings.cycle_budget_ms,
        help=f"Wall-clock budget of the cycle (default: {settings.cycle_budget_ms})",
    )
    parser.add_argument("--tickers", nargs="+", help="Process only these tickers")
    parser.add_argument("--force-refresh", action="store_true", help="Reopen every completed entity")
    parser.add_argument("--reset-all", action="store_true", help="Reset all progress before running")
    parser.add_argument("--include-errors", action="store_true", help="Also retry entities in ERROR")
    parser.add_argument("--status", action="store_true", help="Print progress status and exit")
    return parser


def main():
    args = build_parser().parse_args()

    setup_logging()
    sys.exit(asyncio.run(run_ingest(args)))


if __name__ == "__main__":
    main()
