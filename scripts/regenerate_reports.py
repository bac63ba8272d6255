#!/usr/bin/env python3
"""
Rebuild, delete or inspect the analytics lookup tables.

Runs the job queue in-process and waits until every queued sync job
has finished.

Usage:
    python scripts/regenerate_reports.py regenerate --days 90
    python scripts/regenerate_reports.py regenerate --all --skip-existing
    python scripts/regenerate_reports.py delete
    python scripts/regenerate_reports.py status
"""
import argparse
import asyncio
import json
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from lookup_analytics.config import ConfigurationError, validate_config
from lookup_analytics.exceptions import ImportInProgressError
from lookup_analytics.observability import get_logger, setup_logging
from lookup_analytics.reports_sync import close_reports_sync, get_reports_sync
from lookup_analytics.sync.state import ImportHorizon

logger = get_logger("regenerate_reports")

POLL_SECONDS = 2.0


async def wait_for_queue(reports_sync) -> None:
    """Log progress until no job of this service is waiting or running."""
    while reports_sync.queue.has_pending_jobs(reports_sync.group):
        status = await reports_sync.get_import_status()
        for name, progress in status["sync_types"].items():
            logger.info(
                f"{name}: {progress['status']} "
                f"{progress['imported_count']}/{progress['total_count']}"
            )
        await asyncio.sleep(POLL_SECONDS)


async def regenerate(days, skip_existing: bool) -> int:
    reports_sync = await get_reports_sync()
    horizon = ImportHorizon.unbounded() if days is None else ImportHorizon.of_days(days)
    try:
        message = await reports_sync.regenerate(horizon, skip_existing=skip_existing)
    except ImportInProgressError as e:
        logger.error(str(e))
        return 1

    logger.info(message)
    await wait_for_queue(reports_sync)
    status = await reports_sync.get_import_status()
    logger.info(f"Import finished: {json.dumps(status, default=str)}")
    return 0


async def delete() -> int:
    reports_sync = await get_reports_sync()
    logger.info(await reports_sync.delete_all())
    await wait_for_queue(reports_sync)
    logger.info("Lookup data deleted")
    return 0


async def status() -> int:
    reports_sync = await get_reports_sync()
    print(json.dumps(await reports_sync.get_import_status(), indent=2, default=str))
    return 0


async def main(args: argparse.Namespace) -> int:
    try:
        if args.command == "regenerate":
            return await regenerate(None if args.all else args.days, args.skip_existing)
        if args.command == "delete":
            return await delete()
        return await status()
    finally:
        await close_reports_sync()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Manage analytics lookup tables")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    parser.add_argument("--json-logs", action="store_true", help="Log as JSON lines")
    commands = parser.add_subparsers(dest="command", required=True)

    regen = commands.add_parser("regenerate", help="Rebuild lookup tables from source data")
    horizon = regen.add_mutually_exclusive_group(required=True)
    horizon.add_argument("--days", type=int, help="Only import records from the last N days")
    horizon.add_argument("--all", action="store_true", help="Import all records")
    regen.add_argument(
        "--skip-existing", action="store_true", help="Skip records already imported"
    )

    commands.add_parser("delete", help="Delete all lookup table data")
    commands.add_parser("status", help="Show import progress")
    return parser


if __name__ == "__main__":
    args = build_parser().parse_args()
    setup_logging(level="DEBUG" if args.verbose else "INFO", json_format=args.json_logs)

    try:
        validate_config()
    except ConfigurationError as e:
        logger.error(str(e))
        sys.exit(2)

    if args.command == "regenerate" and args.days is not None and args.days < 1:
        logger.error("--days must be at least 1")
        sys.exit(2)

    sys.exit(asyncio.run(main(args)))
