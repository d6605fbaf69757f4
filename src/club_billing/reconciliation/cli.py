#!/usr/bin/env python3
"""Command-line interface for the billing workers.

Usage:
    python -m club_billing.reconciliation.cli process-queue --limit 200
    python -m club_billing.reconciliation.cli run-renewals --provider stripe
    python -m club_billing.reconciliation.cli diagnostics --format text --output report.txt
    python -m club_billing.reconciliation.cli poll --start 2024-01-01 --end 2024-01-31
"""

import argparse
import asyncio
import json
import logging
import sys
from datetime import datetime, timedelta
from typing import Optional

from ..connectors import get_connector
from ..database import (
    Base,
    create_async_engine,
    get_async_session_factory,
    get_database_url,
)
from .detector import Detector
from .models import BatchResult, RenewalResult
from .processor import QueueProcessor
from .psp_fetcher import get_psp_fetcher
from .renewals import RenewalScheduler
from .report import ReportGenerator

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


def parse_datetime(dt_string: str) -> datetime:
    """Parse datetime string in various formats.

    Args:
        dt_string: Datetime string in ISO format or date format.

    Returns:
        Parsed datetime object.

    Raises:
        ValueError: If the string cannot be parsed.
    """
    formats = [
        "%Y-%m-%dT%H:%M:%S",
        "%Y-%m-%dT%H:%M:%S.%f",
        "%Y-%m-%d %H:%M:%S",
        "%Y-%m-%d",
    ]

    for fmt in formats:
        try:
            return datetime.strptime(dt_string, fmt)
        except ValueError:
            continue

    raise ValueError(
        f"Unable to parse datetime: {dt_string}. "
        f"Expected formats: YYYY-MM-DD or YYYY-MM-DDTHH:MM:SS"
    )


async def _open_factory():
    engine = create_async_engine(database_url=get_database_url())
    # Create tables if they don't exist
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    return engine, get_async_session_factory(engine)


def _emit(output: str, output_file: Optional[str]) -> None:
    if output_file:
        with open(output_file, "w") as f:
            f.write(output)
        logger.info(f"Output written to {output_file}")
    else:
        print(output)


async def process_queue_async(limit: Optional[int] = None) -> int:
    """Run one queue batch. Exit code 1 if any item ended in error."""
    engine, session_factory = await _open_factory()
    try:
        result = await QueueProcessor(session_factory).process_pending(limit=limit)
        print(json.dumps(result.to_dict(), indent=2, default=str))
        return 1 if result.has_errors else 0
    finally:
        await engine.dispose()


async def run_renewals_async(provider: str = "stripe", limit: Optional[int] = None) -> int:
    """Run one renewal pass. Exit code 1 if any entitlement errored."""
    engine, session_factory = await _open_factory()
    try:
        scheduler = RenewalScheduler(session_factory, get_connector(provider))
        outcomes = await scheduler.run_due(limit=limit)
        print(json.dumps([o.model_dump(mode="json") for o in outcomes], indent=2))
        return 1 if any(o.result == RenewalResult.ERROR for o in outcomes) else 0
    finally:
        await engine.dispose()


async def diagnostics_async(
    provider: str = "stripe",
    limit: Optional[int] = None,
    output_file: Optional[str] = None,
    output_format: str = "json",
    check_orphans: bool = True,
) -> int:
    """Build the diagnostics report.

    Returns:
        Exit code: 1 when succeeded payments have no paid order, else 0.
    """
    engine, session_factory = await _open_factory()
    try:
        fetcher = None
        if check_orphans:
            try:
                fetcher = get_psp_fetcher(provider)
            except ValueError as e:
                logger.warning(f"Skipping orphan check: {e}")

        async with session_factory() as session:
            report = await Detector(session, fetcher=fetcher).run(limit)

        _emit(ReportGenerator(report).render(output_format), output_file)

        if report.unmaterialized_total > 0:
            logger.warning(
                f"{report.unmaterialized_total} payments received without access granted"
            )
            return 1
        return 0
    finally:
        await engine.dispose()


async def poll_async(start_time: datetime, end_time: datetime, provider: str = "stripe") -> int:
    """Fetch provider payments in a time range and run them through the queue."""
    engine, session_factory = await _open_factory()
    try:
        fetcher = get_psp_fetcher(provider)
        events = await asyncio.to_thread(fetcher.fetch_events, start_time, end_time)
        processor = QueueProcessor(session_factory)
        result = BatchResult()
        for event in events:
            item, _ = await processor.ingest(event, source="poll")
            result.outcomes.append(await processor.process_item(item.id))
        print(json.dumps(result.to_dict(), indent=2, default=str))
        return 1 if result.has_errors else 0
    finally:
        await engine.dispose()


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the CLI.

    Returns:
        Configured ArgumentParser.
    """
    parser = argparse.ArgumentParser(
        prog="club-billing",
        description="Reconciliation queue, renewal and diagnostics workers.",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    queue_parser = subparsers.add_parser("process-queue", help="Process pending queue items")
    queue_parser.add_argument("--limit", "-n", type=int, help="Maximum items to process")

    renew_parser = subparsers.add_parser("run-renewals", help="Charge entitlements due for renewal")
    renew_parser.add_argument(
        "--provider", "-p",
        default="stripe",
        help="Payment provider (default: stripe)",
    )
    renew_parser.add_argument("--limit", "-n", type=int, help="Maximum entitlements to charge")

    diag_parser = subparsers.add_parser("diagnostics", help="Report stuck, unmaterialized and orphaned records")
    diag_parser.add_argument(
        "--provider", "-p",
        default="stripe",
        help="Provider whose subscriptions are audited (default: stripe)",
    )
    diag_parser.add_argument("--limit", "-n", type=int, help="Rows per section (capped)")
    diag_parser.add_argument(
        "--output", "-o",
        help="Output file path (default: stdout)",
    )
    diag_parser.add_argument(
        "--format", "-f",
        choices=list(ReportGenerator.FORMATS),
        default="json",
        help="Output format (default: json)",
    )
    diag_parser.add_argument(
        "--skip-orphans",
        action="store_true",
        help="Do not query the provider for orphaned subscriptions",
    )

    poll_parser = subparsers.add_parser("poll", help="Pull provider payments into the queue")
    poll_parser.add_argument(
        "--start", "-s",
        required=True,
        help="Start date/time (YYYY-MM-DD or YYYY-MM-DDTHH:MM:SS)",
    )
    poll_parser.add_argument(
        "--end", "-e",
        required=True,
        help="End date/time (YYYY-MM-DD or YYYY-MM-DDTHH:MM:SS)",
    )
    poll_parser.add_argument(
        "--provider", "-p",
        default="stripe",
        help="Payment provider (default: stripe)",
    )

    return parser


def main(args: Optional[list] = None) -> int:
    """Main entry point for the CLI.

    Args:
        args: Optional list of command-line arguments (for testing).

    Returns:
        Exit code.
    """
    parser = create_parser()
    parsed_args = parser.parse_args(args)

    if not parsed_args.command:
        parser.print_help()
        return 1

    try:
        if parsed_args.command == "process-queue":
            return asyncio.run(process_queue_async(limit=parsed_args.limit))

        if parsed_args.command == "run-renewals":
            return asyncio.run(run_renewals_async(provider=parsed_args.provider, limit=parsed_args.limit))

        if parsed_args.command == "diagnostics":
            return asyncio.run(diagnostics_async(
                provider=parsed_args.provider,
                limit=parsed_args.limit,
                output_file=parsed_args.output,
                output_format=parsed_args.format,
                check_orphans=not parsed_args.skip_orphans,
            ))

        if parsed_args.command == "poll":
            start_time = parse_datetime(parsed_args.start)
            end_time = parse_datetime(parsed_args.end)
            # A bare end date covers the whole day
            if "T" not in parsed_args.end and " " not in parsed_args.end:
                end_time = end_time + timedelta(days=1) - timedelta(seconds=1)
            return asyncio.run(poll_async(start_time, end_time, provider=parsed_args.provider))
    except ValueError as e:
        logger.error(str(e))
        return 2

    return 0


if __name__ == "__main__":
    sys.exit(main())
