"""Command-line entry point: run one sync cycle (or keep running on a schedule)."""

import argparse
import asyncio
import logging
import signal
import sys
from typing import Optional, Sequence

from aliprice.config import ConfigurationError, settings
from aliprice.db.store import ProductStore
from aliprice.ingest.catalog_client import CatalogClient
from aliprice.logging_config import setup_logging
from aliprice.worker.scheduler import setup_scheduler
from aliprice.worker.sync_job import SyncRunner, SyncSummary

logger = logging.getLogger(__name__)


def id_list(value: str) -> list[str]:
    """argparse type for comma-separated numeric ids."""
    ids = [part.strip() for part in value.split(",") if part.strip()]
    bad = [part for part in ids if not part.isdigit()]
    if bad:
        raise argparse.ArgumentTypeError(f"not numeric: {', '.join(bad)}")
    return ids


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="aliprice-sync",
        description="Sync catalog products and per-SKU daily prices into the store",
    )
    parser.add_argument(
        "--categories",
        type=id_list,
        default=None,
        help="Comma-separated category ids to crawl (default: all stored categories)",
    )
    parser.add_argument(
        "--product-ids",
        type=id_list,
        default=None,
        help="Comma-separated product ids to sync directly, skipping the crawl",
    )
    parser.add_argument(
        "--keywords",
        default=None,
        help="Additional keyword query to crawl",
    )
    parser.add_argument(
        "--interval-minutes",
        type=int,
        default=settings.sync_interval_minutes,
        help="Keep running and sync every N minutes (default: run once)",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help=f"Log level (default: {settings.log_level})",
    )
    return parser


async def run_once(args: argparse.Namespace) -> SyncSummary:
    """Connect, run a single cycle, disconnect."""
    async with ProductStore(create_schema=True) as store, CatalogClient() as client:
        runner = SyncRunner(client, store)
        return await runner.run(
            category_ids=args.categories,
            product_ids=args.product_ids,
            keywords=args.keywords,
        )


async def run_scheduled(args: argparse.Namespace) -> None:
    """Run a cycle now, then every ``args.interval_minutes`` until interrupted."""
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows event loops have no signal handlers
            pass

    async def job():
        try:
            await run_once(args)
        except Exception:
            logger.exception("Scheduled sync failed")

    await job()
    scheduler = setup_scheduler(job, args.interval_minutes)
    scheduler.start()
    logger.info("Scheduler started")
    try:
        await stop.wait()
    finally:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(level=args.log_level)

    try:
        settings.require_credentials()
    except ConfigurationError as e:
        logger.error(str(e))
        return 1

    try:
        if args.interval_minutes and args.interval_minutes > 0:
            asyncio.run(run_scheduled(args))
        else:
            asyncio.run(run_once(args))
    except KeyboardInterrupt:
        logger.info("Interrupted")
    except Exception:
        logger.exception("Sync aborted")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
