"""APScheduler setup for running the sync periodically."""

import logging
from typing import Awaitable, Callable

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from aliprice.config import settings

logger = logging.getLogger(__name__)


def setup_scheduler(
    job: Callable[[], Awaitable[object]],
    interval_minutes: int | None = None,
) -> AsyncIOScheduler:
    """
    Setup and configure APScheduler.

    Args:
        job: Coroutine function running one sync cycle
        interval_minutes: Minutes between runs (defaults to settings.sync_interval_minutes)

    Returns:
        Configured scheduler instance (not started)
    """
    interval = max(1, int(interval_minutes or settings.sync_interval_minutes or 60))
    scheduler = AsyncIOScheduler()

    scheduler.add_job(
        job,
        IntervalTrigger(minutes=interval),
        id="catalog_sync",
        name="Sync catalog products and SKU prices",
        max_instances=1,  # A slow cycle must not overlap the next one
        coalesce=True,
        misfire_grace_time=600,
        replace_existing=True,
    )

    logger.info(f"Scheduler configured: catalog sync every {interval} minutes")
    return scheduler
