"""Background job scheduler for periodic full resyncs.

The change feed keeps a client current, but a client that missed events
(a dropped subscription, a backend restart) only catches up on a full
resync. When resync_interval_minutes is set, each client runs one on a
fixed interval.
"""
import logging
from typing import Awaitable, Callable

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from roster.core.config import settings

logger = logging.getLogger(__name__)


def start_scheduler(resync: Callable[[], Awaitable[dict]], name: str) -> AsyncIOScheduler:
    """Start a scheduler running resync every resync_interval_minutes.

    Must be called from inside the running event loop.
    """

    async def resync_job():
        try:
            stats = await resync()
            logger.info(f"Background resync of {name} completed: {stats}")
        except Exception as e:
            logger.error(f"Background resync of {name} failed: {e}")

    scheduler = AsyncIOScheduler()
    scheduler.add_job(
        resync_job,
        trigger=IntervalTrigger(minutes=settings.resync_interval_minutes),
        id=f"roster_resync_{name}",
        replace_existing=True,
    )
    scheduler.start()
    logger.info(f"Scheduler started, resyncing {name} every {settings.resync_interval_minutes} minutes")
    return scheduler


def shutdown_scheduler(scheduler: AsyncIOScheduler):
    """Graceful shutdown."""
    scheduler.shutdown(wait=False)
    logger.info("Scheduler shut down")
