"""
Scheduler module using APScheduler.
Periodically checks the sources for updates and rebuilds the served index.
Embedded in the FastAPI app; disabled unless UPDATE_CHECK_ENABLED=true.
"""

from __future__ import annotations

import logging
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from geosuggest.config import get_settings
from geosuggest.updater import RebuildCoordinator

logger = logging.getLogger(__name__)

_scheduler: Optional[AsyncIOScheduler] = None


async def update_job(coordinator: RebuildCoordinator) -> bool:
    """Wrapper that catches exceptions so the scheduler doesn't die on failure."""
    try:
        logger.info("Scheduled update check starting...")
        rebuilt = await coordinator.rebuild()
        if rebuilt:
            logger.info("Scheduled update: new index published")
        else:
            logger.info("Scheduled update: index is up to date")
        return rebuilt
    except Exception as e:
        # the previous index keeps being served
        logger.error("Scheduled update failed: %s", e, exc_info=True)
        return False


def create_scheduler(coordinator: RebuildCoordinator) -> AsyncIOScheduler:
    """Create and configure the APScheduler instance."""
    global _scheduler
    settings = get_settings().scheduler

    _scheduler = AsyncIOScheduler()
    _scheduler.add_job(
        update_job,
        trigger=IntervalTrigger(minutes=settings.interval_minutes),
        args=[coordinator],
        id="geosuggest_update",
        name="Geosuggest index update",
        replace_existing=True,
        max_instances=1,  # prevent overlapping runs
    )

    logger.info("Scheduler configured: update check every %d minutes",
                settings.interval_minutes)
    return _scheduler


def start_scheduler(coordinator: RebuildCoordinator) -> None:
    """Start the scheduler (non-blocking). Needs a running event loop."""
    settings = get_settings().scheduler
    if not settings.enabled:
        logger.info("Scheduler disabled via config")
        return

    scheduler = create_scheduler(coordinator)
    scheduler.start()
    logger.info("Scheduler started")


def stop_scheduler() -> None:
    """Stop the scheduler gracefully."""
    global _scheduler
    if _scheduler is not None:
        _scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")
        _scheduler = None
