from __future__ import annotations

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from ..config import get_settings
from .sweeper import expire_lapsed_subscriptions

settings = get_settings()
log = logging.getLogger(__name__)

# Global scheduler instance
scheduler: AsyncIOScheduler | None = None


async def sweep_expired_subscriptions():
    """Expire lapsed subscriptions and downgrade their owners."""
    try:
        count = expire_lapsed_subscriptions()
        if count > 0:
            log.info(f"[Scheduler] Sweep expired {count} subscriptions")
    except Exception as e:
        # Next run retries; rows are only moved by conditional updates
        log.error(f"[Scheduler] Error sweeping expired subscriptions: {e}", exc_info=True)


def init_scheduler() -> AsyncIOScheduler:
    """Initialize and configure the scheduler."""
    global scheduler

    if scheduler is not None:
        return scheduler

    scheduler = AsyncIOScheduler(timezone=settings.TIMEZONE)

    scheduler.add_job(
        sweep_expired_subscriptions,
        IntervalTrigger(minutes=settings.SUBSCRIPTION_SWEEP_INTERVAL_MINUTES),
        id="sweep_expired_subscriptions",
        name="Expire lapsed subscriptions",
        replace_existing=True,
        max_instances=1,
    )

    return scheduler


def start_scheduler():
    """Start the scheduler."""
    global scheduler
    if scheduler is None:
        scheduler = init_scheduler()

    if not scheduler.running:
        scheduler.start()
        log.info("Scheduler started")


def stop_scheduler():
    """Stop the scheduler."""
    global scheduler
    if scheduler and scheduler.running:
        scheduler.shutdown()
        log.info("Scheduler stopped")
