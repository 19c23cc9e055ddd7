from datetime import datetime
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from .config import Config
from .utils.logger import logger

PROBE_JOB_ID = "local_availability_probe"


def _schedule_availability_probe(scheduler: AsyncIOScheduler, gateway, interval_seconds: int):
    # Refresh the local backend's availability flag ahead of request bursts
    async def job():
        available = await gateway.refresh_local_availability()
        logger.debug("background_probe_ran", available=available)

    scheduler.add_job(
        job,
        IntervalTrigger(seconds=interval_seconds),
        id=PROBE_JOB_ID,
        next_run_time=datetime.now(),
        max_instances=1,
        coalesce=True,
    )


def start_scheduler(gateway, config: Config) -> Optional[AsyncIOScheduler]:
    """Start the background probe; returns None when it is disabled or there is no local backend.

    Must be called from inside a running event loop.
    """
    interval = config.background_probe_interval_seconds
    if interval <= 0 or getattr(gateway, "local", None) is None:
        return None
    scheduler = AsyncIOScheduler()
    _schedule_availability_probe(scheduler, gateway, interval)
    scheduler.start()
    logger.info("background_probe_started", interval_seconds=interval)
    return scheduler
