# /backend/scheduler.py

import asyncio
import logging
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from nearbuy.config.settings import settings
from nearbuy.utils.lifecycle import build_services
from nearbuy.utils.logging import setup_logging

logger = logging.getLogger("SchedulerService")


async def main():
    setup_logging()
    services = build_services(settings)
    scheduler = AsyncIOScheduler(timezone=settings.quiet_hours.timezone)

    # Job 1: Hand every due notification batch to the queue
    scheduler.add_job(
        services.batcher.dispatch_ready,
        'interval',
        minutes=1,
        id="dispatch_ready_batches_job",
        max_instances=1,
        coalesce=True,
    )
    logger.info("Scheduled job: dispatch_ready (every minute).")

    # Job 2: Put jobs whose claim lease ran out back on their lane
    scheduler.add_job(
        services.queue.requeue_expired,
        'interval',
        seconds=30,
        id="requeue_expired_claims_job",
        max_instances=1,
        coalesce=True,
    )
    logger.info("Scheduled job: requeue_expired (every 30 seconds).")

    scheduler.start()
    logger.info("Scheduler started successfully. Press Ctrl+C to exit.")

    try:
        while True:
            await asyncio.sleep(3600)
    except (KeyboardInterrupt, SystemExit, asyncio.CancelledError):
        scheduler.shutdown()
        await services.close()


if __name__ == "__main__":
    asyncio.run(main())
