#!/usr/bin/env python3
"""
Notification Worker

Drains the seven notification lanes in strict priority order and runs each
claimed job through the JobRunner. Start with:

    python -m nearbuy.workers.notification_worker
"""

import uuid
import signal
import asyncio
import logging
from typing import List

from nearbuy.config.settings import settings
from nearbuy.jobs.base import JobRunner
from nearbuy.utils.alerting import alerting_service
from nearbuy.utils.lifecycle import build_services
from nearbuy.utils.logging import setup_logging
from nearbuy.utils.metrics import queue_depth_gauge

logger = logging.getLogger(__name__)


class WorkerPool:
    def __init__(self, runner: JobRunner, concurrency: int = 4, poll_interval: float = 1.0):
        self.runner = runner
        self.concurrency = concurrency
        self.poll_interval = poll_interval
        self.workers: List[asyncio.Task] = []
        self.running = False

    async def start(self):
        self.running = True
        for i in range(self.concurrency):
            self.workers.append(asyncio.create_task(self._worker(f"worker-{i}-{uuid.uuid4().hex[:4]}")))
        logger.info(f"Started {self.concurrency} notification workers.")

    async def stop(self):
        self.running = False
        for worker in self.workers:
            worker.cancel()
        await asyncio.gather(*self.workers, return_exceptions=True)
        self.workers = []
        logger.info("Notification workers stopped.")

    async def _worker(self, worker_id: str):
        while self.running:
            try:
                outcome = await self.runner.run_once(worker_id)
                if outcome is None:
                    await asyncio.sleep(self.poll_interval)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                # Queue backend trouble; the job itself is protected by its claim lease.
                logger.error(f"Notification worker '{worker_id}' error: {e}", exc_info=True)
                await asyncio.sleep(5)


async def report_queue_depth(queue, interval: float = 15.0):
    while True:
        for lane, depth in (await queue.size()).items():
            queue_depth_gauge.labels(lane=lane).set(depth)
        await asyncio.sleep(interval)


async def main():
    setup_logging()
    services = build_services(settings)
    pool = WorkerPool(services.job_runner(), settings.queue.workers, settings.queue.poll_interval_seconds)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    await pool.start()
    depth_task = asyncio.create_task(report_queue_depth(services.queue))
    logger.info("Notification worker running. Press Ctrl+C to exit.")

    await stop_event.wait()

    logger.info("Shutting down notification worker...")
    depth_task.cancel()
    await pool.stop()
    await services.close()
    await alerting_service.cleanup()


if __name__ == "__main__":
    asyncio.run(main())
