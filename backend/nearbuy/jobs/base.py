# /nearbuy/jobs/base.py

"""
Generic job execution harness.

Handlers describe themselves with a JobPolicy (lane, tries, backoff, retry
ceiling, timeout, uniqueness window) and only implement `handle`. The
JobRunner owns everything around it:

- deferrals (quiet hours, rate limits) go back on the queue without
  consuming an attempt,
- PermanentJobError ends the job immediately,
- any other exception is retried on the policy's backoff schedule until the
  attempt limit or the retry deadline is reached, whichever comes first,
- terminal failures call the handler's idempotent `failed` hook and alert.
"""

import asyncio
import logging
import math
import time
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from nearbuy.models.domain import Lane, utcnow
from nearbuy.models.queue import JobPolicy, QueueJob
from nearbuy.utils.metrics import (
    job_deferrals_counter,
    job_duration_histogram,
    job_outcomes_counter,
    jobs_enqueued_counter,
)

logger = logging.getLogger(__name__)


class JobDeferred(Exception):
    """Not a failure: the job should simply run again later."""
    reason = "deferred"

    def __init__(self, delay_seconds: float, detail: str = ""):
        super().__init__(detail or f"{self.reason} for {delay_seconds:.0f}s")
        self.delay_seconds = max(math.ceil(delay_seconds), 1)
        self.detail = detail


class QuietHoursDeferral(JobDeferred):
    reason = "quiet_hours"


class RateLimitDeferral(JobDeferred):
    reason = "rate_limited"


class PermanentJobError(Exception):
    """A failure that retrying cannot fix (e.g. no reachable recipient)."""


class JobHandler:
    kind: str = ""
    policy: JobPolicy = JobPolicy()

    async def handle(self, job: QueueJob) -> None:
        raise NotImplementedError

    async def failed(self, job: QueueJob, error: BaseException) -> None:
        """Final bookkeeping once retries are over. May be called more than once."""


async def enqueue_job(queue, handler: JobHandler, payload: Dict[str, Any],
                      unique_key: Optional[str] = None, lane: Optional[Lane] = None,
                      delay: float = 0, now: Optional[datetime] = None) -> Optional[QueueJob]:
    """Builds a QueueJob from the handler's policy and enqueues it. Returns None for duplicates."""
    job = QueueJob.new(handler.kind, payload, handler.policy, unique_key=unique_key, delay=delay, lane=lane, now=now)
    added = await queue.enqueue(job, unique_for=handler.policy.unique_for)
    jobs_enqueued_counter.labels(kind=job.kind, lane=job.lane.value, result="added" if added else "duplicate").inc()
    return job if added else None


class JobRunner:
    def __init__(self, queue, handlers: Dict[str, JobHandler], claim_lease_seconds: int = 120,
                 alerting=None, clock: Callable[[], datetime] = utcnow):
        self.queue = queue
        self.handlers = handlers
        self.claim_lease_seconds = claim_lease_seconds
        self.alerting = alerting
        self.clock = clock

    async def run_once(self, worker_id: str) -> Optional[str]:
        """Claims and runs one job. Returns the outcome, or None if nothing was ready."""
        job = await self.queue.claim(worker_id, self.claim_lease_seconds, now=self.clock())
        if not job:
            return None

        handler = self.handlers.get(job.kind)
        if handler is None:
            logger.error(f"No handler registered for job kind '{job.kind}', dropping job {job.id}")
            await self.queue.complete(job)
            return "unknown"

        started = time.monotonic()
        try:
            await asyncio.wait_for(handler.handle(job), timeout=handler.policy.timeout)
        except JobDeferred as deferral:
            return await self._defer(job, deferral)
        except PermanentJobError as e:
            job.attempts += 1
            job.last_error = str(e)
            return await self._fail_permanently(job, handler, e)
        except Exception as e:
            return await self._retry_or_fail(job, handler, e)
        finally:
            job_duration_histogram.labels(kind=job.kind).observe(time.monotonic() - started)

        await self.queue.complete(job)
        job_outcomes_counter.labels(kind=job.kind, outcome="completed").inc()
        return "completed"

    async def _defer(self, job: QueueJob, deferral: JobDeferred) -> str:
        now = self.clock()
        if job.deadline_at:
            # Waiting out a deferral does not eat into the retry window.
            job.deadline_at += timedelta(seconds=deferral.delay_seconds)
        await self.queue.release(job, deferral.delay_seconds, now=now)
        job_deferrals_counter.labels(kind=job.kind, reason=deferral.reason).inc()
        logger.info(f"Job {job.kind}:{job.id} deferred ({deferral.reason}) for {deferral.delay_seconds}s")
        return "deferred"

    async def _retry_or_fail(self, job: QueueJob, handler: JobHandler, error: Exception) -> str:
        now = self.clock()
        job.attempts += 1
        job.last_error = f"{type(error).__name__}: {error}"

        if job.attempts >= job.max_attempts:
            return await self._fail_permanently(job, handler, error)

        delay = handler.policy.backoff_for(job.attempts)
        if job.deadline_at and now + timedelta(seconds=delay) > job.deadline_at:
            logger.warning(f"Job {job.kind}:{job.id} would pass its retry deadline, not retrying")
            return await self._fail_permanently(job, handler, error)

        await self.queue.release(job, delay, now=now)
        job_outcomes_counter.labels(kind=job.kind, outcome="retrying").inc()
        logger.warning(
            f"Job {job.kind}:{job.id} failed on attempt {job.attempts}/{job.max_attempts}, "
            f"retrying in {delay}s: {job.last_error}"
        )
        return "retrying"

    async def _fail_permanently(self, job: QueueJob, handler: JobHandler, error: BaseException) -> str:
        try:
            await handler.failed(job, error)
        finally:
            await self.queue.complete(job)
        job_outcomes_counter.labels(kind=job.kind, outcome="failed").inc()
        logger.error(f"Job {job.kind}:{job.id} failed permanently after {job.attempts} attempt(s): {job.last_error}")
        if self.alerting:
            await self.alerting.send_critical_alert(
                f"Notification job {job.kind} failed permanently",
                {"job_id": job.id, "lane": job.lane.value, "attempts": job.attempts, "error": job.last_error},
            )
        return "failed"
