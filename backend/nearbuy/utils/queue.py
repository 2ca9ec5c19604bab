# /nearbuy/utils/queue.py

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from nearbuy.models.domain import Lane, utcnow
from nearbuy.models.queue import QueueJob

# This utility provides the seven-lane priority queue that notification jobs
# travel through. Workers always take the first ready job from the highest
# non-empty lane; a claimed job stays invisible to other workers until it is
# completed, released, or its claim lease runs out.

logger = logging.getLogger(__name__)


def unique_lease_key(unique_key: str) -> str:
    return f"unique:{unique_key}"


class PriorityQueue:
    """Behaviour shared by both backends: uniqueness leases around the storage primitives."""

    def __init__(self, leases, unique_for: int = 300):
        self.leases = leases
        self.unique_for = unique_for

    async def enqueue(self, job: QueueJob, unique_for: Optional[int] = None) -> bool:
        """
        Adds a job. When the job carries a unique_key and another job with the
        same key is still outstanding, nothing is added and False is returned.
        """
        if job.unique_key:
            acquired = await self.leases.acquire(unique_lease_key(job.unique_key), unique_for or self.unique_for, owner=job.id)
            if not acquired:
                logger.info(f"Skipped duplicate job {job.kind} with unique key {job.unique_key}")
                return False
        await self._push(job)
        return True

    async def complete(self, job: QueueJob) -> None:
        """Removes a finished (or permanently failed) job and frees its uniqueness key."""
        await self._remove(job)
        if job.unique_key:
            await self.leases.release(unique_lease_key(job.unique_key))

    async def release(self, job: QueueJob, delay_seconds: float, now: Optional[datetime] = None) -> None:
        """Returns a claimed job to its lane, eligible again after delay_seconds."""
        now = now or utcnow()
        job.next_eligible_at = now + timedelta(seconds=delay_seconds)
        await self._push(job, claimed=True)
        if job.unique_key:
            await self.leases.refresh(unique_lease_key(job.unique_key), int(delay_seconds) + self.unique_for)

    async def claim(self, worker_id: str, lease_seconds: int, now: Optional[datetime] = None) -> Optional[QueueJob]:
        raise NotImplementedError

    async def requeue_expired(self, now: Optional[datetime] = None) -> int:
        raise NotImplementedError

    async def size(self) -> Dict[str, int]:
        raise NotImplementedError

    async def _push(self, job: QueueJob, claimed: bool = False) -> None:
        raise NotImplementedError

    async def _remove(self, job: QueueJob) -> None:
        raise NotImplementedError


class RedisPriorityQueue(PriorityQueue):
    # Takes the lowest-scored ready member from the first lane that has one.
    # KEYS: claimed set, then the lane sets in priority order. ARGV: now, claim expiry.
    CLAIM_LUA_SCRIPT = """
    local now = tonumber(ARGV[1])
    local expiry = tonumber(ARGV[2])
    for i = 2, #KEYS do
        local ready = redis.call('ZRANGEBYSCORE', KEYS[i], '-inf', now, 'LIMIT', 0, 1)
        if #ready > 0 then
            redis.call('ZREM', KEYS[i], ready[1])
            redis.call('ZADD', KEYS[1], expiry, ready[1])
            return ready[1]
        end
    end
    return false
    """

    def __init__(self, redis_client, leases, prefix: str = "nearbuy", unique_for: int = 300):
        super().__init__(leases, unique_for)
        self.redis = redis_client
        self.prefix = prefix
        self.jobs_key = f"{prefix}:queue:jobs"
        self.claimed_key = f"{prefix}:queue:claimed"
        self._claim_script = redis_client.register_script(self.CLAIM_LUA_SCRIPT)

    def lane_key(self, lane: Lane) -> str:
        return f"{self.prefix}:queue:lane:{lane.value}"

    async def _push(self, job: QueueJob, claimed: bool = False) -> None:
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.hset(self.jobs_key, job.id, job.model_dump_json())
            pipe.zadd(self.lane_key(job.lane), {job.id: job.next_eligible_at.timestamp()})
            if claimed:
                pipe.zrem(self.claimed_key, job.id)
            await pipe.execute()

    async def _remove(self, job: QueueJob) -> None:
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.zrem(self.claimed_key, job.id)
            pipe.zrem(self.lane_key(job.lane), job.id)
            pipe.hdel(self.jobs_key, job.id)
            await pipe.execute()

    async def claim(self, worker_id: str, lease_seconds: int, now: Optional[datetime] = None) -> Optional[QueueJob]:
        now = now or utcnow()
        keys = [self.claimed_key] + [self.lane_key(lane) for lane in Lane.in_priority_order()]
        job_id = await self._claim_script(keys=keys, args=[now.timestamp(), now.timestamp() + lease_seconds])
        if not job_id:
            return None
        if isinstance(job_id, bytes):
            job_id = job_id.decode()

        raw = await self.redis.hget(self.jobs_key, job_id)
        if not raw:
            # Completed by another worker between claim and load.
            await self.redis.zrem(self.claimed_key, job_id)
            return None
        job = QueueJob.model_validate_json(raw)
        logger.debug(f"Worker {worker_id} claimed job {job.id} from lane {job.lane.value}")
        return job

    async def requeue_expired(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        expired = await self.redis.zrangebyscore(self.claimed_key, "-inf", now.timestamp())
        requeued = 0
        for job_id in expired:
            # Only the caller whose ZREM succeeds puts the job back.
            if not await self.redis.zrem(self.claimed_key, job_id):
                continue
            raw = await self.redis.hget(self.jobs_key, job_id)
            if not raw:
                continue
            job = QueueJob.model_validate_json(raw)
            await self.redis.zadd(self.lane_key(job.lane), {job.id: now.timestamp()})
            requeued += 1
        if requeued:
            logger.warning(f"Requeued {requeued} jobs whose claim lease expired")
        return requeued

    async def size(self) -> Dict[str, int]:
        async with self.redis.pipeline(transaction=False) as pipe:
            for lane in Lane.in_priority_order():
                pipe.zcard(self.lane_key(lane))
            counts = await pipe.execute()
        return {lane.value: int(count) for lane, count in zip(Lane.in_priority_order(), counts)}


class InMemoryPriorityQueue(PriorityQueue):
    """Single-process queue with the same claim semantics, for development and tests."""

    def __init__(self, leases, unique_for: int = 300):
        super().__init__(leases, unique_for)
        self._lanes: Dict[Lane, Dict[str, QueueJob]] = {lane: {} for lane in Lane.in_priority_order()}
        self._claimed: Dict[str, tuple] = {}
        self._lock = asyncio.Lock()

    async def _push(self, job: QueueJob, claimed: bool = False) -> None:
        async with self._lock:
            self._claimed.pop(job.id, None)
            self._lanes[job.lane][job.id] = job.model_copy(deep=True)

    async def _remove(self, job: QueueJob) -> None:
        async with self._lock:
            self._claimed.pop(job.id, None)
            self._lanes[job.lane].pop(job.id, None)

    async def claim(self, worker_id: str, lease_seconds: int, now: Optional[datetime] = None) -> Optional[QueueJob]:
        now = now or utcnow()
        async with self._lock:
            for lane in Lane.in_priority_order():
                ready = [job for job in self._lanes[lane].values() if job.is_ready(now)]
                if not ready:
                    continue
                job = min(ready, key=lambda j: j.next_eligible_at)
                del self._lanes[lane][job.id]
                self._claimed[job.id] = (job, now + timedelta(seconds=lease_seconds))
                return job.model_copy(deep=True)
        return None

    async def requeue_expired(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        async with self._lock:
            expired = [job_id for job_id, (_, expiry) in self._claimed.items() if expiry <= now]
            for job_id in expired:
                job, _ = self._claimed.pop(job_id)
                job.next_eligible_at = now
                self._lanes[job.lane][job.id] = job
        return len(expired)

    async def size(self) -> Dict[str, int]:
        async with self._lock:
            return {lane.value: len(jobs) for lane, jobs in self._lanes.items()}

    def claimed_count(self) -> int:
        return len(self._claimed)

    def pending_jobs(self, lane: Optional[Lane] = None) -> List[QueueJob]:
        lanes = [lane] if lane else Lane.in_priority_order()
        return [job for l in lanes for job in self._lanes[l].values()]
