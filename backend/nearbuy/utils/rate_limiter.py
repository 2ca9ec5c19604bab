# /nearbuy/utils/rate_limiter.py

import asyncio
import time
import uuid
from collections import deque
from typing import Awaitable, Callable, Deque, Dict, List, NamedTuple, Sequence, Tuple

# Sliding-window rate budgets for outbound API calls. A call is checked against
# every requested window and consumed in all of them in one atomic step, so
# concurrent workers can never push a window past its ceiling.


class Limit(NamedTuple):
    scope: str
    max_calls: int
    window_seconds: float


class RateBudget:
    """Shared acquire/wait logic; subclasses implement the atomic check-and-consume."""

    def __init__(self, clock: Callable[[], float] = time.time,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.clock = clock
        self.sleep = sleep

    async def try_acquire(self, limits: Sequence[Limit]) -> float:
        """Consumes one slot in every window and returns 0, or returns the seconds until all would fit."""
        raise NotImplementedError

    async def acquire(self, limits: Sequence[Limit], max_wait: float = 0) -> float:
        """
        Blocks until a slot is free or max_wait would be exceeded. Returns 0 once
        the slot is consumed, otherwise the remaining retry_after so the caller
        can re-enqueue instead of waiting longer.
        """
        waited = 0.0
        while True:
            retry_after = await self.try_acquire(limits)
            if retry_after <= 0:
                return 0.0
            if waited + retry_after > max_wait:
                return retry_after
            await self.sleep(retry_after)
            waited += retry_after


class RedisRateBudget(RateBudget):
    # Checks every window first, then records the call in all of them.
    # KEYS: one sorted set per window. ARGV: now_ms, member, then (limit, window_ms) pairs.
    # Returns 0 when granted, otherwise the milliseconds until the tightest window frees a slot.
    ACQUIRE_LUA_SCRIPT = """
    local now = tonumber(ARGV[1])
    local member = ARGV[2]
    local wait = 0

    for i, key in ipairs(KEYS) do
        local limit = tonumber(ARGV[1 + i * 2])
        local window = tonumber(ARGV[2 + i * 2])
        redis.call('ZREMRANGEBYSCORE', key, 0, now - window)
        local count = redis.call('ZCARD', key)
        if count >= limit then
            local blocking = redis.call('ZRANGE', key, count - limit, count - limit, 'WITHSCORES')
            local free_at = tonumber(blocking[2]) + window
            if free_at - now > wait then
                wait = free_at - now
            end
        end
    end

    if wait > 0 then
        return wait
    end

    for i, key in ipairs(KEYS) do
        local window = tonumber(ARGV[2 + i * 2])
        redis.call('ZADD', key, now, member)
        redis.call('PEXPIRE', key, window * 2)
    end
    return 0
    """

    def __init__(self, redis_client, prefix: str = "nearbuy", **kwargs):
        super().__init__(**kwargs)
        self.redis = redis_client
        self.prefix = prefix
        self._script = redis_client.register_script(self.ACQUIRE_LUA_SCRIPT)

    def _key(self, limit: Limit) -> str:
        return f"{self.prefix}:rate:{limit.scope}:{int(limit.window_seconds * 1000)}"

    async def try_acquire(self, limits: Sequence[Limit]) -> float:
        if not limits:
            return 0.0
        now_ms = int(self.clock() * 1000)
        args: List = [now_ms, f"{now_ms}:{uuid.uuid4().hex}"]
        for limit in limits:
            args.extend([limit.max_calls, int(limit.window_seconds * 1000)])
        wait_ms = await self._script(keys=[self._key(limit) for limit in limits], args=args)
        return max(int(wait_ms), 0) / 1000.0


class InMemoryRateBudget(RateBudget):
    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self._calls: Dict[Tuple[str, float], Deque[float]] = {}
        self._lock = asyncio.Lock()

    async def try_acquire(self, limits: Sequence[Limit]) -> float:
        async with self._lock:
            now = self.clock()
            wait = 0.0
            for limit in limits:
                calls = self._calls.setdefault((limit.scope, limit.window_seconds), deque())
                while calls and calls[0] <= now - limit.window_seconds:
                    calls.popleft()
                if len(calls) >= limit.max_calls:
                    wait = max(wait, calls[len(calls) - limit.max_calls] + limit.window_seconds - now)
            if wait > 0:
                return wait
            for limit in limits:
                self._calls[(limit.scope, limit.window_seconds)].append(now)
            return 0.0

    def usage(self, scope: str, window_seconds: float) -> int:
        now = self.clock()
        calls = self._calls.get((scope, window_seconds), deque())
        return sum(1 for ts in calls if ts > now - window_seconds)
