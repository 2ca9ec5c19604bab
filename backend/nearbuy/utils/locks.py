# /nearbuy/utils/locks.py

import asyncio
import time
from typing import Callable, Dict, Optional

# Time-bounded keyed leases. Used for inbound message deduplication and for
# job uniqueness keys. A lease is never held forever: the TTL always applies,
# so a crashed holder cannot block the key past its window.


class RedisLeaseStore:
    def __init__(self, redis_client, prefix: str = "nearbuy"):
        self.redis = redis_client
        self.prefix = prefix

    def _key(self, key: str) -> str:
        return f"{self.prefix}:lease:{key}"

    async def acquire(self, key: str, ttl_seconds: int, owner: str = "1") -> bool:
        """Returns True if the lease was taken, False if someone already holds it."""
        # set with nx=True returns True if the key was set, None if it already existed.
        return bool(await self.redis.set(self._key(key), owner, ex=max(int(ttl_seconds), 1), nx=True))

    async def refresh(self, key: str, ttl_seconds: int) -> bool:
        return bool(await self.redis.expire(self._key(key), max(int(ttl_seconds), 1)))

    async def release(self, key: str) -> None:
        await self.redis.delete(self._key(key))

    async def is_held(self, key: str) -> bool:
        return bool(await self.redis.exists(self._key(key)))


class InMemoryLeaseStore:
    """Single-process lease store with an injectable monotonic clock."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self.clock = clock
        self._leases: Dict[str, tuple] = {}
        self._lock = asyncio.Lock()

    def _live(self, key: str) -> Optional[tuple]:
        lease = self._leases.get(key)
        if lease and lease[1] <= self.clock():
            del self._leases[key]
            return None
        return lease

    async def acquire(self, key: str, ttl_seconds: int, owner: str = "1") -> bool:
        async with self._lock:
            if self._live(key):
                return False
            self._leases[key] = (owner, self.clock() + ttl_seconds)
            return True

    async def refresh(self, key: str, ttl_seconds: int) -> bool:
        async with self._lock:
            lease = self._live(key)
            if not lease:
                return False
            self._leases[key] = (lease[0], self.clock() + ttl_seconds)
            return True

    async def release(self, key: str) -> None:
        async with self._lock:
            self._leases.pop(key, None)

    async def is_held(self, key: str) -> bool:
        async with self._lock:
            return self._live(key) is not None
