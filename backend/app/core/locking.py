"""Advisory locks in Redis: keep redundant work from overlapping.

Locks are advisory. Correctness never depends on them (every ledger write is a
conditional update); they only stop a second sync run or a second consolidator
from doing the same provider calls and deletes at once.

- Acquisition is a single ``SET NX EX``
- Release only deletes a key this owner still holds
- Keys expire on their own if the holder crashes
"""

import asyncio
import uuid
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import UTC, datetime

import redis.asyncio as redis

from app.db.redis import redis_key


class AdvisoryLock:
    """Named Redis lock with owner tokens and TTL."""

    DEFAULT_TTL = 300  # 5 minutes

    def __init__(self, redis_client: redis.Redis, name: str, ttl: int | None = None):
        """Initialize a lock handle.

        Args:
            redis_client: Redis connection
            name: Lock name, namespaced under ``{prefix}:lock:``
            ttl: Lock time-to-live in seconds (default 300)
        """
        self.redis = redis_client
        self.key = redis_key("lock", name)
        self.ttl = ttl or self.DEFAULT_TTL
        self.token = f"{uuid.uuid4().hex}:{datetime.now(UTC).isoformat()}"

    async def acquire(self) -> bool:
        """Return True if the lock was free and is now ours."""
        return bool(await self.redis.set(self.key, self.token, nx=True, ex=self.ttl))

    async def release(self) -> bool:
        """Release the lock if we still own it."""
        current = await self.redis.get(self.key)
        if current != self.token:
            return False
        await self.redis.delete(self.key)
        return True

    async def holder(self) -> str | None:
        return await self.redis.get(self.key)

    @asynccontextmanager
    async def hold(self, wait_timeout: float = 0) -> AsyncGenerator[bool, None]:
        """Context manager yielding whether the lock was acquired.

        Args:
            wait_timeout: Seconds to keep retrying before giving up (0 = try once)

        Example:
            async with AdvisoryLock(r, "sync:run").hold() as acquired:
                if not acquired:
                    return skipped_report
        """
        acquired = await self.acquire()
        if not acquired and wait_timeout > 0:
            deadline = asyncio.get_running_loop().time() + wait_timeout
            while not acquired and asyncio.get_running_loop().time() < deadline:
                await asyncio.sleep(0.1)
                acquired = await self.acquire()
        try:
            yield acquired
        finally:
            if acquired:
                await self.release()
