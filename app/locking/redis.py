from contextlib import asynccontextmanager
from typing import AsyncIterator

import redis.asyncio as aioredis
from redis.exceptions import LockError

from app.core.exceptions import TransientError
from app.core.logging import get_logger
from app.locking.base import LockManager

log = get_logger(__name__)

KEY_PREFIX = "lock"


class RedisLockManager(LockManager):
    """Cross-process locks on Redis; lease expires so a crashed holder cannot wedge a key."""

    def __init__(self, redis_url: str, timeout: float = 10.0, lease_seconds: float = 30.0) -> None:
        self.redis = aioredis.from_url(redis_url, decode_responses=True)
        self.timeout = timeout
        self.lease_seconds = lease_seconds

    @asynccontextmanager
    async def lock(self, key: str) -> AsyncIterator[None]:
        lk = self.redis.lock(
            f"{KEY_PREFIX}:{key}",
            timeout=self.lease_seconds,
            blocking_timeout=self.timeout,
        )
        acquired = await lk.acquire()
        if not acquired:
            log.warning("lock_timeout", key=key, timeout_s=self.timeout)
            raise TransientError(f"Could not acquire lock {key}")
        try:
            yield
        finally:
            try:
                await lk.release()
            except LockError:
                # Lease ran out while held; another holder may already own the key.
                log.error("lock_lease_expired", key=key, lease_s=self.lease_seconds)

    async def close(self) -> None:
        await self.redis.aclose()
