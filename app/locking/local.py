import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator

from app.core.exceptions import TransientError
from app.core.logging import get_logger
from app.locking.base import LockManager

log = get_logger(__name__)


class LocalLockManager(LockManager):
    """In-process locks; correct only when a single process owns all writes."""

    def __init__(self, timeout: float = 10.0) -> None:
        self.timeout = timeout
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}  # holders plus waiters per key

    @asynccontextmanager
    async def lock(self, key: str) -> AsyncIterator[None]:
        lk = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            try:
                await asyncio.wait_for(lk.acquire(), timeout=self.timeout)
            except asyncio.TimeoutError:
                log.warning("lock_timeout", key=key, timeout_s=self.timeout)
                raise TransientError(f"Could not acquire lock {key}")
            try:
                yield
            finally:
                lk.release()
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                del self._locks[key]
