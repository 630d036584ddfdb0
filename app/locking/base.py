from abc import ABC, abstractmethod
from contextlib import AbstractAsyncContextManager
from functools import lru_cache

from app.core.config import Settings, get_settings

LOCK_BACKENDS = ("redis", "local")

# Environments where the API and the worker may share one process (or only tests run).
SINGLE_PROCESS_ENVS = ("development", "test")


class LockManager(ABC):
    """Mutual exclusion keyed by string (provider:{id}, account:{id})."""

    @abstractmethod
    def lock(self, key: str) -> AbstractAsyncContextManager[None]:
        """Async context manager holding the lock for `key`; raises TransientError on timeout."""
        ...

    async def close(self) -> None:
        return None


def check_lock_backend(settings: Settings) -> None:
    """Refuse to start with per-process locks where the API and worker run separately."""
    if settings.lock_backend not in LOCK_BACKENDS:
        raise RuntimeError(f"Unknown LOCK_BACKEND {settings.lock_backend!r}; expected one of {LOCK_BACKENDS}")
    if settings.lock_backend == "local" and settings.env not in SINGLE_PROCESS_ENVS:
        raise RuntimeError(
            f"LOCK_BACKEND=local does not serialize writes across the API and worker processes; "
            f"use redis when ENV={settings.env}"
        )


@lru_cache
def get_lock_manager() -> LockManager:
    settings = get_settings()
    check_lock_backend(settings)
    if settings.lock_backend == "redis":
        from app.locking.redis import RedisLockManager
        return RedisLockManager(settings.redis_url, timeout=settings.lock_timeout_seconds)
    from app.locking.local import LocalLockManager
    return LocalLockManager(timeout=settings.lock_timeout_seconds)
