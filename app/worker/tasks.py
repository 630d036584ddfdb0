"""ARQ job definitions."""

import uuid
from typing import Any

from arq import create_pool
from arq.connections import RedisSettings

from app.core.config import get_settings
from app.core.logging import bind_job, get_logger

log = get_logger(__name__)


async def _run_with_dlq(
    job_name: str,
    job_id: str | None,
    args: list[Any],
    kwargs: dict[str, Any],
    coro,
) -> Any:
    """Run coroutine; on exception persist to FailedJob then re-raise."""
    bind_job(job_name, job_id=job_id)
    try:
        return await coro
    except Exception as e:
        from app.models.failed_job import FailedJob
        fid = job_id or str(uuid.uuid4())
        await FailedJob(
            job_name=job_name,
            job_id=fid,
            args=args,
            kwargs=kwargs,
            reason=str(e)[:2000],
        ).insert()
        log.exception("job_failed", job=job_name, job_id=fid, reason=str(e))
        raise


def _job_id(ctx: dict[str, Any]) -> str | None:
    return ctx.get("job_id") if isinstance(ctx.get("job_id"), str) else None


async def sync_calendar(ctx: dict[str, Any], provider_id: str) -> None:
    """Import external calendar changes for one provider (manual sync, webhook, OAuth callback)."""
    from app.services.calendar_sync import import_since

    async def _run() -> None:
        log.info("job_start", job="sync_calendar", provider_id=provider_id)
        events = await import_since(provider_id)
        log.info("job_done", job="sync_calendar", provider_id=provider_id, events=len(events))

    await _run_with_dlq("sync_calendar", _job_id(ctx), [provider_id], {}, _run())


# Cron wrappers; bodies live in app.worker.cron.


async def expire_holds(ctx: dict[str, Any]) -> None:
    from app.worker.cron import run_expire_holds
    await _run_with_dlq("expire_holds", _job_id(ctx), [], {}, run_expire_holds())


async def dispatch_events(ctx: dict[str, Any]) -> None:
    from app.worker.cron import run_dispatch_events
    await _run_with_dlq("dispatch_events", _job_id(ctx), [], {}, run_dispatch_events())


async def complete_sessions(ctx: dict[str, Any]) -> None:
    from app.worker.cron import run_complete_sessions
    await _run_with_dlq("complete_sessions", _job_id(ctx), [], {}, run_complete_sessions())


async def sync_calendars(ctx: dict[str, Any]) -> None:
    from app.worker.cron import run_sync_calendars
    await _run_with_dlq("sync_calendars", _job_id(ctx), [], {}, run_sync_calendars())


async def refresh_calendar_tokens(ctx: dict[str, Any]) -> None:
    from app.worker.cron import run_refresh_calendar_tokens
    await _run_with_dlq("refresh_calendar_tokens", _job_id(ctx), [], {}, run_refresh_calendar_tokens())


async def renew_calendar_webhooks(ctx: dict[str, Any]) -> None:
    from app.worker.cron import run_renew_calendar_webhooks
    await _run_with_dlq("renew_calendar_webhooks", _job_id(ctx), [], {}, run_renew_calendar_webhooks())


async def expire_credits(ctx: dict[str, Any]) -> None:
    from app.worker.cron import run_expire_credits
    await _run_with_dlq("expire_credits", _job_id(ctx), [], {}, run_expire_credits())


async def reconcile(ctx: dict[str, Any]) -> None:
    from app.worker.cron import run_reconcile
    await _run_with_dlq("reconcile", _job_id(ctx), [], {}, run_reconcile())


async def startup(ctx: dict) -> None:
    from app.core.logging import configure_logging
    from app.db.init import init_db
    from app.locking import check_lock_backend
    configure_logging(debug=get_settings().debug)
    check_lock_backend(get_settings())
    await init_db()


async def shutdown(ctx: dict) -> None:
    from app.locking import get_lock_manager
    await get_lock_manager().close()


def get_redis_settings() -> RedisSettings:
    from urllib.parse import urlparse
    s = get_settings()
    u = urlparse(s.redis_url)
    return RedisSettings(
        host=u.hostname or "localhost",
        port=u.port or 6379,
        password=u.password,
        database=int(u.path.lstrip("/")) if u.path.lstrip("/") else 0,
    )


async def enqueue_calendar_sync(provider_id: str) -> None:
    """Enqueue sync_calendar job (call from API)."""
    redis = await create_pool(get_redis_settings())
    try:
        await redis.enqueue_job("sync_calendar", provider_id)
    finally:
        await redis.aclose()
