"""Run ARQ worker. Usage: python -m app.worker.run_worker"""

from arq import run_worker
from arq.cron import cron

from app.worker.tasks import (
    complete_sessions,
    dispatch_events,
    expire_credits,
    expire_holds,
    get_redis_settings,
    reconcile,
    refresh_calendar_tokens,
    renew_calendar_webhooks,
    shutdown,
    startup,
    sync_calendar,
    sync_calendars,
)

EVERY_5_MIN = set(range(0, 60, 5))


class WorkerSettings:
    redis_settings = get_redis_settings()
    functions = [sync_calendar]
    cron_jobs = [
        cron(expire_holds, second={0, 30}),
        cron(dispatch_events, second={0, 15, 30, 45}),
        cron(complete_sessions, minute=EVERY_5_MIN, second=10),
        cron(sync_calendars, minute=EVERY_5_MIN, second=20),
        cron(refresh_calendar_tokens, second=40),  # every minute
        cron(renew_calendar_webhooks, minute=17, second=0),  # hourly
        cron(reconcile, minute=30, second=0),  # hourly
        cron(expire_credits, hour=2, minute=0, second=0),  # daily
    ]
    on_startup = startup
    on_shutdown = shutdown


if __name__ == "__main__":
    run_worker(WorkerSettings)
