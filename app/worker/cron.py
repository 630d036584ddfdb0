"""Cron bodies: the periodic sweeps behind holds, sessions, the outbox, calendars and the ledger."""

from app.core.logging import get_logger
from app.services import availability, bookings, calendar_sync, credits, reconciliation
from app.services.events import dispatch_pending

log = get_logger(__name__)


async def run_expire_holds() -> None:
    """Revert holds past their TTL to open."""
    released = await availability.expire_holds()
    if released:
        log.info("expire_holds", released=released)


async def run_dispatch_events() -> None:
    """Drain the outbox: calendar export/delete, then notifications."""
    stats = await dispatch_pending()
    if any(stats.values()):
        log.info("dispatch_events", **stats)


async def run_complete_sessions() -> None:
    await bookings.complete_due_sessions()


async def run_sync_calendars() -> None:
    stats = await calendar_sync.sync_all_calendars()
    log.info("sync_calendars", **stats)


async def run_refresh_calendar_tokens() -> None:
    refreshed = await calendar_sync.refresh_expiring_tokens()
    if refreshed:
        log.info("refresh_calendar_tokens", refreshed=refreshed)


async def run_renew_calendar_webhooks() -> None:
    await calendar_sync.renew_expiring_webhooks()


async def run_expire_credits() -> None:
    """Record expire transactions for unspent purchases past their validity window."""
    written = await credits.expire_all_credits()
    log.info("expire_credits", transactions=written)


async def run_reconcile() -> None:
    await reconciliation.reconcile()
