"""Outbox of core events and the dispatcher that drains it."""

from datetime import datetime
from typing import Any

from app.core.clock import utcnow
from app.core.config import get_settings
from app.core.logging import get_logger
from app.models.domain_event import DomainEvent
from app.services.notifications import notify

log = get_logger(__name__)

BOOKING_CONFIRMED = "booking.confirmed"
BOOKING_CANCELLED = "booking.cancelled"
BOOKING_COMPLETED = "booking.completed"
CREDITS_LOW = "credits.low"
CALENDAR_CONFLICT = "calendar.conflict"
CALENDAR_REAUTH_REQUIRED = "calendar.reauthorization_required"


async def publish_event(event_type: str, payload: dict[str, Any], now: datetime | None = None) -> DomainEvent:
    """Record an event; delivery happens later in the worker, so it can never undo the caller's change."""
    event = DomainEvent(event_type=event_type, payload=payload, created_at=now or utcnow())
    await event.insert()
    log.info("event_published", event_type=event_type, event_id=str(event.id))
    return event


async def _run_internal_handler(event: DomainEvent) -> None:
    from app.services import calendar_sync

    if event.event_type == BOOKING_CONFIRMED:
        await calendar_sync.export_booking(event.payload["booking_id"])
    elif event.event_type == BOOKING_CANCELLED:
        await calendar_sync.remove_exported_event(event.payload["booking_id"])


async def dispatch_pending(limit: int = 100, now: datetime | None = None) -> dict[str, int]:
    """Run internal handlers then notify for each pending event, oldest first."""
    max_attempts = get_settings().event_max_attempts
    events = (
        await DomainEvent.find(DomainEvent.status == "pending")
        .sort(+DomainEvent.created_at)
        .limit(limit)
        .to_list()
    )
    stats = {"dispatched": 0, "retrying": 0, "failed": 0}
    for event in events:
        event.attempts += 1
        try:
            await _run_internal_handler(event)
        except Exception as e:
            event.last_error = str(e)[:500]
            if event.attempts >= max_attempts:
                event.status = "failed"
                stats["failed"] += 1
                log.error("event_failed", event_type=event.event_type, event_id=str(event.id), reason=event.last_error)
            else:
                stats["retrying"] += 1
                log.warning("event_retry", event_type=event.event_type, event_id=str(event.id), attempts=event.attempts)
            await event.save()
            continue
        await notify(event.event_type, event.payload)
        event.status = "dispatched"
        event.dispatched_at = now or utcnow()
        await event.save()
        stats["dispatched"] += 1
    return stats
