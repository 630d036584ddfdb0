"""Named conflicts between booked slots and blocked time; resolved only by an explicit decision."""

from datetime import datetime

from app.core.clock import utcnow
from app.core.exceptions import BadRequestError, ForbiddenError, NotFoundError
from app.core.ids import object_id
from app.core.logging import get_logger
from app.models.calendar_conflict import CalendarConflict
from app.models.slot import Slot
from app.services.events import CALENDAR_CONFLICT, publish_event

log = get_logger(__name__)

RESOLUTIONS = ("honor", "cancel_booking")


async def raise_conflict(booked: Slot, block: Slot, now: datetime) -> CalendarConflict:
    """Open a conflict for (booking, blocking event) unless one is already open."""
    query = [
        CalendarConflict.booking_id == booked.booking_id,
        CalendarConflict.status == "open",
    ]
    if block.external_event_id:
        query.append(CalendarConflict.external_event_id == block.external_event_id)
    else:
        query.append(CalendarConflict.block_slot_id == str(block.id))
    existing = await CalendarConflict.find_one(*query)
    if existing:
        return existing
    conflict = CalendarConflict(
        provider_id=booked.provider_id,
        booking_id=booked.booking_id or "",
        slot_id=str(booked.id),
        block_slot_id=str(block.id),
        external_event_id=block.external_event_id,
        start=block.start,
        end=block.end,
        created_at=now,
    )
    await conflict.insert()
    log.warning(
        "calendar_conflict",
        provider_id=booked.provider_id,
        booking_id=booked.booking_id,
        external_event_id=block.external_event_id,
    )
    await publish_event(
        CALENDAR_CONFLICT,
        {
            "conflict_id": str(conflict.id),
            "provider_id": conflict.provider_id,
            "booking_id": conflict.booking_id,
            "start": conflict.start.isoformat(),
            "end": conflict.end.isoformat(),
        },
        now=now,
    )
    return conflict


async def _resolve_where(query: list, resolution: str, resolved_by: str | None, now: datetime) -> int:
    open_conflicts = await CalendarConflict.find(*query, CalendarConflict.status == "open").to_list()
    for c in open_conflicts:
        c.status = "resolved"
        c.resolution = resolution
        c.resolved_by = resolved_by
        c.resolved_at = now
        await c.save()
    return len(open_conflicts)


async def resolve_for_booking(booking_id: str, resolution: str, resolved_by: str | None, now: datetime) -> int:
    return await _resolve_where([CalendarConflict.booking_id == booking_id], resolution, resolved_by, now)


async def resolve_for_event(
    provider_id: str,
    external_event_id: str,
    now: datetime,
    keep_slot_ids: set[str] | None = None,
) -> int:
    """Resolve conflicts of an external event that was removed or no longer overlaps `keep_slot_ids`."""
    open_conflicts = await CalendarConflict.find(
        CalendarConflict.provider_id == provider_id,
        CalendarConflict.external_event_id == external_event_id,
        CalendarConflict.status == "open",
    ).to_list()
    count = 0
    for c in open_conflicts:
        if keep_slot_ids and c.slot_id in keep_slot_ids:
            continue
        c.status = "resolved"
        c.resolution = "external_removed"
        c.resolved_at = now
        await c.save()
        count += 1
    return count


async def list_conflicts(provider_id: str, status: str | None = "open") -> list[CalendarConflict]:
    query = [CalendarConflict.provider_id == provider_id]
    if status:
        query.append(CalendarConflict.status == status)
    return await CalendarConflict.find(*query).sort(+CalendarConflict.start).to_list()


async def resolve_conflict(
    conflict_id: str,
    provider_id: str,
    decision: str,
    now: datetime | None = None,
) -> CalendarConflict:
    """Provider decision: `honor` keeps the booking; `cancel_booking` cancels it with a full refund."""
    if decision not in RESOLUTIONS:
        raise BadRequestError(f"decision must be one of {', '.join(RESOLUTIONS)}")
    now = now or utcnow()
    conflict = await CalendarConflict.get(object_id(conflict_id, "Conflict"))
    if not conflict:
        raise NotFoundError("Conflict not found")
    if conflict.provider_id != provider_id:
        raise ForbiddenError("Conflict belongs to another provider")
    if conflict.status == "resolved":
        return conflict
    if decision == "cancel_booking":
        from app.services import bookings as bookings_service
        # Cancellation resolves every open conflict of the booking, this one included.
        await bookings_service.cancel(conflict.booking_id, provider_id, now=now)
        refreshed = await CalendarConflict.get(conflict.id)
        return refreshed or conflict
    conflict.status = "resolved"
    conflict.resolution = "honored"
    conflict.resolved_by = provider_id
    conflict.resolved_at = now
    await conflict.save()
    log.info("calendar_conflict_honored", conflict_id=conflict_id, booking_id=conflict.booking_id)
    return conflict
