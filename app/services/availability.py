"""
Availability store: per-provider bookable slots.

Every mutation of a provider's slot set runs under the provider lock. Helpers
named *_locked expect the caller (the booking engine) to hold it already.
Invariant: open/held/booked slots of one provider never overlap; blocked slots
may overlap booked ones, which is recorded as a conflict instead.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta

from beanie.operators import In

from app.core.clock import to_utc_naive, utcnow
from app.core.config import get_settings
from app.core.exceptions import BadRequestError, ForbiddenError, NotAvailableError, NotFoundError, OverlapError
from app.core.ids import object_id
from app.core.logging import get_logger
from app.locking import get_lock_manager, provider_key
from app.models.calendar_conflict import CalendarConflict
from app.models.slot import ACTIVE_STATUSES, Slot
from app.services import conflicts as conflicts_service
from app.services.accounts import get_active_account

log = get_logger(__name__)

Interval = tuple[datetime, datetime]


@dataclass
class BlockResult:
    block: Slot | None
    conflicts: list[CalendarConflict] = field(default_factory=list)
    changed: bool = True


def subtract(interval: Interval, cuts: list[Interval]) -> list[Interval]:
    """Parts of `interval` not covered by any cut, in time order."""
    pieces = [interval]
    for cut_start, cut_end in cuts:
        next_pieces = []
        for start, end in pieces:
            if cut_end <= start or cut_start >= end:
                next_pieces.append((start, end))
                continue
            if cut_start > start:
                next_pieces.append((start, cut_start))
            if cut_end < end:
                next_pieces.append((cut_end, end))
        pieces = next_pieces
    return sorted(p for p in pieces if p[1] > p[0])


def _long_enough(pieces: list[Interval]) -> list[Interval]:
    min_len = timedelta(minutes=get_settings().min_slot_minutes)
    return [p for p in pieces if p[1] - p[0] >= min_len]


def hold_is_live(slot: Slot, now: datetime) -> bool:
    return slot.status == "held" and slot.hold_expires_at is not None and slot.hold_expires_at > now


async def get_slot(slot_id: str) -> Slot:
    slot = await Slot.get(object_id(slot_id, "Slot"))
    if not slot:
        raise NotFoundError("Slot not found")
    return slot


async def overlapping(provider_id: str, start: datetime, end: datetime, statuses: list[str]) -> list[Slot]:
    return (
        await Slot.find(
            Slot.provider_id == provider_id,
            In(Slot.status, statuses),
            Slot.start < end,
            Slot.end > start,
        )
        .sort(+Slot.start)
        .to_list()
    )


async def list_slots(
    provider_id: str,
    start: datetime | None = None,
    end: datetime | None = None,
    statuses: list[str] | None = None,
) -> list[Slot]:
    query = [Slot.provider_id == provider_id]
    if start:
        query.append(Slot.end > to_utc_naive(start))
    if end:
        query.append(Slot.start < to_utc_naive(end))
    if statuses:
        query.append(In(Slot.status, statuses))
    return await Slot.find(*query).sort(+Slot.start).to_list()


async def declare_slot(
    provider_id: str,
    start: datetime,
    end: datetime,
    now: datetime | None = None,
) -> list[Slot]:
    """
    Offer [start, end) as open time. Fails with OverlapError against open/held/booked
    slots; blocked time is cut out, so one declaration may yield several slots.
    """
    now = now or utcnow()
    start, end = to_utc_naive(start), to_utc_naive(end)
    if end <= start:
        raise BadRequestError("end must be after start")
    if start < now:
        raise BadRequestError("Cannot declare availability in the past")
    if not _long_enough([(start, end)]):
        raise BadRequestError(f"Slots must be at least {get_settings().min_slot_minutes} minutes")
    await get_active_account(provider_id, "provider")
    async with get_lock_manager().lock(provider_key(provider_id)):
        clashes = await overlapping(provider_id, start, end, ACTIVE_STATUSES)
        if clashes:
            raise OverlapError(details={"slot_ids": [str(s.id) for s in clashes]})
        blocks = await overlapping(provider_id, start, end, ["blocked"])
        pieces = _long_enough(subtract((start, end), [(b.start, b.end) for b in blocks]))
        if not pieces:
            raise NotAvailableError("Interval is blocked by the external calendar")
        slots = []
        for piece_start, piece_end in pieces:
            slot = Slot(
                provider_id=provider_id,
                start=piece_start,
                end=piece_end,
                status="open",
                source="provider",
                created_at=now,
                updated_at=now,
            )
            await slot.insert()
            slots.append(slot)
    log.info("slot_declared", provider_id=provider_id, slot_ids=[str(s.id) for s in slots], blocked_cuts=len(blocks))
    return slots


async def remove_slot(slot_id: str, provider_id: str) -> None:
    """Provider withdraws an open slot."""
    slot = await get_slot(slot_id)
    if slot.provider_id != provider_id:
        raise ForbiddenError("Slot belongs to another provider")
    async with get_lock_manager().lock(provider_key(provider_id)):
        slot = await get_slot(slot_id)
        if slot.status != "open":
            raise NotAvailableError("Only open slots can be removed", details={"status": slot.status})
        await slot.delete()
    log.info("slot_removed", provider_id=provider_id, slot_id=slot_id)


async def hold_slot_locked(slot_id: str, client_id: str, now: datetime) -> Slot:
    slot = await get_slot(slot_id)
    if hold_is_live(slot, now) and slot.held_by == client_id:
        return slot
    holdable = slot.status == "open" or (slot.status == "held" and not hold_is_live(slot, now))
    if not holdable:
        raise NotAvailableError(details={"slot_id": slot_id, "status": slot.status})
    if slot.start <= now:
        raise NotAvailableError("Slot has already started", details={"slot_id": slot_id})
    slot.status = "held"
    slot.held_by = client_id
    slot.hold_expires_at = now + timedelta(seconds=get_settings().hold_ttl_seconds)
    slot.updated_at = now
    await slot.save()
    log.info("slot_held", slot_id=slot_id, provider_id=slot.provider_id, client_id=client_id)
    return slot


async def hold_slot(slot_id: str, client_id: str, now: datetime | None = None) -> Slot:
    """open -> held for a short TTL; the same client re-holding a live hold is a no-op."""
    now = now or utcnow()
    slot = await get_slot(slot_id)
    async with get_lock_manager().lock(provider_key(slot.provider_id)):
        return await hold_slot_locked(slot_id, client_id, now)


async def release_hold_locked(slot: Slot, now: datetime) -> Slot:
    if slot.status != "held":
        return slot
    slot.status = "open"
    slot.held_by = None
    slot.hold_expires_at = None
    slot.updated_at = now
    await slot.save()
    log.info("slot_released", slot_id=str(slot.id), provider_id=slot.provider_id)
    return slot


async def release_hold(slot_id: str, client_id: str | None = None, now: datetime | None = None) -> Slot:
    now = now or utcnow()
    slot = await get_slot(slot_id)
    async with get_lock_manager().lock(provider_key(slot.provider_id)):
        slot = await get_slot(slot_id)
        if slot.status != "held":
            return slot
        if client_id and slot.held_by != client_id:
            raise ForbiddenError("Slot is held by another client")
        return await release_hold_locked(slot, now)


async def expire_holds(now: datetime | None = None) -> int:
    """Sweep: revert holds whose TTL has passed to open. Returns slots released."""
    now = now or utcnow()
    stale = await Slot.find(Slot.status == "held", Slot.hold_expires_at <= now).to_list()
    released = 0
    for provider_id in sorted({s.provider_id for s in stale}):
        async with get_lock_manager().lock(provider_key(provider_id)):
            for slot in [s for s in stale if s.provider_id == provider_id]:
                current = await Slot.get(slot.id)
                if current and current.status == "held" and not hold_is_live(current, now):
                    await release_hold_locked(current, now)
                    released += 1
    if released:
        log.info("holds_expired", count=released)
    return released


async def commit_booking_locked(slot: Slot, booking_id: str, duration_minutes: int, now: datetime) -> Slot:
    """held -> booked for the leading `duration_minutes`; any remainder is re-offered as open."""
    booked_end = slot.start + timedelta(minutes=duration_minutes)
    remainder = _long_enough([(booked_end, slot.end)]) if booked_end < slot.end else []
    slot.end = booked_end
    slot.status = "booked"
    slot.booking_id = booking_id
    slot.hold_expires_at = None
    slot.updated_at = now
    await slot.save()
    for piece_start, piece_end in remainder:
        await Slot(
            provider_id=slot.provider_id,
            start=piece_start,
            end=piece_end,
            status="open",
            source=slot.source,
            created_at=now,
            updated_at=now,
        ).insert()
    return slot


async def reopen_slot_locked(slot: Slot, now: datetime) -> list[Slot]:
    """A cancelled booking's slot goes back to open, minus any time blocked meanwhile."""
    blocks = await overlapping(slot.provider_id, slot.start, slot.end, ["blocked"])
    pieces = _long_enough(subtract((slot.start, slot.end), [(b.start, b.end) for b in blocks]))
    pieces = [p for p in pieces if p[0] > now]
    if not pieces:
        await slot.delete()
        log.info("slot_dropped_on_reopen", slot_id=str(slot.id), provider_id=slot.provider_id)
        return []
    slot.start, slot.end = pieces[0]
    slot.status = "open"
    slot.booking_id = None
    slot.held_by = None
    slot.hold_expires_at = None
    slot.updated_at = now
    await slot.save()
    reopened = [slot]
    for piece_start, piece_end in pieces[1:]:
        extra = Slot(
            provider_id=slot.provider_id,
            start=piece_start,
            end=piece_end,
            status="open",
            source=slot.source,
            created_at=now,
            updated_at=now,
        )
        await extra.insert()
        reopened.append(extra)
    return reopened


async def block_interval_locked(
    provider_id: str,
    start: datetime,
    end: datetime,
    external_event_id: str | None,
    source: str,
    now: datetime,
) -> BlockResult:
    if external_event_id:
        existing = await Slot.find(
            Slot.provider_id == provider_id,
            Slot.external_event_id == external_event_id,
            Slot.status == "blocked",
        ).to_list()
    else:
        existing = await Slot.find(
            Slot.provider_id == provider_id,
            Slot.status == "blocked",
            Slot.start == start,
            Slot.end == end,
        ).to_list()
    if len(existing) == 1 and existing[0].start == start and existing[0].end == end:
        return BlockResult(block=existing[0], changed=False)
    for stale in existing:
        # Event moved: drop the old interval, re-block the new one below.
        await stale.delete()

    for slot in await overlapping(provider_id, start, end, ["open", "held"]):
        pieces = _long_enough(subtract((slot.start, slot.end), [(start, end)]))
        if slot.status == "held":
            log.info("hold_released_by_block", slot_id=str(slot.id), client_id=slot.held_by)
        if not pieces:
            await slot.delete()
            continue
        slot.start, slot.end = pieces[0]
        slot.status = "open"
        slot.held_by = None
        slot.hold_expires_at = None
        slot.updated_at = now
        await slot.save()
        for piece_start, piece_end in pieces[1:]:
            await Slot(
                provider_id=provider_id,
                start=piece_start,
                end=piece_end,
                status="open",
                source=slot.source,
                created_at=now,
                updated_at=now,
            ).insert()

    block = Slot(
        provider_id=provider_id,
        start=start,
        end=end,
        status="blocked",
        source=source,
        external_event_id=external_event_id,
        created_at=now,
        updated_at=now,
    )
    await block.insert()

    booked = await overlapping(provider_id, start, end, ["booked"])
    if external_event_id and existing:
        await conflicts_service.resolve_for_event(
            provider_id, external_event_id, now, keep_slot_ids={str(s.id) for s in booked}
        )
    conflicts = [await conflicts_service.raise_conflict(slot, block, now) for slot in booked]
    log.info(
        "interval_blocked",
        provider_id=provider_id,
        external_event_id=external_event_id,
        start=start.isoformat(),
        end=end.isoformat(),
        conflicts=len(conflicts),
    )
    return BlockResult(block=block, conflicts=conflicts)


async def block_interval(
    provider_id: str,
    start: datetime,
    end: datetime,
    external_event_id: str | None = None,
    source: str = "external",
    now: datetime | None = None,
) -> BlockResult:
    """
    Mark [start, end) unavailable. Open/held slots inside are removed or truncated;
    booked slots are left alone and reported as conflicts. Re-blocking the same
    event with the same interval is a no-op.
    """
    now = now or utcnow()
    start, end = to_utc_naive(start), to_utc_naive(end)
    if end <= start:
        raise BadRequestError("end must be after start")
    async with get_lock_manager().lock(provider_key(provider_id)):
        return await block_interval_locked(provider_id, start, end, external_event_id, source, now)


async def unblock_external_event(provider_id: str, external_event_id: str, now: datetime | None = None) -> bool:
    """The external event was cancelled or freed: drop its block. Freed time is not re-offered automatically."""
    now = now or utcnow()
    async with get_lock_manager().lock(provider_key(provider_id)):
        blocks = await Slot.find(
            Slot.provider_id == provider_id,
            Slot.external_event_id == external_event_id,
            Slot.status == "blocked",
        ).to_list()
        for block in blocks:
            await block.delete()
        resolved = await conflicts_service.resolve_for_event(provider_id, external_event_id, now)
    if blocks:
        log.info("interval_unblocked", provider_id=provider_id, external_event_id=external_event_id, conflicts_resolved=resolved)
    return bool(blocks)


async def clear_external_blocks(provider_id: str, now: datetime | None = None) -> int:
    """Drop future blocks imported from the calendar (used when the link is removed)."""
    now = now or utcnow()
    async with get_lock_manager().lock(provider_key(provider_id)):
        blocks = await Slot.find(
            Slot.provider_id == provider_id,
            Slot.status == "blocked",
            Slot.source == "external",
            Slot.end > now,
        ).to_list()
        for block in blocks:
            await block.delete()
        for event_id in {b.external_event_id for b in blocks if b.external_event_id}:
            await conflicts_service.resolve_for_event(provider_id, event_id, now)
    if blocks:
        log.info("external_blocks_cleared", provider_id=provider_id, count=len(blocks))
    return len(blocks)
