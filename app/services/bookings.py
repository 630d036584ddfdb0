"""
Booking engine: hold -> debit -> commit.

A slot is never booked without a successful spend, and a spend never exists
without a held slot: when the debit fails the hold is released and the pending
booking removed before the error reaches the caller, unless the spend was
written before the error, in which case the booking commits. The provider lock is
taken before the client's account lock, never the other way round.
"""

from datetime import datetime, timedelta

from beanie.operators import In
from pymongo.errors import DuplicateKeyError

from app.core.audit import log_event
from app.core.clock import utcnow
from app.core.config import get_settings
from app.core.exceptions import BadRequestError, ConflictError, ForbiddenError, NotFoundError, TooLateError
from app.core.ids import object_id
from app.core.logging import get_logger
from app.locking import get_lock_manager, provider_key
from app.models.account import Account
from app.models.booking import Booking
from app.models.slot import Slot
from app.services import availability
from app.services import conflicts as conflicts_service
from app.services import credits as credits_service
from app.services.accounts import get_account, get_active_account, provider_rate
from app.services.events import BOOKING_CANCELLED, BOOKING_COMPLETED, BOOKING_CONFIRMED, publish_event

log = get_logger(__name__)


def spend_key(booking_id: str) -> str:
    return f"spend:booking:{booking_id}"


def refund_key(booking_id: str) -> str:
    return f"refund:booking:{booking_id}"


def _event_payload(booking: Booking) -> dict:
    return {
        "booking_id": str(booking.id),
        "client_id": booking.client_id,
        "provider_id": booking.provider_id,
        "start": booking.start.isoformat(),
        "end": booking.end.isoformat(),
        "credit_cost": booking.credit_cost,
    }


async def get_booking(booking_id: str) -> Booking:
    booking = await Booking.get(object_id(booking_id, "Booking"))
    if not booking:
        raise NotFoundError("Booking not found")
    return booking


async def get_booking_for(booking_id: str, account: Account) -> Booking:
    booking = await get_booking(booking_id)
    if account.role != "admin" and str(account.id) not in (booking.client_id, booking.provider_id):
        raise NotFoundError("Booking not found")
    return booking


async def _find_by_idempotency_key(client_id: str, idempotency_key: str) -> Booking | None:
    return await Booking.find_one(
        Booking.client_id == client_id,
        Booking.idempotency_key == idempotency_key,
    )


def _same_or_conflict(existing: Booking, slot_id: str, duration_minutes: int) -> Booking:
    if existing.slot_id != slot_id or existing.duration_minutes != duration_minutes:
        raise ConflictError(
            "Idempotency key already used for a different booking",
            details={"booking_id": str(existing.id)},
        )
    return existing


async def reserve(
    client_id: str,
    slot_id: str,
    duration_minutes: int,
    idempotency_key: str | None = None,
    now: datetime | None = None,
) -> Booking:
    """
    Book the leading `duration_minutes` of a slot for a client.
    Cost is duration x the provider's rate, snapshotted on the booking.
    Raises NotAvailableError, InsufficientBalanceError or BadRequestError; none of
    them leaves a hold or a debit behind. A repeated idempotency key returns the
    booking it created.
    """
    now = now or utcnow()
    settings = get_settings()
    if duration_minutes < settings.min_slot_minutes:
        raise BadRequestError(f"Sessions must be at least {settings.min_slot_minutes} minutes")
    await get_active_account(client_id, "client")
    slot = await availability.get_slot(slot_id)
    provider = await get_active_account(slot.provider_id, "provider")
    cost = duration_minutes * provider_rate(provider)

    async with get_lock_manager().lock(provider_key(slot.provider_id)):
        if idempotency_key:
            existing = await _find_by_idempotency_key(client_id, idempotency_key)
            if existing:
                return _same_or_conflict(existing, slot_id, duration_minutes)

        slot = await availability.hold_slot_locked(slot_id, client_id, now)
        if duration_minutes > slot.duration_minutes:
            await availability.release_hold_locked(slot, now)
            raise BadRequestError(
                "Duration exceeds the slot",
                details={"slot_minutes": slot.duration_minutes, "requested": duration_minutes},
            )
        booking = Booking(
            client_id=client_id,
            provider_id=slot.provider_id,
            slot_id=slot_id,
            start=slot.start,
            end=slot.start + timedelta(minutes=duration_minutes),
            duration_minutes=duration_minutes,
            credit_cost=cost,
            cancellation_deadline=slot.start - timedelta(hours=settings.cancellation_window_hours),
            idempotency_key=idempotency_key,
            created_at=now,
            updated_at=now,
        )
        try:
            await booking.insert()
        except DuplicateKeyError:
            # Same key raced in under another provider's lock.
            await availability.release_hold_locked(slot, now)
            existing = await _find_by_idempotency_key(client_id, idempotency_key)
            if existing is None:
                raise ConflictError("A booking with this idempotency key is being rolled back")
            return _same_or_conflict(existing, slot_id, duration_minutes)
        booking_id = str(booking.id)
        try:
            await credits_service.record_transaction(
                client_id, "spend", -cost, spend_key(booking_id), "booking", booking_id, now=now
            )
        except Exception as e:
            # The spend may have been written before the error; then the booking must go ahead.
            if not await credits_service.find_transaction(client_id, spend_key(booking_id)):
                await availability.release_hold_locked(slot, now)
                await booking.delete()
                log.info("reserve_rolled_back", client_id=client_id, slot_id=slot_id, cost=cost)
                raise
            log.warning("reserve_spend_recorded_despite_error", booking_id=booking_id, reason=str(e))

        await availability.commit_booking_locked(slot, booking_id, duration_minutes, now)
        booking.status = "confirmed"
        booking.updated_at = now
        await booking.save()

    log.info("booking_confirmed", booking_id=booking_id, client_id=client_id, provider_id=booking.provider_id, cost=cost)
    await publish_event(BOOKING_CONFIRMED, _event_payload(booking), now=now)
    await log_event(client_id, "booking_confirmed", "booking", booking_id, {"credit_cost": cost})
    return booking


async def cancel(booking_id: str, requested_by: str, now: datetime | None = None) -> Booking:
    """
    Cancel with a full refund. Clients are bound by the cancellation deadline
    (TooLateError after it); the provider and admins may cancel any time before the end.
    """
    now = now or utcnow()
    requester = await get_account(requested_by)
    booking = await get_booking(booking_id)
    is_client = requested_by == booking.client_id
    if not is_client and requested_by != booking.provider_id and requester.role != "admin":
        raise ForbiddenError("Not a party to this booking")
    if booking.status == "cancelled":
        return booking
    if booking.status != "confirmed":
        raise ConflictError(f"Booking is {booking.status}", details={"status": booking.status})
    if now >= booking.end:
        raise ConflictError("Session has already ended")
    if is_client and now > booking.cancellation_deadline:
        raise TooLateError(details={"cancellation_deadline": booking.cancellation_deadline.isoformat()})

    async with get_lock_manager().lock(provider_key(booking.provider_id)):
        booking = await get_booking(booking_id)
        if booking.status == "cancelled":
            return booking
        refund = await credits_service.record_transaction(
            booking.client_id,
            "refund",
            booking.credit_cost,
            refund_key(booking_id),
            "booking",
            booking_id,
            now=now,
        )
        slot = await Slot.get(object_id(booking.slot_id, "Slot"))
        if slot and slot.status == "booked" and slot.booking_id == booking_id:
            await availability.reopen_slot_locked(slot, now)
        booking.status = "cancelled"
        booking.cancelled_by = requested_by
        booking.cancelled_at = now
        booking.refunded_amount = refund.amount
        booking.updated_at = now
        await booking.save()
        await conflicts_service.resolve_for_booking(booking_id, "booking_cancelled", requested_by, now)

    log.info("booking_cancelled", booking_id=booking_id, cancelled_by=requested_by, refunded=refund.amount)
    payload = _event_payload(booking)
    payload["cancelled_by"] = requested_by
    await publish_event(BOOKING_CANCELLED, payload, now=now)
    await log_event(requested_by, "booking_cancelled", "booking", booking_id, {"refunded": refund.amount})
    return booking


async def _finish(booking_id: str, provider_id: str, status: str, now: datetime) -> tuple[Booking, bool]:
    """Move a confirmed booking to `status`; the flag is False when it was already there."""
    async with get_lock_manager().lock(provider_key(provider_id)):
        booking = await get_booking(booking_id)
        if booking.status == status:
            return booking, False
        if booking.status != "confirmed":
            raise ConflictError(f"Booking is {booking.status}", details={"status": booking.status})
        booking.status = status
        booking.completed_at = now
        booking.updated_at = now
        await booking.save()
        slot = await Slot.get(object_id(booking.slot_id, "Slot"))
        if slot and slot.booking_id == booking_id:
            slot.status = "completed"
            slot.updated_at = now
            await slot.save()
    return booking, True


async def complete(booking_id: str, now: datetime | None = None) -> Booking:
    """confirmed -> completed once the session has ended. No ledger effect."""
    now = now or utcnow()
    booking = await get_booking(booking_id)
    if booking.status == "confirmed" and now < booking.end:
        raise BadRequestError("Session has not ended yet")
    booking, changed = await _finish(booking_id, booking.provider_id, "completed", now)
    if changed:
        await publish_event(BOOKING_COMPLETED, _event_payload(booking), now=now)
    return booking


async def mark_no_show(booking_id: str, provider_id: str, now: datetime | None = None) -> Booking:
    """Provider records that the client did not attend; the credits stay spent."""
    now = now or utcnow()
    booking = await get_booking(booking_id)
    if booking.provider_id != provider_id:
        raise ForbiddenError("Booking belongs to another provider")
    if now < booking.start:
        raise BadRequestError("Session has not started yet")
    booking, changed = await _finish(booking_id, provider_id, "no_show", now)
    if changed:
        log.info("booking_no_show", booking_id=booking_id, provider_id=provider_id)
        await log_event(provider_id, "booking_no_show", "booking", booking_id)
    return booking


async def complete_due_sessions(now: datetime | None = None) -> int:
    """Sweep: complete confirmed bookings whose end has passed."""
    now = now or utcnow()
    due = await Booking.find(Booking.status == "confirmed", Booking.end <= now).limit(500).to_list()
    completed = 0
    for booking in due:
        try:
            await complete(str(booking.id), now=now)
            completed += 1
        except Exception as e:
            log.warning("complete_failed", booking_id=str(booking.id), reason=str(e))
    if completed:
        log.info("sessions_completed", count=completed)
    return completed


async def list_bookings(
    account: Account,
    statuses: list[str] | None = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[Booking], int]:
    """Bookings where the account is client (or provider), soonest first."""
    account_id = str(account.id)
    field = Booking.provider_id if account.role == "provider" else Booking.client_id
    query = [field == account_id]
    if statuses:
        query.append(In(Booking.status, statuses))
    q = Booking.find(*query)
    total = await q.count()
    items = await q.sort(+Booking.start).skip(offset).limit(limit).to_list()
    return items, total
