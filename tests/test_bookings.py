"""Booking engine: hold -> debit -> commit, cancellation and completion."""

import asyncio
from datetime import timedelta

import pytest
import pytest_asyncio
from pymongo.errors import DuplicateKeyError

from app.core.exceptions import (
    BadRequestError,
    ConflictError,
    ForbiddenError,
    InsufficientBalanceError,
    NotAvailableError,
    TooLateError,
    TransientError,
)
from app.models.booking import Booking
from app.models.credit_transaction import CreditTransaction
from app.models.domain_event import DomainEvent
from app.models.slot import Slot
from app.services import availability
from app.services import bookings as bookings_service
from app.services import credits as credits_service
from app.services import events as events_service
from app.services.accounts import create_account, deactivate_account
from tests.conftest import NOW, at


@pytest_asyncio.fixture
async def open_slot(provider):
    [slot] = await availability.declare_slot(str(provider.id), at(9), at(10), now=NOW)
    return slot


async def test_reserve_debits_and_books(client_account, provider, open_slot, grant):
    acc = str(client_account.id)
    await grant(client_account, 100)
    booking = await bookings_service.reserve(acc, str(open_slot.id), 45, now=NOW)

    assert booking.status == "confirmed"
    assert (booking.start, booking.end) == (at(9), at(9, 45))
    assert booking.credit_cost == 45
    assert booking.cancellation_deadline == at(9) - timedelta(hours=24)
    assert await credits_service.get_balance(acc, as_of=NOW) == 55

    spend = await CreditTransaction.find_one(CreditTransaction.idempotency_key == f"spend:booking:{booking.id}")
    assert spend.amount == -45

    # The unbooked 15 minutes are offered again.
    slots = await availability.list_slots(str(provider.id))
    assert [(s.start, s.end, s.status) for s in slots] == [
        (at(9), at(9, 45), "booked"),
        (at(9, 45), at(10), "open"),
    ]
    events = await DomainEvent.find(DomainEvent.event_type == "booking.confirmed").to_list()
    assert events[0].payload["booking_id"] == str(booking.id)


async def test_insufficient_balance_leaves_no_trace(client_account, open_slot, grant):
    acc = str(client_account.id)
    await grant(client_account, 30)
    with pytest.raises(InsufficientBalanceError):
        await bookings_service.reserve(acc, str(open_slot.id), 60, now=NOW)

    slot = await Slot.get(open_slot.id)
    assert slot.status == "open" and slot.held_by is None
    assert await Booking.find_all().count() == 0
    assert await credits_service.get_balance(acc, as_of=NOW) == 30


async def test_ledger_failure_releases_hold(client_account, open_slot, grant, monkeypatch):
    await grant(client_account, 100)

    async def ledger_down(*args, **kwargs):
        raise TransientError("ledger unavailable")

    monkeypatch.setattr(credits_service, "record_transaction", ledger_down)
    with pytest.raises(TransientError):
        await bookings_service.reserve(str(client_account.id), str(open_slot.id), 60, now=NOW)

    slot = await Slot.get(open_slot.id)
    assert slot.status == "open"
    assert await Booking.find_all().count() == 0


async def test_concurrent_reserves_book_slot_once(client_account, open_slot, grant):
    other = await create_account("other@example.com", "client")
    await grant(client_account, 100)
    await grant(other, 100)

    results = await asyncio.gather(
        bookings_service.reserve(str(client_account.id), str(open_slot.id), 60, now=NOW),
        bookings_service.reserve(str(other.id), str(open_slot.id), 60, now=NOW),
        return_exceptions=True,
    )
    booked = [r for r in results if isinstance(r, Booking)]
    assert len(booked) == 1
    assert sum(isinstance(r, NotAvailableError) for r in results) == 1
    assert await CreditTransaction.find(CreditTransaction.kind == "spend").count() == 1


async def test_duration_longer_than_slot(client_account, open_slot, grant):
    await grant(client_account, 100)
    with pytest.raises(BadRequestError):
        await bookings_service.reserve(str(client_account.id), str(open_slot.id), 90, now=NOW)
    assert (await Slot.get(open_slot.id)).status == "open"


async def test_reserve_requires_active_provider(client_account, provider, open_slot, grant):
    await grant(client_account, 100)
    await deactivate_account(str(provider.id), now=NOW)
    with pytest.raises(ForbiddenError):
        await bookings_service.reserve(str(client_account.id), str(open_slot.id), 60, now=NOW)


async def test_idempotency_key_returns_same_booking(client_account, open_slot, grant):
    acc = str(client_account.id)
    await grant(client_account, 100)
    first = await bookings_service.reserve(acc, str(open_slot.id), 30, idempotency_key="req-1", now=NOW)
    again = await bookings_service.reserve(acc, str(open_slot.id), 30, idempotency_key="req-1", now=NOW)
    assert again.id == first.id
    assert await credits_service.get_balance(acc, as_of=NOW) == 70

    with pytest.raises(ConflictError):
        await bookings_service.reserve(acc, str(open_slot.id), 45, idempotency_key="req-1", now=NOW)


async def test_client_cancel_before_deadline_refunds(client_account, provider, open_slot, grant):
    acc = str(client_account.id)
    await grant(client_account, 100)
    booking = await bookings_service.reserve(acc, str(open_slot.id), 60, now=NOW)

    cancelled = await bookings_service.cancel(str(booking.id), acc, now=NOW + timedelta(minutes=10))
    assert cancelled.status == "cancelled"
    assert cancelled.refunded_amount == 60
    assert await credits_service.get_balance(acc, as_of=NOW) == 100
    assert (await Slot.get(open_slot.id)).status == "open"

    # Cancelling twice refunds once.
    await bookings_service.cancel(str(booking.id), acc, now=NOW + timedelta(minutes=11))
    assert await CreditTransaction.find(CreditTransaction.kind == "refund").count() == 1


async def test_client_cancel_after_deadline_is_too_late(client_account, provider, open_slot, grant):
    acc = str(client_account.id)
    await grant(client_account, 100)
    booking = await bookings_service.reserve(acc, str(open_slot.id), 60, now=NOW)
    after_deadline = at(8)
    with pytest.raises(TooLateError):
        await bookings_service.cancel(str(booking.id), acc, now=after_deadline)

    # The provider may still cancel, with a full refund.
    cancelled = await bookings_service.cancel(str(booking.id), str(provider.id), now=after_deadline)
    assert cancelled.cancelled_by == str(provider.id)
    assert await credits_service.get_balance(acc, as_of=after_deadline) == 100


async def test_stranger_cannot_cancel(client_account, open_slot, grant):
    other = await create_account("other@example.com", "client")
    await grant(client_account, 100)
    booking = await bookings_service.reserve(str(client_account.id), str(open_slot.id), 60, now=NOW)
    with pytest.raises(ForbiddenError):
        await bookings_service.cancel(str(booking.id), str(other.id), now=NOW)


async def test_complete_due_sessions(client_account, open_slot, grant):
    await grant(client_account, 100)
    booking = await bookings_service.reserve(str(client_account.id), str(open_slot.id), 60, now=NOW)

    assert await bookings_service.complete_due_sessions(now=at(9, 30)) == 0
    with pytest.raises(BadRequestError):
        await bookings_service.complete(str(booking.id), now=at(9, 30))

    assert await bookings_service.complete_due_sessions(now=at(10)) == 1
    booking = await Booking.get(booking.id)
    assert booking.status == "completed"
    assert (await Slot.get(open_slot.id)).status == "completed"
    assert await DomainEvent.find(DomainEvent.event_type == "booking.completed").count() == 1


async def test_no_show_keeps_credits_spent(client_account, provider, open_slot, grant):
    acc = str(client_account.id)
    await grant(client_account, 100)
    booking = await bookings_service.reserve(acc, str(open_slot.id), 60, now=NOW)

    with pytest.raises(BadRequestError):
        await bookings_service.mark_no_show(str(booking.id), str(provider.id), now=NOW)
    marked = await bookings_service.mark_no_show(str(booking.id), str(provider.id), now=at(9, 20))
    assert marked.status == "no_show"
    assert await credits_service.get_balance(acc, as_of=at(9, 20)) == 40

    with pytest.raises(ConflictError):
        await bookings_service.cancel(str(booking.id), str(provider.id), now=at(9, 25))


async def test_list_bookings_by_role(client_account, provider, open_slot, grant):
    await grant(client_account, 100)
    booking = await bookings_service.reserve(str(client_account.id), str(open_slot.id), 60, now=NOW)

    items, total = await bookings_service.list_bookings(client_account)
    assert total == 1 and items[0].id == booking.id
    items, total = await bookings_service.list_bookings(provider, statuses=["cancelled"])
    assert total == 0


async def test_low_balance_event_failure_keeps_booking(client_account, open_slot, grant, monkeypatch):
    acc = str(client_account.id)
    await grant(client_account, 60)
    real_publish = events_service.publish_event

    async def publish_fails_for_low_credits(event_type, payload, now=None):
        if event_type == events_service.CREDITS_LOW:
            raise ConnectionError("event store unavailable")
        return await real_publish(event_type, payload, now=now)

    monkeypatch.setattr(events_service, "publish_event", publish_fails_for_low_credits)
    booking = await bookings_service.reserve(acc, str(open_slot.id), 50, now=NOW)

    assert booking.status == "confirmed"
    assert await Booking.find_all().count() == 1
    assert await CreditTransaction.find(CreditTransaction.kind == "spend").count() == 1
    assert await credits_service.get_balance(acc, as_of=NOW) == 10
    slot = await Slot.find_one(Slot.booking_id == str(booking.id))
    assert slot.status == "booked"


async def test_error_after_spend_is_written_still_books(client_account, open_slot, grant, monkeypatch):
    acc = str(client_account.id)
    await grant(client_account, 100)
    real_record = credits_service.record_transaction

    async def record_then_fail(*args, **kwargs):
        await real_record(*args, **kwargs)
        raise TransientError("connection reset after write")

    monkeypatch.setattr(credits_service, "record_transaction", record_then_fail)
    booking = await bookings_service.reserve(acc, str(open_slot.id), 60, now=NOW)

    assert booking.status == "confirmed"
    assert (await Slot.get(open_slot.id)).status == "booked"
    assert await CreditTransaction.find(CreditTransaction.kind == "spend").count() == 1
    assert await credits_service.get_balance(acc, as_of=NOW) == 40


async def test_idempotency_key_raced_on_another_provider(client_account, open_slot, grant, monkeypatch):
    acc = str(client_account.id)
    await grant(client_account, 100)
    await bookings_service.reserve(acc, str(open_slot.id), 30, idempotency_key="req-1", now=NOW)
    other = await create_account("second@example.com", "provider", "Dr. Lee", credits_per_minute=1)
    [other_slot] = await availability.declare_slot(str(other.id), at(11), at(12), now=NOW)

    # The first lookup misses, as if the other reservation had not committed yet.
    real_find = bookings_service._find_by_idempotency_key
    lookups = []

    async def stale_first_lookup(client_id, key):
        lookups.append(key)
        if len(lookups) == 1:
            return None
        return await real_find(client_id, key)

    monkeypatch.setattr(bookings_service, "_find_by_idempotency_key", stale_first_lookup)
    with pytest.raises(ConflictError):
        await bookings_service.reserve(acc, str(other_slot.id), 30, idempotency_key="req-1", now=NOW)

    assert (await Slot.get(other_slot.id)).status == "open"
    assert await Booking.find_all().count() == 1
    assert await credits_service.get_balance(acc, as_of=NOW) == 70


async def test_booking_idempotency_key_is_unique_per_client(client_account, provider):
    def booking(key):
        return Booking(
            client_id=str(client_account.id),
            provider_id=str(provider.id),
            slot_id="s",
            start=at(9),
            end=at(10),
            duration_minutes=60,
            credit_cost=60,
            cancellation_deadline=at(9) - timedelta(hours=24),
            idempotency_key=key,
        )

    await booking("k").insert()
    with pytest.raises(DuplicateKeyError):
        await booking("k").insert()
    # Bookings without a key never collide.
    await booking(None).insert()
    await booking(None).insert()


async def test_completing_twice_publishes_once(client_account, open_slot, grant):
    await grant(client_account, 100)
    booking = await bookings_service.reserve(str(client_account.id), str(open_slot.id), 60, now=NOW)

    await bookings_service.complete(str(booking.id), now=at(10))
    again = await bookings_service.complete(str(booking.id), now=at(10, 5))
    assert again.status == "completed"
    assert await DomainEvent.find(DomainEvent.event_type == "booking.completed").count() == 1
