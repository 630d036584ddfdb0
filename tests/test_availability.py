"""Availability store: declaring, holding and blocking provider time."""

from datetime import timedelta

import pytest

from app.core.exceptions import BadRequestError, ForbiddenError, NotAvailableError, OverlapError
from app.models.calendar_conflict import CalendarConflict
from app.models.slot import Slot
from app.services import availability
from app.services import bookings as bookings_service
from app.services.accounts import create_account
from tests.conftest import NOW, at


def spans(slots):
    return [(s.start, s.end, s.status) for s in slots]


async def test_declare_slot(provider):
    pid = str(provider.id)
    slots = await availability.declare_slot(pid, at(9), at(10), now=NOW)
    assert spans(slots) == [(at(9), at(10), "open")]
    assert slots[0].source == "provider"
    assert slots[0].duration_minutes == 60


async def test_declare_overlapping_slot_fails(provider):
    pid = str(provider.id)
    await availability.declare_slot(pid, at(9), at(10), now=NOW)
    with pytest.raises(OverlapError):
        await availability.declare_slot(pid, at(9, 30), at(10, 30), now=NOW)
    # Touching intervals do not overlap.
    await availability.declare_slot(pid, at(10), at(11), now=NOW)


async def test_declare_rejects_bad_intervals(provider):
    pid = str(provider.id)
    with pytest.raises(BadRequestError):
        await availability.declare_slot(pid, at(10), at(9), now=NOW)
    with pytest.raises(BadRequestError):
        await availability.declare_slot(pid, NOW - timedelta(hours=1), NOW + timedelta(hours=1), now=NOW)
    with pytest.raises(BadRequestError):
        await availability.declare_slot(pid, at(9), at(9, 10), now=NOW)


async def test_declare_around_blocked_time(provider):
    pid = str(provider.id)
    await availability.block_interval(pid, at(9, 30), at(9, 45), "evt-1", now=NOW)
    slots = await availability.declare_slot(pid, at(9), at(10), now=NOW)
    assert spans(slots) == [(at(9), at(9, 30), "open"), (at(9, 45), at(10), "open")]


async def test_declare_inside_blocked_time_fails(provider):
    pid = str(provider.id)
    await availability.block_interval(pid, at(9), at(11), "evt-1", now=NOW)
    with pytest.raises(NotAvailableError):
        await availability.declare_slot(pid, at(9, 30), at(10, 30), now=NOW)


async def test_hold_is_exclusive_until_it_expires(provider, client_account):
    pid = str(provider.id)
    other = await create_account("other@example.com", "client")
    [slot] = await availability.declare_slot(pid, at(9), at(10), now=NOW)
    slot_id = str(slot.id)

    held = await availability.hold_slot(slot_id, str(client_account.id), now=NOW)
    assert held.status == "held"
    assert held.hold_expires_at == NOW + timedelta(seconds=300)
    # Re-holding by the same client is a no-op.
    assert (await availability.hold_slot(slot_id, str(client_account.id), now=NOW)).status == "held"
    with pytest.raises(NotAvailableError):
        await availability.hold_slot(slot_id, str(other.id), now=NOW + timedelta(seconds=60))

    later = NOW + timedelta(seconds=301)
    taken = await availability.hold_slot(slot_id, str(other.id), now=later)
    assert taken.held_by == str(other.id)


async def test_expire_holds_sweep(provider, client_account):
    [slot] = await availability.declare_slot(str(provider.id), at(9), at(10), now=NOW)
    await availability.hold_slot(str(slot.id), str(client_account.id), now=NOW)

    assert await availability.expire_holds(now=NOW + timedelta(seconds=30)) == 0
    assert await availability.expire_holds(now=NOW + timedelta(seconds=301)) == 1
    slot = await Slot.get(slot.id)
    assert slot.status == "open"
    assert slot.held_by is None


async def test_release_hold(provider, client_account):
    [slot] = await availability.declare_slot(str(provider.id), at(9), at(10), now=NOW)
    await availability.hold_slot(str(slot.id), str(client_account.id), now=NOW)
    other = await create_account("other@example.com", "client")
    with pytest.raises(ForbiddenError):
        await availability.release_hold(str(slot.id), str(other.id), now=NOW)
    released = await availability.release_hold(str(slot.id), str(client_account.id), now=NOW)
    assert released.status == "open"


async def test_block_truncates_open_slot(provider):
    pid = str(provider.id)
    await availability.declare_slot(pid, at(9), at(10), now=NOW)
    result = await availability.block_interval(pid, at(9, 30), at(9, 45), "evt-1", now=NOW)
    assert result.conflicts == []

    slots = await availability.list_slots(pid)
    assert spans(slots) == [
        (at(9), at(9, 30), "open"),
        (at(9, 30), at(9, 45), "blocked"),
        (at(9, 45), at(10), "open"),
    ]


async def test_block_covering_slot_removes_it(provider):
    pid = str(provider.id)
    await availability.declare_slot(pid, at(9), at(10), now=NOW)
    await availability.block_interval(pid, at(8), at(11), "evt-1", now=NOW)
    assert spans(await availability.list_slots(pid)) == [(at(8), at(11), "blocked")]


async def test_block_releases_held_slot(provider, client_account):
    pid = str(provider.id)
    [slot] = await availability.declare_slot(pid, at(9), at(10), now=NOW)
    await availability.hold_slot(str(slot.id), str(client_account.id), now=NOW)
    await availability.block_interval(pid, at(9), at(9, 30), "evt-1", now=NOW)

    slot = await Slot.get(slot.id)
    assert (slot.start, slot.end, slot.status, slot.held_by) == (at(9, 30), at(10), "open", None)


async def test_reblocking_same_event_is_noop(provider):
    pid = str(provider.id)
    first = await availability.block_interval(pid, at(9), at(10), "evt-1", now=NOW)
    again = await availability.block_interval(pid, at(9), at(10), "evt-1", now=NOW)
    assert again.changed is False
    assert again.block.id == first.block.id
    assert await Slot.find(Slot.status == "blocked").count() == 1


async def test_moved_event_replaces_its_block(provider):
    pid = str(provider.id)
    await availability.block_interval(pid, at(9), at(10), "evt-1", now=NOW)
    await availability.block_interval(pid, at(14), at(15), "evt-1", now=NOW)
    assert spans(await availability.list_slots(pid, statuses=["blocked"])) == [(at(14), at(15), "blocked")]


async def test_block_over_booking_raises_conflict(provider, client_account, grant):
    pid = str(provider.id)
    await grant(client_account, 100)
    [slot] = await availability.declare_slot(pid, at(9), at(10), now=NOW)
    booking = await bookings_service.reserve(str(client_account.id), str(slot.id), 60, now=NOW)

    result = await availability.block_interval(pid, at(9, 30), at(9, 45), "evt-1", now=NOW)
    assert len(result.conflicts) == 1
    conflict = result.conflicts[0]
    assert conflict.booking_id == str(booking.id)
    assert conflict.status == "open"

    # The booked slot is untouched.
    booked = await Slot.get(slot.id)
    assert (booked.start, booked.end, booked.status) == (at(9), at(10), "booked")

    # Importing the same event again does not open a second conflict.
    await availability.block_interval(pid, at(9, 30), at(9, 45), "evt-1", now=NOW)
    assert await CalendarConflict.find_all().count() == 1

    assert await availability.unblock_external_event(pid, "evt-1", now=NOW)
    conflict = await CalendarConflict.get(conflict.id)
    assert (conflict.status, conflict.resolution) == ("resolved", "external_removed")


async def test_remove_slot(provider):
    pid = str(provider.id)
    other = await create_account("other-therapist@example.com", "provider")
    [slot] = await availability.declare_slot(pid, at(9), at(10), now=NOW)
    with pytest.raises(ForbiddenError):
        await availability.remove_slot(str(slot.id), str(other.id))
    await availability.remove_slot(str(slot.id), pid)
    assert await Slot.get(slot.id) is None


async def test_list_slots_window(provider):
    pid = str(provider.id)
    await availability.declare_slot(pid, at(9), at(10), now=NOW)
    await availability.declare_slot(pid, at(9, days=2), at(10, days=2), now=NOW)
    slots = await availability.list_slots(pid, start=at(0, days=2), end=at(0, days=3))
    assert spans(slots) == [(at(9, days=2), at(10, days=2), "open")]


def test_subtract():
    assert availability.subtract((at(9), at(10)), [(at(9, 30), at(9, 45))]) == [
        (at(9), at(9, 30)),
        (at(9, 45), at(10)),
    ]
    assert availability.subtract((at(9), at(10)), [(at(8), at(11))]) == []
    assert availability.subtract((at(9), at(10)), [(at(10), at(11))]) == [(at(9), at(10))]
