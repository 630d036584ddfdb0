"""
Periodic sweep comparing the slot store, bookings and the ledger.

Mismatches are recorded as operator faults and left alone: repairing them
automatically could charge or refund a real person twice.
"""

from collections import defaultdict
from datetime import datetime, timedelta

from beanie.operators import In, NE

from app.core.clock import utcnow
from app.core.config import get_settings
from app.core.logging import get_logger
from app.models.booking import Booking
from app.models.credit_balance import CreditBalance
from app.models.credit_transaction import CreditTransaction
from app.models.slot import Slot
from app.services import credits as credits_service
from app.services.faults import record_fault

log = get_logger(__name__)

# Bookings that consumed a spend which must still exist.
CHARGED_STATUSES = ["confirmed", "completed", "no_show", "cancelled"]


async def _booking_transactions(kind: str) -> dict[str, list[CreditTransaction]]:
    txns = await CreditTransaction.find(
        CreditTransaction.kind == kind,
        CreditTransaction.reference_type == "booking",
    ).to_list()
    by_booking: dict[str, list[CreditTransaction]] = defaultdict(list)
    for t in txns:
        by_booking[t.reference_id or ""].append(t)
    return by_booking


async def reconcile(now: datetime | None = None) -> dict[str, int]:
    """Run every check once; returns fault counts by kind plus caches rebuilt."""
    now = now or utcnow()
    grace = now - timedelta(seconds=get_settings().hold_ttl_seconds)
    report: dict[str, int] = defaultdict(int)

    async def fault(kind: str, entity_type: str, entity_id: str, details: dict) -> None:
        await record_fault(kind, entity_type, entity_id, details, now=now)
        report[kind] += 1

    spends = await _booking_transactions("spend")
    refunds = await _booking_transactions("refund")
    bookings = await Booking.find(In(Booking.status, CHARGED_STATUSES + ["pending"])).to_list()
    bookings_by_id = {str(b.id): b for b in bookings}

    for booking in bookings:
        booking_id = str(booking.id)
        if booking.status == "pending":
            if booking.created_at <= grace:
                await fault("stale_pending_booking", "booking", booking_id, {"created_at": booking.created_at.isoformat()})
            continue
        spent = spends.get(booking_id, [])
        if not spent:
            await fault("booked_without_spend", "booking", booking_id, {"status": booking.status})
        elif len(spent) > 1 or -spent[0].amount != booking.credit_cost:
            await fault(
                "spend_amount_mismatch",
                "booking",
                booking_id,
                {"credit_cost": booking.credit_cost, "spent": [-t.amount for t in spent]},
            )
        refunded = refunds.get(booking_id, [])
        if booking.status == "cancelled" and not refunded:
            await fault("missing_refund", "booking", booking_id, {"credit_cost": booking.credit_cost})
        if booking.status != "cancelled" and refunded:
            await fault("refund_without_cancellation", "booking", booking_id, {"status": booking.status})

    for booking_id, spent in spends.items():
        if booking_id in bookings_by_id:
            continue
        for t in spent:
            # A spend younger than a hold may belong to a reservation still in flight.
            if t.created_at <= grace:
                await fault(
                    "spend_without_booking",
                    "credit_transaction",
                    str(t.id),
                    {"account_id": t.account_id, "booking_id": booking_id, "amount": t.amount},
                )

    booked_slots = await Slot.find(Slot.status == "booked").to_list()
    slot_booking_ids = set()
    for slot in booked_slots:
        slot_booking_ids.add(slot.booking_id)
        booking = bookings_by_id.get(slot.booking_id or "")
        if booking is None or booking.status != "confirmed":
            await fault(
                "slot_booking_mismatch",
                "slot",
                str(slot.id),
                {"booking_id": slot.booking_id, "booking_status": booking.status if booking else None},
            )
    for booking in bookings:
        if booking.status == "confirmed" and str(booking.id) not in slot_booking_ids:
            await fault("slot_booking_mismatch", "booking", str(booking.id), {"slot_id": booking.slot_id})

    exported = await Booking.find(NE(Booking.external_event_id, None)).to_list()
    by_event: dict[str, list[str]] = defaultdict(list)
    for booking in exported:
        by_event[booking.external_event_id].append(str(booking.id))
    for event_id, booking_ids in by_event.items():
        if len(booking_ids) > 1:
            await fault("duplicate_external_event", "external_event", event_id, {"booking_ids": booking_ids})

    caches = await CreditBalance.find_all().to_list()
    for cache in caches:
        if await credits_service.rebuild_balance_cache(cache.account_id):
            report["balance_cache_rebuilt"] += 1

    log.info("reconciliation_done", clean=not report, **report)
    return dict(report)
