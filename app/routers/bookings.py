from fastapi import APIRouter, Depends, Header, Query
from pydantic import BaseModel, Field

from app.core.pagination import paginate
from app.deps import get_current_account, require_client, require_provider
from app.models.account import Account
from app.models.booking import Booking
from app.services import bookings as bookings_service
from app.services import credits as credits_service

router = APIRouter()


class ReserveRequest(BaseModel):
    slot_id: str
    duration_minutes: int = Field(..., gt=0)


def booking_out(b: Booking) -> dict:
    return {
        "id": str(b.id),
        "client_id": b.client_id,
        "provider_id": b.provider_id,
        "slot_id": b.slot_id,
        "start": b.start.isoformat(),
        "end": b.end.isoformat(),
        "duration_minutes": b.duration_minutes,
        "credit_cost": b.credit_cost,
        "status": b.status,
        "cancellation_deadline": b.cancellation_deadline.isoformat(),
        "external_event_id": b.external_event_id,
        "refunded_amount": b.refunded_amount,
        "cancelled_by": b.cancelled_by,
        "created_at": b.created_at.isoformat(),
    }


@router.post("")
async def reserve(
    body: ReserveRequest,
    account: Account = Depends(require_client),
    idempotency_key: str | None = Header(None, alias="Idempotency-Key"),
):
    """Hold the slot, debit credits, confirm. Nothing is debited when the slot is gone."""
    booking = await bookings_service.reserve(
        str(account.id), body.slot_id, body.duration_minutes, idempotency_key=idempotency_key
    )
    return {"booking": booking_out(booking), "balance": await credits_service.get_balance(str(account.id))}


@router.get("")
async def list_bookings(
    account: Account = Depends(get_current_account),
    status: list[str] | None = Query(None),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
):
    limit, offset = paginate(limit, offset)
    items, total = await bookings_service.list_bookings(account, status, limit=limit, offset=offset)
    return {"bookings": [booking_out(b) for b in items], "limit": limit, "offset": offset, "total": total}


@router.get("/{booking_id}")
async def get_booking(booking_id: str, account: Account = Depends(get_current_account)):
    booking = await bookings_service.get_booking_for(booking_id, account)
    return booking_out(booking)


@router.post("/{booking_id}/cancel")
async def cancel_booking(booking_id: str, account: Account = Depends(get_current_account)):
    """Full refund; clients must cancel before the deadline."""
    await bookings_service.get_booking_for(booking_id, account)
    booking = await bookings_service.cancel(booking_id, str(account.id))
    return booking_out(booking)


@router.post("/{booking_id}/no-show")
async def mark_no_show(booking_id: str, account: Account = Depends(require_provider)):
    booking = await bookings_service.mark_no_show(booking_id, str(account.id))
    return booking_out(booking)
