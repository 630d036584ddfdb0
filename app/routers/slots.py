from datetime import datetime

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from app.deps import get_current_account, require_client, require_provider
from app.models.account import Account
from app.models.slot import Slot
from app.services import availability

router = APIRouter()


class DeclareSlotRequest(BaseModel):
    start: datetime
    end: datetime


def slot_out(s: Slot) -> dict:
    return {
        "id": str(s.id),
        "provider_id": s.provider_id,
        "start": s.start.isoformat(),
        "end": s.end.isoformat(),
        "duration_minutes": s.duration_minutes,
        "status": s.status,
        "source": s.source,
        "hold_expires_at": s.hold_expires_at.isoformat() if s.hold_expires_at else None,
    }


@router.post("")
async def declare_slot(body: DeclareSlotRequest, account: Account = Depends(require_provider)):
    """Publish availability; blocked calendar time is cut out, so several slots may come back."""
    slots = await availability.declare_slot(str(account.id), body.start, body.end)
    return {"slots": [slot_out(s) for s in slots]}


@router.get("")
async def list_slots(
    provider_id: str = Query(...),
    start: datetime | None = Query(None),
    end: datetime | None = Query(None),
    status: list[str] | None = Query(None),
    account: Account = Depends(get_current_account),
):
    """Clients see open slots only; the provider sees its whole calendar."""
    statuses = status
    if str(account.id) != provider_id and account.role != "admin":
        statuses = ["open"]
    slots = await availability.list_slots(provider_id, start, end, statuses)
    return {"slots": [slot_out(s) for s in slots]}


@router.delete("/{slot_id}")
async def remove_slot(slot_id: str, account: Account = Depends(require_provider)):
    await availability.remove_slot(slot_id, str(account.id))
    return {"status": "removed"}


@router.post("/{slot_id}/hold")
async def hold_slot(slot_id: str, account: Account = Depends(require_client)):
    """Short exclusive window to complete a booking."""
    slot = await availability.hold_slot(slot_id, str(account.id))
    return slot_out(slot)


@router.delete("/{slot_id}/hold")
async def release_hold(slot_id: str, account: Account = Depends(require_client)):
    slot = await availability.release_hold(slot_id, str(account.id))
    return slot_out(slot)
