from fastapi import APIRouter, Depends, Header, Query, Response
from pydantic import BaseModel

from app.core.exceptions import BadRequestError
from app.deps import require_provider
from app.models.account import Account
from app.models.calendar_conflict import CalendarConflict
from app.services import calendar_sync
from app.services import conflicts as conflicts_service
from app.worker.tasks import enqueue_calendar_sync

router = APIRouter()


class ConnectResponse(BaseModel):
    authorization_url: str


class ResolveConflictRequest(BaseModel):
    decision: str  # honor | cancel_booking


def conflict_out(c: CalendarConflict) -> dict:
    return {
        "id": str(c.id),
        "booking_id": c.booking_id,
        "slot_id": c.slot_id,
        "external_event_id": c.external_event_id,
        "start": c.start.isoformat(),
        "end": c.end.isoformat(),
        "status": c.status,
        "resolution": c.resolution,
        "resolved_at": c.resolved_at.isoformat() if c.resolved_at else None,
    }


@router.get("/status")
async def calendar_status(account: Account = Depends(require_provider)):
    """Link state; `reauthorization_required` means the provider must connect again."""
    return await calendar_sync.link_status(str(account.id))


@router.get("/connect", response_model=ConnectResponse)
async def calendar_connect(account: Account = Depends(require_provider)):
    """Return Google OAuth URL for the client to redirect the provider to."""
    url = await calendar_sync.start_connect(str(account.id))
    return ConnectResponse(authorization_url=url)


@router.get("/oauth/callback")
async def calendar_oauth_callback(
    code: str | None = Query(None),
    state: str | None = Query(None),
    error: str | None = Query(None),
    redirect: str | None = Query(None, alias="redirect"),
):
    """Google redirects here with ?code=...&state=... Exchange code and store tokens; redirect to frontend."""
    if error:
        raise BadRequestError(f"OAuth error: {error}")
    if not code or not state:
        raise BadRequestError("Missing code or state")
    link = await calendar_sync.complete_connect(state, code)
    await enqueue_calendar_sync(link.provider_id)
    if redirect:
        return Response(status_code=302, headers={"Location": redirect})
    return {"status": "connected"}


@router.post("/sync")
async def calendar_sync_now(account: Account = Depends(require_provider)):
    """Queue an import; the booking path never waits on the external calendar."""
    await calendar_sync.require_link(str(account.id))
    await enqueue_calendar_sync(str(account.id))
    return {"status": "queued"}


@router.post("/webhook/register")
async def calendar_webhook_register(account: Account = Depends(require_provider)):
    link = await calendar_sync.register_webhook(str(account.id))
    return {"channel_id": link.webhook_channel_id, "expires_at": link.webhook_expires_at}


@router.post("/webhook")
async def calendar_webhook(
    x_goog_channel_id: str | None = Header(None, alias="X-Goog-Channel-ID"),
    x_goog_channel_token: str | None = Header(None, alias="X-Goog-Channel-Token"),
    x_goog_resource_state: str | None = Header(None, alias="X-Goog-Resource-State"),
):
    """Google push notification: something changed, queue an import."""
    provider_id = await calendar_sync.handle_webhook(x_goog_channel_id, x_goog_channel_token, x_goog_resource_state)
    if provider_id:
        await enqueue_calendar_sync(provider_id)
    return {"status": "ok"}


@router.delete("/disconnect")
async def calendar_disconnect(account: Account = Depends(require_provider)):
    await calendar_sync.disconnect(str(account.id))
    return {"status": "disconnected"}


@router.get("/conflicts")
async def list_conflicts(
    status: str | None = Query("open"),
    account: Account = Depends(require_provider),
):
    conflicts = await conflicts_service.list_conflicts(str(account.id), status)
    return {"conflicts": [conflict_out(c) for c in conflicts]}


@router.post("/conflicts/{conflict_id}/resolve")
async def resolve_conflict(
    conflict_id: str,
    body: ResolveConflictRequest,
    account: Account = Depends(require_provider),
):
    """`honor` keeps the booking; `cancel_booking` cancels it with a full refund."""
    conflict = await conflicts_service.resolve_conflict(conflict_id, str(account.id), body.decision)
    return conflict_out(conflict)
