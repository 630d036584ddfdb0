"""
External calendar reconciler.

Link lifecycle: connecting -> connected -> token_expired -> connected | disconnected.
Imports turn external events into blocked intervals; confirmed bookings are
exported as events with a deterministic id so a repeated export updates the
same event. Calls to the calendar are retried with backoff; exhausting the
retries counts as a failure, and enough consecutive failures disconnect the link.
"""

import uuid
from datetime import datetime, timedelta
from typing import Awaitable, Callable, TypeVar

from beanie.operators import In
from bson import ObjectId

from app.core.audit import log_event
from app.core.clock import utcnow
from app.core.config import get_settings
from app.core.encryption import decrypt_token, encrypt_token
from app.core.exceptions import (
    BadRequestError,
    ForbiddenError,
    NotFoundError,
    ReauthorizationRequiredError,
    TransientError,
)
from app.core.ids import object_id
from app.core.logging import get_logger
from app.core.retry import retry_async
from app.core.security import generate_channel_token, load_oauth_state, sign_oauth_state, verify_channel_token
from app.locking import calendar_key, get_lock_manager
from app.models.booking import Booking
from app.models.calendar_link import CalendarLink
from app.models.slot import Slot
from app.services import availability
from app.services.accounts import get_active_account
from app.services.events import CALENDAR_REAUTH_REQUIRED, publish_event
from app.services.faults import record_fault
from app.services.google_calendar import (
    CalendarAuthError,
    CalendarCursorExpired,
    CalendarError,
    CalendarUnavailable,
    EventBody,
    ExternalEvent,
    get_calendar_client,
)

log = get_logger(__name__)

T = TypeVar("T")

SYNCABLE_STATUSES = ["connected", "token_expired"]
WEBHOOK_RENEW_BEFORE = timedelta(days=1)


def external_event_id_for(booking_id: str) -> str:
    """Google event ids allow [a-v0-9]; an ObjectId hex string fits."""
    return f"sb{booking_id}"


async def get_link(provider_id: str) -> CalendarLink | None:
    return await CalendarLink.find_one(CalendarLink.provider_id == provider_id)


async def require_link(provider_id: str) -> CalendarLink:
    link = await get_link(provider_id)
    if not link:
        raise NotFoundError("No calendar connected")
    return link


async def link_status(provider_id: str) -> dict:
    link = await get_link(provider_id)
    if not link:
        return {"status": "disconnected", "connected": False, "reauthorization_required": False}
    return {
        "status": link.status,
        "connected": link.status == "connected",
        "reauthorization_required": link.status == "disconnected",
        "external_account": link.external_account,
        "last_synced_at": link.last_synced_at,
        "last_sync_status": link.last_sync_status,
        "last_error": link.last_error,
        "push_enabled": bool(link.webhook_channel_id),
    }


async def start_connect(provider_id: str, now: datetime | None = None) -> str:
    """Begin the OAuth authorization-code flow; returns the consent URL."""
    await get_active_account(provider_id, "provider")
    now = now or utcnow()
    link = await get_link(provider_id)
    if not link:
        link = CalendarLink(provider_id=provider_id, created_at=now)
    if link.status != "connected":
        link.status = "connecting"
    link.updated_at = now
    await link.save()
    return get_calendar_client().authorization_url(sign_oauth_state(provider_id))


async def complete_connect(state: str, code: str, now: datetime | None = None) -> CalendarLink:
    """OAuth callback: exchange the code and store encrypted tokens."""
    provider_id = load_oauth_state(state)
    now = now or utcnow()
    try:
        grant = await get_calendar_client().exchange_code(code)
    except CalendarError as e:
        raise BadRequestError("Calendar authorization failed") from e
    link = await get_link(provider_id) or CalendarLink(provider_id=provider_id, created_at=now)
    if grant.account_email and link.external_account and grant.account_email != link.external_account:
        # Different calendar account: start over from a full import.
        link.sync_cursor = None
    link.status = "connected"
    link.external_account = grant.account_email or link.external_account
    link.access_token_encrypted = encrypt_token(grant.access_token)
    if grant.refresh_token:
        link.refresh_token_encrypted = encrypt_token(grant.refresh_token)
    link.token_expiry = grant.expiry
    link.consecutive_failures = 0
    link.last_error = None
    link.updated_at = now
    await link.save()
    log.info("calendar_connected", provider_id=provider_id, external_account=link.external_account)
    await log_event(provider_id, "calendar_connected", "calendar_link", str(link.id), {"account": link.external_account})
    if get_settings().calendar_webhook_url:
        try:
            await register_webhook(provider_id, now=now)
        except (TransientError, ReauthorizationRequiredError, CalendarError) as e:
            log.warning("calendar_webhook_register_failed", provider_id=provider_id, reason=str(e))
    return link


async def _stop_webhook(link: CalendarLink) -> None:
    if not link.webhook_channel_id or not link.webhook_resource_id:
        return
    token = decrypt_token(link.access_token_encrypted)
    if not token:
        return
    try:
        await get_calendar_client().stop_channel(token, link.webhook_channel_id, link.webhook_resource_id)
    except CalendarError as e:
        log.info("calendar_webhook_stop_failed", provider_id=link.provider_id, reason=str(e))


async def disconnect(provider_id: str, now: datetime | None = None) -> None:
    """Provider removes the link: stop pushes, drop imported blocks, delete the link."""
    now = now or utcnow()
    link = await require_link(provider_id)
    await _stop_webhook(link)
    cleared = await availability.clear_external_blocks(provider_id, now=now)
    await link.delete()
    log.info("calendar_disconnected", provider_id=provider_id, blocks_cleared=cleared)
    await log_event(provider_id, "calendar_disconnected", "calendar_link", str(link.id), {"blocks_cleared": cleared})


async def _mark_disconnected(link: CalendarLink, reason: str, now: datetime) -> None:
    """Access is gone (revoked or repeatedly failing); tokens are dropped, the link is kept."""
    link.status = "disconnected"
    link.access_token_encrypted = ""
    link.refresh_token_encrypted = ""
    link.token_expiry = None
    link.last_sync_status = "failed"
    link.last_error = reason[:500]
    link.updated_at = now
    await link.save()
    log.warning("calendar_link_disconnected", provider_id=link.provider_id, reason=reason[:300])
    await publish_event(CALENDAR_REAUTH_REQUIRED, {"provider_id": link.provider_id, "reason": reason[:300]}, now=now)


async def _record_failure(link: CalendarLink, reason: str, now: datetime) -> None:
    link.consecutive_failures += 1
    link.last_sync_status = "failed"
    link.last_error = reason[:500]
    link.updated_at = now
    if link.consecutive_failures >= get_settings().retry_max_attempts:
        await _mark_disconnected(link, f"Calendar unreachable: {reason}", now)
        return
    await link.save()


async def refresh_token(provider_id: str, now: datetime | None = None) -> CalendarLink:
    """
    Exchange the refresh token for a new access token.
    A rejected grant or exhausted retries disconnect the link and raise ReauthorizationRequiredError.
    """
    now = now or utcnow()
    async with get_lock_manager().lock(f"{calendar_key(provider_id)}:token"):
        link = await require_link(provider_id)
        if link.status == "disconnected":
            raise ReauthorizationRequiredError()
        refresh = decrypt_token(link.refresh_token_encrypted)
        if not refresh:
            await _mark_disconnected(link, "No refresh token", now)
            raise ReauthorizationRequiredError()
        if link.status == "connected":
            link.status = "token_expired"
            await link.save()
        client = get_calendar_client()
        try:
            grant = await retry_async("calendar_token_refresh", lambda: client.refresh(refresh), (CalendarUnavailable,))
        except CalendarAuthError as e:
            await _mark_disconnected(link, f"Refresh rejected: {e}", now)
            raise ReauthorizationRequiredError()
        except CalendarUnavailable as e:
            await _mark_disconnected(link, f"Refresh failed after retries: {e}", now)
            raise ReauthorizationRequiredError()
        link.status = "connected"
        link.access_token_encrypted = encrypt_token(grant.access_token)
        if grant.refresh_token and grant.refresh_token != refresh:
            link.refresh_token_encrypted = encrypt_token(grant.refresh_token)
        link.token_expiry = grant.expiry
        link.updated_at = now
        await link.save()
    log.info("calendar_token_refreshed", provider_id=provider_id, expires_at=str(grant.expiry))
    return link


async def _access_token(link: CalendarLink, now: datetime) -> str:
    if link.status == "disconnected":
        raise ReauthorizationRequiredError()
    skew = timedelta(seconds=get_settings().token_refresh_skew_seconds)
    token = decrypt_token(link.access_token_encrypted)
    if not token or link.status == "token_expired" or link.token_expiry is None or link.token_expiry - skew <= now:
        link = await refresh_token(link.provider_id, now=now)
        token = decrypt_token(link.access_token_encrypted)
    return token


async def _call(
    provider_id: str,
    op: str,
    fn: Callable[[CalendarLink, str], Awaitable[T]],
    now: datetime,
) -> T:
    """
    Run one calendar call with a fresh token: transient failures are retried with
    backoff, a 401 triggers one reactive refresh. Exhaustion raises TransientError.
    """
    link = await require_link(provider_id)
    token = await _access_token(link, now)
    try:
        try:
            return await retry_async(op, lambda: fn(link, token), (CalendarUnavailable,))
        except CalendarAuthError:
            log.info("calendar_token_rejected", provider_id=provider_id, op=op)
            link = await refresh_token(provider_id, now=now)
            token = decrypt_token(link.access_token_encrypted)
            return await retry_async(op, lambda: fn(link, token), (CalendarUnavailable,))
    except CalendarAuthError as e:
        await _mark_disconnected(await require_link(provider_id), f"Token rejected after refresh: {e}", now)
        raise ReauthorizationRequiredError()
    except CalendarUnavailable as e:
        await _record_failure(await require_link(provider_id), str(e), now)
        raise TransientError(f"Calendar unavailable during {op}")


async def _is_own_event(provider_id: str, event: ExternalEvent, now: datetime) -> bool:
    """True for events this service exported; reports a second event claiming the same booking."""
    booking = None
    if event.booking_id and ObjectId.is_valid(event.booking_id):
        booking = await Booking.get(object_id(event.booking_id, "Booking"))
    if booking is None:
        booking = await Booking.find_one(Booking.provider_id == provider_id, Booking.external_event_id == event.id)
    if booking is None:
        return bool(event.booking_id)
    known_ids = {external_event_id_for(str(booking.id)), booking.external_event_id}
    if event.id not in known_ids and event.blocks_time:
        await record_fault(
            "duplicate_external_event",
            "booking",
            str(booking.id),
            {"provider_id": provider_id, "event_id": event.id, "expected": external_event_id_for(str(booking.id))},
            now=now,
        )
    return True


async def _apply_event(provider_id: str, event: ExternalEvent, now: datetime) -> None:
    if await _is_own_event(provider_id, event, now):
        return
    if event.blocks_time and event.end > now:
        await availability.block_interval(provider_id, event.start, event.end, event.id, "external", now=now)
    else:
        await availability.unblock_external_event(provider_id, event.id, now=now)


async def import_since(provider_id: str, cursor: str | None = None, now: datetime | None = None) -> list[ExternalEvent]:
    """
    Pull events changed since `cursor` (default: the stored cursor) and mirror them as blocks.
    The cursor advances only after every block of the batch is written. An expired
    cursor triggers a full listing, after which blocks for vanished events are dropped.
    """
    now = now or utcnow()
    client = get_calendar_client()
    async with get_lock_manager().lock(calendar_key(provider_id)):
        link = await require_link(provider_id)
        cursor = cursor if cursor is not None else link.sync_cursor
        full = cursor is None

        def list_changes(sync_token):
            return lambda lk, token: client.list_changes(token, lk.calendar_id, sync_token)

        try:
            batch = await _call(provider_id, "calendar_import", list_changes(cursor), now)
        except CalendarCursorExpired:
            log.info("calendar_cursor_expired", provider_id=provider_id)
            full = True
            batch = await _call(provider_id, "calendar_import", list_changes(None), now)

        for event in batch.events:
            await _apply_event(provider_id, event, now)
        if full:
            seen = {e.id for e in batch.events if e.blocks_time}
            stale = await Slot.find(
                Slot.provider_id == provider_id,
                Slot.status == "blocked",
                Slot.source == "external",
                Slot.end > now,
            ).to_list()
            for event_id in {s.external_event_id for s in stale if s.external_event_id not in seen}:
                if event_id:
                    await availability.unblock_external_event(provider_id, event_id, now=now)

        link = await require_link(provider_id)
        if batch.next_sync_token:
            link.sync_cursor = batch.next_sync_token
        link.last_synced_at = now
        link.last_sync_status = "success"
        link.last_error = None
        link.consecutive_failures = 0
        link.updated_at = now
        await link.save()
    log.info("calendar_imported", provider_id=provider_id, events=len(batch.events), full=full)
    return batch.events


async def export_booking(booking_id: str, now: datetime | None = None) -> str | None:
    """
    Push a confirmed booking to the provider's calendar and store the event id.
    Returns None when there is nothing to export (no link, link disconnected, booking not confirmed).
    """
    now = now or utcnow()
    booking = await Booking.get(object_id(booking_id, "Booking"))
    if not booking or booking.status != "confirmed":
        return None
    link = await get_link(booking.provider_id)
    if not link or link.status == "disconnected":
        log.info("calendar_export_skipped", booking_id=booking_id, provider_id=booking.provider_id)
        return None
    event_id = booking.external_event_id or external_event_id_for(booking_id)
    body = EventBody(
        booking_id=booking_id,
        summary="Therapy session",
        description=f"Booking {booking_id} ({booking.duration_minutes} min)",
        start=booking.start,
        end=booking.end,
    )
    client = get_calendar_client()
    try:
        returned = await _call(
            booking.provider_id,
            "calendar_export",
            lambda lk, token: client.upsert_event(token, lk.calendar_id, event_id, body),
            now,
        )
    except ReauthorizationRequiredError:
        return None
    if booking.external_event_id != returned:
        await booking.set({Booking.external_event_id: returned})
    log.info("calendar_exported", booking_id=booking_id, event_id=returned)
    return returned


async def remove_exported_event(booking_id: str, now: datetime | None = None) -> bool:
    """Delete the calendar event of a cancelled booking; deleting twice is harmless."""
    now = now or utcnow()
    booking = await Booking.get(object_id(booking_id, "Booking"))
    if not booking:
        return False
    link = await get_link(booking.provider_id)
    if not link or link.status == "disconnected":
        return False
    event_id = booking.external_event_id or external_event_id_for(booking_id)
    client = get_calendar_client()
    try:
        await _call(
            booking.provider_id,
            "calendar_delete",
            lambda lk, token: client.delete_event(token, lk.calendar_id, event_id),
            now,
        )
    except ReauthorizationRequiredError:
        return False
    log.info("calendar_event_removed", booking_id=booking_id, event_id=event_id)
    return True


async def register_webhook(provider_id: str, now: datetime | None = None) -> CalendarLink:
    """Open (or replace) a push channel so changes arrive without waiting for the cron."""
    address = get_settings().calendar_webhook_url
    if not address:
        raise BadRequestError("Calendar push notifications not configured")
    now = now or utcnow()
    link = await require_link(provider_id)
    await _stop_webhook(link)
    channel_id = uuid.uuid4().hex
    channel_token = generate_channel_token()
    client = get_calendar_client()
    resource_id, expires_at = await _call(
        provider_id,
        "calendar_watch",
        lambda lk, token: client.watch(token, lk.calendar_id, channel_id, channel_token, address),
        now,
    )
    link = await require_link(provider_id)
    link.webhook_channel_id = channel_id
    link.webhook_resource_id = resource_id
    link.webhook_token = channel_token
    link.webhook_expires_at = expires_at
    link.updated_at = now
    await link.save()
    log.info("calendar_webhook_registered", provider_id=provider_id, channel_id=channel_id)
    return link


async def handle_webhook(channel_id: str | None, channel_token: str | None, resource_state: str | None) -> str | None:
    """Validate a push notification; returns the provider id to sync, or None for the initial handshake."""
    if not channel_id:
        raise BadRequestError("Missing channel id")
    link = await CalendarLink.find_one(CalendarLink.webhook_channel_id == channel_id)
    if not link:
        raise NotFoundError("Unknown channel")
    if not verify_channel_token(link.webhook_token, channel_token):
        raise ForbiddenError("Invalid channel token")
    if resource_state == "sync" or link.status not in SYNCABLE_STATUSES:
        return None
    return link.provider_id


async def sync_all_calendars(now: datetime | None = None) -> dict[str, int]:
    """Cron: import for every connected link. One failing link never stops the rest."""
    now = now or utcnow()
    links = await CalendarLink.find(In(CalendarLink.status, SYNCABLE_STATUSES)).to_list()
    stats = {"synced": 0, "failed": 0}
    for link in links:
        try:
            await import_since(link.provider_id, now=now)
            stats["synced"] += 1
        except (TransientError, ReauthorizationRequiredError, CalendarError) as e:
            stats["failed"] += 1
            log.warning("calendar_sync_failed", provider_id=link.provider_id, reason=str(e))
    return stats


async def refresh_expiring_tokens(now: datetime | None = None) -> int:
    """Cron: refresh tokens that expire within twice the skew window."""
    now = now or utcnow()
    horizon = now + timedelta(seconds=2 * get_settings().token_refresh_skew_seconds)
    links = await CalendarLink.find(
        In(CalendarLink.status, SYNCABLE_STATUSES),
        CalendarLink.token_expiry <= horizon,
    ).to_list()
    refreshed = 0
    for link in links:
        try:
            await refresh_token(link.provider_id, now=now)
            refreshed += 1
        except (ReauthorizationRequiredError, TransientError) as e:
            log.warning("calendar_refresh_failed", provider_id=link.provider_id, reason=str(e))
    return refreshed


async def renew_expiring_webhooks(now: datetime | None = None) -> int:
    if not get_settings().calendar_webhook_url:
        return 0
    now = now or utcnow()
    links = await CalendarLink.find(
        CalendarLink.status == "connected",
        CalendarLink.webhook_expires_at <= now + WEBHOOK_RENEW_BEFORE,
    ).to_list()
    renewed = 0
    for link in links:
        try:
            await register_webhook(link.provider_id, now=now)
            renewed += 1
        except (ReauthorizationRequiredError, TransientError, CalendarError) as e:
            log.warning("calendar_webhook_renew_failed", provider_id=link.provider_id, reason=str(e))
    return renewed
