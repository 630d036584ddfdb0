"""Google Calendar v3 client: OAuth, incremental event sync, event upsert/delete, push channels."""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone

from google.auth import exceptions as google_auth_exceptions
from google.auth.transport import requests as google_requests
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import Flow
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from app.core.clock import as_aware, to_utc_naive, utcnow
from app.core.config import get_settings
from app.core.logging import get_logger

log = get_logger(__name__)

CALENDAR_SCOPES = [
    "https://www.googleapis.com/auth/calendar.events",
    "https://www.googleapis.com/auth/calendar.readonly",
]
TOKEN_URI = "https://oauth2.googleapis.com/token"
# Private extended property marking events this service exported.
BOOKING_PROPERTY = "sessionbankBookingId"
FULL_SYNC_LOOKBACK_DAYS = 1


class CalendarError(Exception):
    pass


class CalendarAuthError(CalendarError):
    """Token rejected (401) or refresh grant revoked."""


class CalendarCursorExpired(CalendarError):
    """Sync token no longer valid (410); a full resync is required."""


class CalendarUnavailable(CalendarError):
    """Timeout, rate limit or 5xx: worth retrying."""


class CalendarNotFound(CalendarError):
    pass


@dataclass
class TokenGrant:
    access_token: str
    refresh_token: str | None
    expiry: datetime | None
    account_email: str = ""


@dataclass
class ExternalEvent:
    id: str
    status: str  # confirmed | tentative | cancelled
    start: datetime | None = None
    end: datetime | None = None
    transparent: bool = False  # marked "free"
    booking_id: str | None = None  # set on events we exported

    @property
    def blocks_time(self) -> bool:
        return self.status != "cancelled" and not self.transparent and self.start is not None and self.end is not None


@dataclass
class ChangeBatch:
    events: list[ExternalEvent] = field(default_factory=list)
    next_sync_token: str | None = None


@dataclass
class EventBody:
    booking_id: str
    summary: str
    start: datetime
    end: datetime
    description: str = ""

    def to_google(self) -> dict:
        return {
            "summary": self.summary,
            "description": self.description,
            "start": {"dateTime": as_aware(self.start).isoformat(), "timeZone": "UTC"},
            "end": {"dateTime": as_aware(self.end).isoformat(), "timeZone": "UTC"},
            "extendedProperties": {"private": {BOOKING_PROPERTY: self.booking_id}},
        }


class CalendarClient(ABC):
    @abstractmethod
    def authorization_url(self, state: str) -> str:
        ...

    @abstractmethod
    async def exchange_code(self, code: str) -> TokenGrant:
        ...

    @abstractmethod
    async def refresh(self, refresh_token: str) -> TokenGrant:
        ...

    @abstractmethod
    async def list_changes(self, access_token: str, calendar_id: str, sync_token: str | None) -> ChangeBatch:
        """All events changed since `sync_token` (a bounded full listing when None)."""
        ...

    @abstractmethod
    async def upsert_event(self, access_token: str, calendar_id: str, event_id: str, body: EventBody) -> str:
        ...

    @abstractmethod
    async def delete_event(self, access_token: str, calendar_id: str, event_id: str) -> None:
        """Deleting an event that is already gone succeeds."""
        ...

    @abstractmethod
    async def watch(
        self, access_token: str, calendar_id: str, channel_id: str, token: str, address: str
    ) -> tuple[str, datetime | None]:
        """Open a push channel; returns (resource_id, expiration)."""
        ...

    @abstractmethod
    async def stop_channel(self, access_token: str, channel_id: str, resource_id: str) -> None:
        ...


def _parse_boundary(value: dict | None) -> datetime | None:
    if not value:
        return None
    if value.get("dateTime"):
        return to_utc_naive(datetime.fromisoformat(value["dateTime"].replace("Z", "+00:00")))
    if value.get("date"):
        d = date.fromisoformat(value["date"])
        return datetime(d.year, d.month, d.day)
    return None


def parse_event(item: dict) -> ExternalEvent:
    private = (item.get("extendedProperties") or {}).get("private") or {}
    return ExternalEvent(
        id=item["id"],
        status=item.get("status") or "confirmed",
        start=_parse_boundary(item.get("start")),
        end=_parse_boundary(item.get("end")),
        transparent=item.get("transparency") == "transparent",
        booking_id=private.get(BOOKING_PROPERTY),
    )


def _map_http_error(e: HttpError) -> CalendarError:
    status = e.resp.status if e.resp is not None else 0
    if status == 401:
        return CalendarAuthError(str(e))
    if status == 404:
        return CalendarNotFound(str(e))
    if status == 410:
        return CalendarCursorExpired(str(e))
    if status == 429 or status >= 500 or (status == 403 and "rateLimitExceeded" in str(e)):
        return CalendarUnavailable(str(e))
    return CalendarError(f"Calendar API error {status}: {e}")


def _expiry_from_credentials(creds: Credentials) -> datetime | None:
    return to_utc_naive(creds.expiry) if creds.expiry else None


class GoogleCalendarClient(CalendarClient):
    """googleapiclient is synchronous; every call runs in a worker thread."""

    def _flow(self) -> Flow:
        settings = get_settings()
        redirect = settings.calendar_oauth_redirect_uri
        return Flow.from_client_config(
            {
                "web": {
                    "client_id": settings.google_client_id,
                    "client_secret": settings.google_client_secret,
                    "auth_uri": "https://accounts.google.com/o/oauth2/auth",
                    "token_uri": TOKEN_URI,
                    "redirect_uris": [redirect],
                }
            },
            scopes=CALENDAR_SCOPES,
            redirect_uri=redirect,
        )

    def _service(self, access_token: str):
        return build("calendar", "v3", credentials=Credentials(token=access_token), cache_discovery=False)

    async def _execute(self, request_factory):
        def run():
            try:
                return request_factory().execute()
            except HttpError as e:
                raise _map_http_error(e) from e
            except (TimeoutError, OSError) as e:
                raise CalendarUnavailable(str(e)) from e

        return await asyncio.to_thread(run)

    def authorization_url(self, state: str) -> str:
        auth_url, _ = self._flow().authorization_url(
            access_type="offline",
            include_granted_scopes="true",
            prompt="consent",
            state=state,
        )
        return auth_url

    async def exchange_code(self, code: str) -> TokenGrant:
        flow = self._flow()
        try:
            await asyncio.to_thread(flow.fetch_token, code=code)
        except Exception as e:
            log.warning("calendar_code_exchange_failed", reason=str(e)[:300])
            raise CalendarAuthError("Authorization code rejected") from e
        creds = flow.credentials
        email = ""
        try:
            primary = await self._execute(lambda: self._service(creds.token).calendars().get(calendarId="primary"))
            email = primary.get("id", "")
        except CalendarError:
            pass
        return TokenGrant(
            access_token=creds.token or "",
            refresh_token=creds.refresh_token,
            expiry=_expiry_from_credentials(creds),
            account_email=email,
        )

    async def refresh(self, refresh_token: str) -> TokenGrant:
        settings = get_settings()
        creds = Credentials(
            token=None,
            refresh_token=refresh_token,
            token_uri=TOKEN_URI,
            client_id=settings.google_client_id,
            client_secret=settings.google_client_secret,
            scopes=CALENDAR_SCOPES,
        )
        try:
            await asyncio.to_thread(creds.refresh, google_requests.Request())
        except google_auth_exceptions.RefreshError as e:
            raise CalendarAuthError(str(e)) from e
        except google_auth_exceptions.TransportError as e:
            raise CalendarUnavailable(str(e)) from e
        return TokenGrant(
            access_token=creds.token or "",
            refresh_token=creds.refresh_token or refresh_token,
            expiry=_expiry_from_credentials(creds),
        )

    async def list_changes(self, access_token: str, calendar_id: str, sync_token: str | None) -> ChangeBatch:
        service = self._service(access_token)
        params: dict = {"calendarId": calendar_id, "showDeleted": True, "singleEvents": True, "maxResults": 250}
        if sync_token:
            params["syncToken"] = sync_token
        else:
            window_start = utcnow() - timedelta(days=FULL_SYNC_LOOKBACK_DAYS)
            params["timeMin"] = window_start.replace(tzinfo=timezone.utc).isoformat()
        batch = ChangeBatch()
        page_token = None
        while True:
            if page_token:
                params["pageToken"] = page_token
            resp = await self._execute(lambda: service.events().list(**params))
            for item in resp.get("items", []):
                if item.get("id"):
                    batch.events.append(parse_event(item))
            page_token = resp.get("nextPageToken")
            if resp.get("nextSyncToken"):
                batch.next_sync_token = resp["nextSyncToken"]
            if not page_token:
                break
        return batch

    async def upsert_event(self, access_token: str, calendar_id: str, event_id: str, body: EventBody) -> str:
        service = self._service(access_token)
        payload = body.to_google()
        try:
            resp = await self._execute(
                lambda: service.events().update(calendarId=calendar_id, eventId=event_id, body=payload)
            )
        except CalendarNotFound:
            resp = await self._execute(
                lambda: service.events().insert(calendarId=calendar_id, body={**payload, "id": event_id})
            )
        return resp.get("id", event_id)

    async def delete_event(self, access_token: str, calendar_id: str, event_id: str) -> None:
        service = self._service(access_token)
        try:
            await self._execute(lambda: service.events().delete(calendarId=calendar_id, eventId=event_id))
        except (CalendarNotFound, CalendarCursorExpired):
            log.info("calendar_event_already_gone", event_id=event_id)

    async def watch(
        self, access_token: str, calendar_id: str, channel_id: str, token: str, address: str
    ) -> tuple[str, datetime | None]:
        service = self._service(access_token)
        body = {"id": channel_id, "type": "web_hook", "address": address, "token": token}
        resp = await self._execute(lambda: service.events().watch(calendarId=calendar_id, body=body))
        expiration = resp.get("expiration")
        expires_at = None
        if expiration:
            expires_at = datetime.fromtimestamp(int(expiration) / 1000, tz=timezone.utc).replace(tzinfo=None)
        return resp.get("resourceId", ""), expires_at

    async def stop_channel(self, access_token: str, channel_id: str, resource_id: str) -> None:
        service = self._service(access_token)
        await self._execute(lambda: service.channels().stop(body={"id": channel_id, "resourceId": resource_id}))


_client: CalendarClient | None = None


def get_calendar_client() -> CalendarClient:
    return _client or GoogleCalendarClient()


def set_calendar_client(client: CalendarClient | None) -> None:
    global _client
    _client = client
