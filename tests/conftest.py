import os
from datetime import datetime, timedelta
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# Test settings; must be set before app modules read them.
os.environ.setdefault("MONGODB_URI", "mongodb://localhost:27017")
os.environ.setdefault("MONGODB_DB_NAME", "sessionbank_test")
os.environ.setdefault("SECRET_KEY", "test-secret-key-min-32-characters-long")
os.environ["ENV"] = "test"
os.environ["LOCK_BACKEND"] = "local"
os.environ["RETRY_BASE_DELAY_SECONDS"] = "0"
os.environ["RETRY_MAX_DELAY_SECONDS"] = "0"
os.environ["RETRY_MAX_ATTEMPTS"] = "3"
os.environ["PAYMENT_GATEWAY_URL"] = ""
os.environ["NOTIFICATION_WEBHOOK_URL"] = ""
os.environ["CALENDAR_WEBHOOK_URL"] = ""

from app.services.google_calendar import (  # noqa: E402
    CalendarClient,
    CalendarCursorExpired,
    ChangeBatch,
    EventBody,
    ExternalEvent,
    TokenGrant,
)
from app.services.notifications import NotificationSink  # noqa: E402
from app.services.payments import ChargeResult, PaymentGateway  # noqa: E402

# Fixed clock for service tests: Monday 2030-01-07 08:00 UTC.
NOW = datetime(2030, 1, 7, 8, 0)


def at(hour: int, minute: int = 0, days: int = 1) -> datetime:
    """A time `days` after NOW's date at hour:minute."""
    return datetime(2030, 1, 7) + timedelta(days=days, hours=hour, minutes=minute)


class FakeCalendarClient(CalendarClient):
    """In-memory calendar: a versioned event store with sync tokens."""

    def __init__(self) -> None:
        self.events: dict[str, tuple[int, ExternalEvent]] = {}
        self.version = 0
        self.exported: dict[str, EventBody] = {}
        self.upserts = 0
        self.deleted: list[str] = []
        self.refreshes = 0
        self.expired_tokens: set[str] = set()
        self.failures: list[Exception] = []  # raised (in order) by the next calls
        self.refresh_failures: list[Exception] = []
        self.token_expiry = datetime(2100, 1, 1)
        self.channels: list[str] = []

    def _maybe_fail(self) -> None:
        if self.failures:
            raise self.failures.pop(0)

    def put_event(self, event_id, start=None, end=None, status="confirmed", transparent=False, booking_id=None):
        self.version += 1
        event = ExternalEvent(
            id=event_id, status=status, start=start, end=end, transparent=transparent, booking_id=booking_id
        )
        self.events[event_id] = (self.version, event)
        return event

    def cancel_event(self, event_id: str) -> None:
        _, event = self.events[event_id]
        self.put_event(event_id, event.start, event.end, status="cancelled", booking_id=event.booking_id)

    def authorization_url(self, state: str) -> str:
        return f"https://accounts.example/o/oauth2/auth?state={state}"

    async def exchange_code(self, code: str) -> TokenGrant:
        return TokenGrant("access-0", "refresh-0", self.token_expiry, "provider@example.com")

    async def refresh(self, refresh_token: str) -> TokenGrant:
        if self.refresh_failures:
            raise self.refresh_failures.pop(0)
        self.refreshes += 1
        return TokenGrant(f"access-{self.refreshes}", None, self.token_expiry)

    async def list_changes(self, access_token, calendar_id, sync_token) -> ChangeBatch:
        self._maybe_fail()
        if sync_token in self.expired_tokens:
            raise CalendarCursorExpired("410 Gone")
        since = int(sync_token) if sync_token else 0
        changed = [e for v, e in self.events.values() if v > since]
        if sync_token is None:
            changed = [e for e in changed if e.status != "cancelled"]
        return ChangeBatch(events=changed, next_sync_token=str(self.version))

    async def upsert_event(self, access_token, calendar_id, event_id, body: EventBody) -> str:
        self._maybe_fail()
        self.upserts += 1
        self.exported[event_id] = body
        self.put_event(event_id, body.start, body.end, booking_id=body.booking_id)
        return event_id

    async def delete_event(self, access_token, calendar_id, event_id) -> None:
        self._maybe_fail()
        self.deleted.append(event_id)
        self.exported.pop(event_id, None)
        if event_id in self.events:
            self.cancel_event(event_id)

    async def watch(self, access_token, calendar_id, channel_id, token, address):
        self.channels.append(channel_id)
        return f"resource-{channel_id}", datetime(2100, 1, 1)

    async def stop_channel(self, access_token, channel_id, resource_id) -> None:
        self.channels.remove(channel_id)


class FakePaymentGateway(PaymentGateway):
    def __init__(self) -> None:
        self.charges: list[tuple[str, int, str]] = []
        self.decline = False
        self.charged_amount: int | None = None

    async def charge(self, account_id: str, amount_cents: int, idempotency_key: str) -> ChargeResult:
        self.charges.append((account_id, amount_cents, idempotency_key))
        if self.decline:
            return ChargeResult(success=False, failure_reason="card_declined")
        amount = self.charged_amount if self.charged_amount is not None else amount_cents
        return ChargeResult(success=True, amount_cents=amount, reference=f"ch_{len(self.charges)}")


class FakeNotificationSink(NotificationSink):
    def __init__(self) -> None:
        self.sent: list[tuple[str, dict]] = []
        self.fail = False

    async def send(self, event_type: str, payload: dict) -> None:
        if self.fail:
            raise ConnectionError("notification service down")
        self.sent.append((event_type, payload))


@pytest_asyncio.fixture(autouse=True)
async def db() -> AsyncGenerator[None, None]:
    """Fresh in-memory Mongo, lock registry and collaborator fakes per test."""
    from mongomock_motor import AsyncMongoMockClient

    from app.db.init import init_db
    from app.locking import get_lock_manager
    from app.services.google_calendar import set_calendar_client
    from app.services.notifications import set_notification_sink
    from app.services.payments import set_payment_gateway

    get_lock_manager.cache_clear()
    await init_db(database=AsyncMongoMockClient()["sessionbank_test"])
    yield
    set_calendar_client(None)
    set_payment_gateway(None)
    set_notification_sink(None)


@pytest.fixture
def calendar() -> FakeCalendarClient:
    from app.services.google_calendar import set_calendar_client
    fake = FakeCalendarClient()
    set_calendar_client(fake)
    return fake


@pytest.fixture
def gateway() -> FakePaymentGateway:
    from app.services.payments import set_payment_gateway
    fake = FakePaymentGateway()
    set_payment_gateway(fake)
    return fake


@pytest.fixture
def sink() -> FakeNotificationSink:
    from app.services.notifications import set_notification_sink
    fake = FakeNotificationSink()
    set_notification_sink(fake)
    return fake


@pytest_asyncio.fixture
async def provider():
    from app.services.accounts import create_account
    return await create_account("therapist@example.com", "provider", "Dr. Rivera", credits_per_minute=1)


@pytest_asyncio.fixture
async def client_account():
    from app.services.accounts import create_account
    return await create_account("client@example.com", "client", "Sam")


@pytest_asyncio.fixture
async def admin_account():
    from app.services.accounts import create_account
    return await create_account("ops@example.com", "admin", "Ops")


@pytest.fixture
def grant():
    """grant(account, amount) -> earn transaction, for seeding balances."""
    from app.services import credits as credits_service

    async def _grant(account, amount: int, key: str = "seed", now: datetime = NOW):
        return await credits_service.record_transaction(
            str(account.id), "earn", amount, f"earn:test:{key}", "grant", key, now=now
        )

    return _grant


@pytest_asyncio.fixture
async def client() -> AsyncGenerator[AsyncClient, None]:
    from app.main import app
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac


@pytest.fixture
def login(client: AsyncClient):
    """login(account): set a signed session cookie on the test client."""
    from app.core.security import create_session_cookie
    from app.deps import SESSION_COOKIE_NAME

    def _login(account) -> None:
        client.cookies.set(SESSION_COOKIE_NAME, create_session_cookie({"account_id": str(account.id)}))

    return _login
