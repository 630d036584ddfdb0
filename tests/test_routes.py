"""HTTP surface over the core services (real clock)."""

from datetime import datetime, timedelta

import pytest

from app.services import calendar_sync


def future(hour: int, minute: int = 0, days: int = 3) -> str:
    day = datetime.utcnow().replace(hour=0, minute=0, second=0, microsecond=0) + timedelta(days=days)
    return (day + timedelta(hours=hour, minutes=minute)).isoformat()


@pytest.fixture
def no_queue(monkeypatch):
    """Capture enqueued calendar syncs instead of talking to Redis."""
    queued = []

    async def fake_enqueue(provider_id: str) -> None:
        queued.append(provider_id)

    monkeypatch.setattr("app.routers.calendar.enqueue_calendar_sync", fake_enqueue)
    return queued


async def test_me(client, login, provider):
    login(provider)
    r = await client.get("/v1/accounts/me")
    assert r.status_code == 200
    assert r.json()["role"] == "provider"
    assert r.json()["credits_per_minute"] == 1


async def test_booking_flow(client, login, provider, client_account, grant):
    login(provider)
    r = await client.post("/v1/slots", json={"start": future(9), "end": future(10)})
    assert r.status_code == 200
    [slot] = r.json()["slots"]

    await grant(client_account, 100, now=datetime.utcnow())
    login(client_account)
    r = await client.get("/v1/slots", params={"provider_id": str(provider.id)})
    assert [s["id"] for s in r.json()["slots"]] == [slot["id"]]

    r = await client.post(
        "/v1/bookings",
        json={"slot_id": slot["id"], "duration_minutes": 50},
        headers={"Idempotency-Key": "book-1"},
    )
    assert r.status_code == 200
    booking = r.json()["booking"]
    assert booking["status"] == "confirmed"
    assert r.json()["balance"] == 50

    r = await client.get("/v1/bookings")
    assert r.json()["total"] == 1

    r = await client.post(f"/v1/bookings/{booking['id']}/cancel")
    assert r.status_code == 200
    assert r.json()["status"] == "cancelled"
    r = await client.get("/v1/credits/balance")
    assert r.json() == {"balance": 100}


async def test_booking_without_credits_is_payment_required(client, login, provider, client_account):
    login(provider)
    r = await client.post("/v1/slots", json={"start": future(9), "end": future(10)})
    slot_id = r.json()["slots"][0]["id"]

    login(client_account)
    r = await client.post("/v1/bookings", json={"slot_id": slot_id, "duration_minutes": 60})
    assert r.status_code == 402
    assert r.json()["error"]["code"] == "INSUFFICIENT_BALANCE"
    assert r.json()["error"]["details"] == {"balance": 0, "required": 60}


async def test_overlapping_slot_is_rejected(client, login, provider):
    login(provider)
    await client.post("/v1/slots", json={"start": future(9), "end": future(10)})
    r = await client.post("/v1/slots", json={"start": future(9, 30), "end": future(11)})
    assert r.status_code == 409
    assert r.json()["error"]["code"] == "OVERLAP"


async def test_clients_cannot_declare_slots(client, login, client_account):
    login(client_account)
    r = await client.post("/v1/slots", json={"start": future(9), "end": future(10)})
    assert r.status_code == 403


async def test_purchase_requires_idempotency_key(client, login, client_account, gateway):
    login(client_account)
    r = await client.post("/v1/payments/purchase", json={"package_id": "starter"})
    assert r.status_code == 400

    r = await client.post(
        "/v1/payments/purchase", json={"package_id": "starter"}, headers={"Idempotency-Key": "buy-1"}
    )
    assert r.status_code == 200
    assert r.json()["balance"] == 30
    assert len(gateway.charges) == 1


async def test_reading_credits(client, login, client_account):
    login(client_account)
    r = await client.post("/v1/credits/earn/reading", json={"article_id": "sleep-hygiene"})
    assert r.json()["already_earned"] is False
    r = await client.post("/v1/credits/earn/reading", json={"article_id": "sleep-hygiene"})
    assert r.json()["already_earned"] is True
    assert r.json()["balance"] == 5


async def test_admin_routes_require_admin(client, login, client_account, admin_account):
    login(client_account)
    assert (await client.post("/v1/admin/reconcile")).status_code == 403

    login(admin_account)
    r = await client.post("/v1/admin/reconcile")
    assert r.status_code == 200
    assert r.json() == {"report": {}}

    r = await client.post(f"/v1/admin/accounts/{client_account.id}/deactivate")
    assert r.json()["active"] is False
    login(client_account)
    assert (await client.get("/v1/accounts/me")).status_code == 403


async def test_calendar_connect_and_callback(client, login, provider, calendar, no_queue):
    login(provider)
    r = await client.get("/v1/calendar/connect")
    url = r.json()["authorization_url"]
    state = url.split("state=", 1)[1]

    r = await client.get("/v1/calendar/oauth/callback", params={"code": "c", "state": state})
    assert r.json() == {"status": "connected"}
    assert no_queue == [str(provider.id)]

    r = await client.get("/v1/calendar/status")
    assert r.json()["connected"] is True

    r = await client.post("/v1/calendar/sync")
    assert r.json() == {"status": "queued"}


async def test_calendar_callback_with_bad_state(client, calendar, no_queue):
    r = await client.get("/v1/calendar/oauth/callback", params={"code": "c", "state": "forged"})
    assert r.status_code == 400
    assert no_queue == []


async def test_calendar_webhook(client, provider, calendar, no_queue, monkeypatch):
    from app.core.config import get_settings

    url = await calendar_sync.start_connect(str(provider.id))
    await calendar_sync.complete_connect(url.split("state=", 1)[1], "c")
    monkeypatch.setattr(get_settings(), "calendar_webhook_url", "https://api.example/v1/calendar/webhook")
    link = await calendar_sync.register_webhook(str(provider.id))

    headers = {
        "X-Goog-Channel-ID": link.webhook_channel_id,
        "X-Goog-Channel-Token": link.webhook_token,
        "X-Goog-Resource-State": "exists",
    }
    r = await client.post("/v1/calendar/webhook", headers=headers)
    assert r.status_code == 200
    assert no_queue == [str(provider.id)]

    r = await client.post("/v1/calendar/webhook", headers={**headers, "X-Goog-Channel-Token": "nope"})
    assert r.status_code == 403
