"""Notification surface: fire-and-forget delivery of core events."""

from abc import ABC, abstractmethod
from typing import Any

import httpx

from app.core.config import get_settings
from app.core.logging import get_logger

log = get_logger(__name__)

NOTIFY_TIMEOUT_SECONDS = 5.0


class NotificationSink(ABC):
    @abstractmethod
    async def send(self, event_type: str, payload: dict[str, Any]) -> None:
        ...


class HttpNotificationSink(NotificationSink):
    """POSTs events to the notification service (email/SMS delivery lives there)."""

    def __init__(self, url: str) -> None:
        self.url = url

    async def send(self, event_type: str, payload: dict[str, Any]) -> None:
        async with httpx.AsyncClient(timeout=NOTIFY_TIMEOUT_SECONDS) as client:
            resp = await client.post(self.url, json={"type": event_type, "payload": payload})
            resp.raise_for_status()


class LogNotificationSink(NotificationSink):
    async def send(self, event_type: str, payload: dict[str, Any]) -> None:
        log.info("notification", event_type=event_type, payload=payload)


_sink: NotificationSink | None = None


def get_notification_sink() -> NotificationSink:
    if _sink is not None:
        return _sink
    url = get_settings().notification_webhook_url
    if url:
        return HttpNotificationSink(url)
    return LogNotificationSink()


def set_notification_sink(sink: NotificationSink | None) -> None:
    global _sink
    _sink = sink


async def notify(event_type: str, payload: dict[str, Any]) -> bool:
    """Deliver one event; a delivery failure is logged and reported as False, never raised."""
    try:
        await get_notification_sink().send(event_type, payload)
        return True
    except Exception:
        log.exception("notification_failed", event_type=event_type)
        return False
