"""Outbox: events emitted by the core, dispatched by the worker."""

from datetime import datetime
from typing import Any, Literal

from beanie import Document
from pydantic import Field


class DomainEvent(Document):
    event_type: str  # booking.confirmed, booking.cancelled, credits.low, ...
    payload: dict[str, Any] = Field(default_factory=dict)
    status: Literal["pending", "dispatched", "failed"] = "pending"
    attempts: int = 0
    last_error: str | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    dispatched_at: datetime | None = None

    class Settings:
        name = "domain_events"
        indexes = [[("status", 1), ("created_at", 1)]]
