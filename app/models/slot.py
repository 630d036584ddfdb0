from datetime import datetime
from typing import Literal

from beanie import Document
from pydantic import Field

SlotStatus = Literal["open", "held", "booked", "blocked", "completed"]
SlotSource = Literal["provider", "external"]

# Statuses that take part in the no-overlap rule.
ACTIVE_STATUSES = ["open", "held", "booked"]


class Slot(Document):
    provider_id: str
    start: datetime
    end: datetime
    status: SlotStatus = "open"
    source: SlotSource = "provider"
    external_event_id: str | None = None  # blocked slots imported from the calendar
    held_by: str | None = None
    hold_expires_at: datetime | None = None
    booking_id: str | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "slots"
        indexes = [
            [("provider_id", 1), ("start", 1)],
            [("status", 1), ("hold_expires_at", 1)],
            [("provider_id", 1), ("external_event_id", 1)],
        ]

    @property
    def duration_minutes(self) -> int:
        return int((self.end - self.start).total_seconds() // 60)
