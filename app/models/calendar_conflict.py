from datetime import datetime
from typing import Literal

from beanie import Document
from pydantic import Field

ConflictStatus = Literal["open", "resolved"]
ConflictResolution = Literal["honored", "booking_cancelled", "external_removed"]


class CalendarConflict(Document):
    """A blocked interval overlapping a booked slot; awaits a provider decision."""
    provider_id: str
    booking_id: str
    slot_id: str
    block_slot_id: str
    external_event_id: str | None = None
    start: datetime  # blocked interval
    end: datetime
    status: ConflictStatus = "open"
    resolution: ConflictResolution | None = None
    resolved_by: str | None = None
    resolved_at: datetime | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "calendar_conflicts"
        indexes = [
            [("provider_id", 1), ("status", 1)],
            [("booking_id", 1), ("external_event_id", 1)],
        ]
