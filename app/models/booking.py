from datetime import datetime
from typing import Literal

import pymongo
from beanie import Document
from pydantic import Field
from pymongo import IndexModel

BookingStatus = Literal["pending", "confirmed", "cancelled", "completed", "no_show"]


class Booking(Document):
    client_id: str
    provider_id: str
    slot_id: str
    start: datetime
    end: datetime
    duration_minutes: int
    credit_cost: int  # snapshot at reservation time
    status: BookingStatus = "pending"
    cancellation_deadline: datetime
    idempotency_key: str | None = None
    external_event_id: str | None = None
    cancelled_by: str | None = None
    cancelled_at: datetime | None = None
    refunded_amount: int = 0
    completed_at: datetime | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "bookings"
        indexes = [
            [("client_id", 1), ("start", -1)],
            [("provider_id", 1), ("start", -1)],
            [("status", 1), ("end", 1)],
            IndexModel(
                [("client_id", pymongo.ASCENDING), ("idempotency_key", pymongo.ASCENDING)],
                unique=True,
                partialFilterExpression={"idempotency_key": {"$type": "string"}},
                name="client_idempotency_key_unique",
            ),
            [("external_event_id", 1)],
        ]
