"""Operator queue: invariant violations that must never be auto-repaired."""

from datetime import datetime
from typing import Any, Literal

from beanie import Document
from pydantic import Field


class OperatorFault(Document):
    kind: str  # booked_without_spend, spend_without_booking, missing_refund, duplicate_external_event, ...
    entity_type: str
    entity_id: str
    details: dict[str, Any] = Field(default_factory=dict)
    status: Literal["open", "acknowledged"] = "open"
    acknowledged_by: str | None = None
    acknowledged_at: datetime | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "operator_faults"
        indexes = [[("status", 1), ("created_at", -1)], [("kind", 1), ("entity_id", 1)]]
