from datetime import datetime
from typing import Literal

from beanie import Document, Indexed
from pydantic import Field

LinkStatus = Literal["connecting", "connected", "token_expired", "disconnected"]


class CalendarLink(Document):
    """Per-provider OAuth link to the external calendar. Deleted on disconnect."""
    provider_id: Indexed(str, unique=True)
    status: LinkStatus = "connecting"
    external_account: str = ""  # calendar owner email
    calendar_id: str = "primary"
    access_token_encrypted: str = ""
    refresh_token_encrypted: str = ""
    token_expiry: datetime | None = None
    sync_cursor: str | None = None
    last_synced_at: datetime | None = None
    last_sync_status: str | None = None  # success | failed
    last_error: str | None = None
    consecutive_failures: int = 0
    webhook_channel_id: str | None = None
    webhook_resource_id: str | None = None
    webhook_token: str | None = None
    webhook_expires_at: datetime | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "calendar_links"
        indexes = [[("status", 1), ("token_expiry", 1)], [("webhook_channel_id", 1)]]
