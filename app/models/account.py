from datetime import datetime
from typing import Literal

from beanie import Document, Indexed
from pydantic import Field

AccountRole = Literal["client", "provider", "admin"]


class Account(Document):
    """Client or provider; never deleted, only deactivated."""
    email: Indexed(str, unique=True)
    name: str = ""
    role: AccountRole = "client"
    active: bool = True
    credits_per_minute: int | None = None  # provider rate; None = settings default
    deactivated_at: datetime | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "accounts"
