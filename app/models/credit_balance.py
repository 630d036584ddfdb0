from datetime import datetime

from beanie import Document, Indexed
from pydantic import Field


class CreditBalance(Document):
    """Read cache of an account's balance; the transaction log is the source of truth."""
    account_id: Indexed(str, unique=True)
    balance: int = 0
    transaction_count: int = 0
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "credit_balances"
