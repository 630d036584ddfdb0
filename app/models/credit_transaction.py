from datetime import datetime
from typing import Literal

import pymongo
from beanie import Document
from pydantic import Field
from pymongo import IndexModel

from app.core.exceptions import InvariantViolationError

TransactionKind = Literal["purchase", "earn", "spend", "refund", "expire"]

CREDIT_KINDS = ("purchase", "earn", "refund")
DEBIT_KINDS = ("spend", "expire")


class CreditTransaction(Document):
    """Append-only ledger row; the sum of amounts per account is its balance."""
    account_id: str
    kind: TransactionKind
    amount: int  # positive for purchase/earn/refund, negative for spend/expire
    balance_after: int
    reference_type: str | None = None  # package, article, booking, grant, milestone
    reference_id: str | None = None
    idempotency_key: str
    expires_at: datetime | None = None  # purchases only
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "credit_transactions"
        indexes = [
            IndexModel(
                [("account_id", pymongo.ASCENDING), ("idempotency_key", pymongo.ASCENDING)],
                unique=True,
                name="account_idempotency_key_unique",
            ),
            [("account_id", 1), ("created_at", 1)],
            [("reference_type", 1), ("reference_id", 1)],
        ]

    async def save(self, *args, **kwargs):
        raise InvariantViolationError("Credit transactions are immutable", details={"id": str(self.id)})

    async def replace(self, *args, **kwargs):
        raise InvariantViolationError("Credit transactions are immutable", details={"id": str(self.id)})

    async def delete(self, *args, **kwargs):
        raise InvariantViolationError("Credit transactions are immutable", details={"id": str(self.id)})
