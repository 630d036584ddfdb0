from fastapi import APIRouter, Depends, Header
from pydantic import BaseModel

from app.core.security import require_idempotency_key
from app.deps import require_client
from app.models.account import Account
from app.routers.credits import transaction_out
from app.services import credits as credits_service
from app.services import payments as payments_service

router = APIRouter()


class PurchaseRequest(BaseModel):
    package_id: str


@router.get("/packages")
async def list_packages():
    """Credit package catalogue."""
    return {"packages": [p.model_dump() for p in payments_service.list_packages()]}


@router.post("/purchase")
async def purchase_package(
    body: PurchaseRequest,
    account: Account = Depends(require_client),
    idempotency_key: str | None = Header(None, alias="Idempotency-Key"),
):
    """Charge for a package; credits are recorded only after the charge succeeds. Safe to retry with the same key."""
    key = require_idempotency_key(idempotency_key)
    txn = await payments_service.purchase_package(str(account.id), body.package_id, key)
    return {"transaction": transaction_out(txn), "balance": await credits_service.get_balance(str(account.id))}
