from typing import Literal

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from app.core.pagination import paginate
from app.deps import require_admin
from app.models.account import Account
from app.models.operator_fault import OperatorFault
from app.routers.accounts import account_out
from app.services import accounts as accounts_service
from app.services import credits as credits_service
from app.services import faults as faults_service
from app.services import reconciliation

router = APIRouter()


class CreateAccountRequest(BaseModel):
    email: str
    role: Literal["client", "provider", "admin"] = "client"
    name: str = ""
    credits_per_minute: int | None = None


def fault_out(f: OperatorFault) -> dict:
    return {
        "id": str(f.id),
        "kind": f.kind,
        "entity_type": f.entity_type,
        "entity_id": f.entity_id,
        "details": f.details,
        "status": f.status,
        "created_at": f.created_at.isoformat(),
        "acknowledged_by": f.acknowledged_by,
    }


@router.get("/faults")
async def admin_list_faults(
    user: Account = Depends(require_admin),
    status: str | None = Query("open"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
):
    """Operator queue: ledger/store mismatches and other invariant violations."""
    limit, offset = paginate(limit, offset)
    faults = await faults_service.list_faults(status, limit=limit, offset=offset)
    return {"faults": [fault_out(f) for f in faults], "limit": limit, "offset": offset}


@router.post("/faults/{fault_id}/acknowledge")
async def admin_acknowledge_fault(fault_id: str, user: Account = Depends(require_admin)):
    fault = await faults_service.acknowledge_fault(fault_id, str(user.id))
    return fault_out(fault)


@router.post("/reconcile")
async def admin_reconcile(user: Account = Depends(require_admin)):
    """Admin: run the ledger/store reconciliation sweep now."""
    return {"report": await reconciliation.reconcile()}


@router.post("/credits/expire")
async def admin_expire_credits(user: Account = Depends(require_admin)):
    written = await credits_service.expire_all_credits()
    return {"expired_transactions": written}


@router.post("/accounts")
async def admin_create_account(body: CreateAccountRequest, user: Account = Depends(require_admin)):
    account = await accounts_service.create_account(body.email, body.role, body.name, body.credits_per_minute)
    return account_out(account)


@router.post("/accounts/{account_id}/deactivate")
async def admin_deactivate_account(account_id: str, user: Account = Depends(require_admin)):
    account = await accounts_service.deactivate_account(account_id)
    return account_out(account)
