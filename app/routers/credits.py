from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from app.core.pagination import paginate
from app.deps import get_current_account, require_client
from app.models.account import Account
from app.models.credit_transaction import CreditTransaction
from app.services import credits as credits_service

router = APIRouter()


class EarnReadingRequest(BaseModel):
    article_id: str


def transaction_out(t: CreditTransaction) -> dict:
    return {
        "id": str(t.id),
        "kind": t.kind,
        "amount": t.amount,
        "balance_after": t.balance_after,
        "reference_type": t.reference_type,
        "reference_id": t.reference_id,
        "expires_at": t.expires_at.isoformat() if t.expires_at else None,
        "created_at": t.created_at.isoformat(),
    }


@router.get("/balance")
async def credits_balance(account: Account = Depends(get_current_account)):
    """Return current credit balance."""
    balance = await credits_service.get_balance(str(account.id))
    return {"balance": balance}


@router.get("/transactions")
async def credits_transactions(
    account: Account = Depends(get_current_account),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
):
    """Return ledger entries for current account (newest first)."""
    limit, offset = paginate(limit, offset)
    items, total = await credits_service.list_transactions(str(account.id), limit=limit, offset=offset)
    return {"entries": [transaction_out(t) for t in items], "limit": limit, "offset": offset, "total": total}


@router.post("/earn/reading")
async def credits_earn_reading(body: EarnReadingRequest, account: Account = Depends(require_client)):
    """Award reading credits for a completed article (once per article)."""
    txn, already_earned, bonuses = await credits_service.earn_for_article(str(account.id), body.article_id)
    return {
        "transaction": transaction_out(txn),
        "already_earned": already_earned,
        "milestone_bonuses": [transaction_out(b) for b in bonuses],
        "balance": await credits_service.get_balance(str(account.id)),
    }


@router.get("/reading/stats")
async def credits_reading_stats(account: Account = Depends(require_client)):
    return await credits_service.reading_stats(str(account.id))
