from fastapi import APIRouter, Depends

from app.deps import get_current_account
from app.models.account import Account
from app.services import credits as credits_service
from app.services.accounts import provider_rate

router = APIRouter()


def account_out(account: Account) -> dict:
    out = {
        "id": str(account.id),
        "email": account.email,
        "name": account.name,
        "role": account.role,
        "active": account.active,
    }
    if account.role == "provider":
        out["credits_per_minute"] = provider_rate(account)
    return out


@router.get("/me")
async def me(account: Account = Depends(get_current_account)):
    out = account_out(account)
    if account.role == "client":
        out["balance"] = await credits_service.get_balance(str(account.id))
    return out
