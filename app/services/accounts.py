"""Accounts as seen by the core: role, activity, provider rate."""

from datetime import datetime

from app.core.audit import log_event
from app.core.clock import utcnow
from app.core.config import get_settings
from app.core.exceptions import BadRequestError, ConflictError, ForbiddenError, NotFoundError
from app.core.ids import object_id
from app.core.logging import get_logger
from app.models.account import Account, AccountRole

log = get_logger(__name__)


async def create_account(
    email: str,
    role: AccountRole = "client",
    name: str = "",
    credits_per_minute: int | None = None,
) -> Account:
    """Registration hook called by the identity surface."""
    email = (email or "").strip().lower()
    if not email:
        raise BadRequestError("Email required")
    if credits_per_minute is not None and credits_per_minute <= 0:
        raise BadRequestError("credits_per_minute must be positive")
    if await Account.find_one(Account.email == email):
        raise ConflictError("Account already exists")
    account = Account(email=email, role=role, name=name, credits_per_minute=credits_per_minute)
    await account.insert()
    log.info("account_created", account_id=str(account.id), role=role)
    return account


async def get_account(account_id: str) -> Account:
    account = await Account.get(object_id(account_id, "Account"))
    if not account:
        raise NotFoundError("Account not found")
    return account


async def get_active_account(account_id: str, role: AccountRole | None = None) -> Account:
    account = await get_account(account_id)
    if not account.active:
        raise ForbiddenError("Account is deactivated")
    if role and account.role != role:
        raise ForbiddenError(f"Account is not a {role}")
    return account


async def deactivate_account(account_id: str, now: datetime | None = None) -> Account:
    account = await get_account(account_id)
    if not account.active:
        return account
    now = now or utcnow()
    account.active = False
    account.deactivated_at = now
    account.updated_at = now
    await account.save()
    await log_event(account_id, "account_deactivated", "account", account_id)
    return account


def provider_rate(provider: Account) -> int:
    """Credits charged per session minute."""
    return provider.credits_per_minute or get_settings().default_credits_per_minute
