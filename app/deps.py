"""Shared FastAPI dependencies."""

from fastapi import Depends, Request

from app.core.exceptions import ForbiddenError, UnauthorizedError
from app.core.ids import object_id
from app.core.security import load_session_cookie
from app.models.account import Account

SESSION_COOKIE_NAME = "sessionbank_session"


async def get_current_account(request: Request) -> Account:
    """Dependency: load session from cookie and return the active Account."""
    cookie = request.cookies.get(SESSION_COOKIE_NAME)
    if not cookie:
        raise UnauthorizedError("Not authenticated")
    payload = load_session_cookie(cookie)
    if not payload:
        raise UnauthorizedError("Invalid or expired session")
    account_id = payload.get("account_id")
    if not account_id:
        raise UnauthorizedError("Invalid session")
    account = await Account.get(object_id(account_id, "Account"))
    if not account:
        raise UnauthorizedError("Account not found")
    if not account.active:
        raise ForbiddenError("Account is deactivated")
    return account


async def require_client(account: Account = Depends(get_current_account)) -> Account:
    if account.role != "client":
        raise ForbiddenError("Clients only")
    return account


async def require_provider(account: Account = Depends(get_current_account)) -> Account:
    if account.role != "provider":
        raise ForbiddenError("Providers only")
    return account


async def require_admin(account: Account = Depends(get_current_account)) -> Account:
    """Dependency: require current account to have role admin."""
    if account.role != "admin":
        raise ForbiddenError("Admin only")
    return account
