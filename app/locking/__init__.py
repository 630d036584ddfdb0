from app.locking.base import LockManager, check_lock_backend, get_lock_manager

__all__ = ["LockManager", "check_lock_backend", "get_lock_manager", "provider_key", "account_key", "calendar_key", "payment_key"]


def provider_key(provider_id: str) -> str:
    return f"provider:{provider_id}"


def account_key(account_id: str) -> str:
    return f"account:{account_id}"


def calendar_key(provider_id: str) -> str:
    return f"calendar:{provider_id}"


def payment_key(account_id: str) -> str:
    return f"payment:{account_id}"
