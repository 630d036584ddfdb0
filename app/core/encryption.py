"""Fernet encryption for calendar OAuth tokens at rest."""

import base64
import hashlib

from cryptography.fernet import Fernet, InvalidToken

from app.core.config import get_settings
from app.core.exceptions import BadRequestError
from app.core.logging import get_logger

log = get_logger(__name__)


def _get_fernet() -> Fernet:
    settings = get_settings()
    key = settings.token_encryption_key
    if not key or (isinstance(key, str) and len(key) != 44):
        # Derive from secret_key for dev when TOKEN_ENCRYPTION_KEY not set
        secret = settings.secret_key.encode()
        digest = hashlib.sha256(secret).digest()
        key = base64.urlsafe_b64encode(digest).decode()
    try:
        return Fernet(key.encode() if isinstance(key, str) else key)
    except ValueError as e:
        raise BadRequestError(f"Invalid encryption key: {e}") from e


def encrypt_token(plain: str | None) -> str:
    if not plain:
        return ""
    return _get_fernet().encrypt(plain.encode()).decode()


def decrypt_token(encrypted: str | None) -> str:
    """Return the plaintext token, or "" when missing or unreadable (treated as no token)."""
    if not encrypted:
        return ""
    try:
        return _get_fernet().decrypt(encrypted.encode()).decode()
    except InvalidToken:
        log.warning("token_decrypt_failed")
        return ""
