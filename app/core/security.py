import hashlib
import hmac
import secrets
from typing import Any

from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from app.core.config import get_settings
from app.core.exceptions import BadRequestError

OAUTH_STATE_SALT = "calendar-oauth-state"
OAUTH_STATE_MAX_AGE = 600


def get_session_serializer() -> URLSafeTimedSerializer:
    settings = get_settings()
    return URLSafeTimedSerializer(
        settings.secret_key,
        salt="sessionbank-session",
        signer_kwargs={"key_derivation": "hmac", "digest_method": hashlib.sha256},
    )


def create_session_cookie(payload: dict[str, Any]) -> str:
    """Issued by the identity surface; exposed here for tooling and tests."""
    return get_session_serializer().dumps(payload)


def load_session_cookie(cookie_value: str, max_age_seconds: int = 7 * 24 * 3600) -> dict[str, Any] | None:
    serializer = get_session_serializer()
    try:
        return serializer.loads(cookie_value, max_age=max_age_seconds)
    except (BadSignature, SignatureExpired):
        return None


def sign_oauth_state(provider_id: str) -> str:
    return get_session_serializer().dumps({"provider_id": provider_id}, salt=OAUTH_STATE_SALT)


def load_oauth_state(state: str) -> str:
    """Return the provider id carried in a signed OAuth state value."""
    try:
        payload = get_session_serializer().loads(state, salt=OAUTH_STATE_SALT, max_age=OAUTH_STATE_MAX_AGE)
    except (BadSignature, SignatureExpired):
        raise BadRequestError("Invalid or expired state")
    provider_id = payload.get("provider_id") if isinstance(payload, dict) else None
    if not provider_id:
        raise BadRequestError("Invalid state")
    return provider_id


def require_idempotency_key(key: str | None) -> str:
    if not key or not key.strip():
        raise BadRequestError("Idempotency-Key header is required for this request")
    return key.strip()


def generate_channel_token() -> str:
    return secrets.token_urlsafe(32)


def verify_channel_token(expected: str | None, received: str | None) -> bool:
    """Constant-time check of the token echoed back by calendar push notifications."""
    if not expected or not received:
        return False
    return hmac.compare_digest(expected.encode("utf-8"), received.encode("utf-8"))
