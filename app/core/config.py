from functools import lru_cache
from typing import Any, List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

_DEFAULT_CORS = ["http://localhost:3000", "http://localhost:5173"]


def _parse_cors_origins(v: Any) -> List[str]:
    try:
        if v is None or v == "":
            return _DEFAULT_CORS.copy()
        if isinstance(v, list):
            return [x for x in v if isinstance(x, str) and x.strip()]
        s = str(v).strip()
        if not s:
            return _DEFAULT_CORS.copy()
        if s.startswith("["):
            import json
            out = json.loads(s)
            return [x for x in out if isinstance(x, str) and x.strip()] or _DEFAULT_CORS.copy()
        return [x.strip() for x in s.split(",") if x.strip()] or _DEFAULT_CORS.copy()
    except ValueError:
        return _DEFAULT_CORS.copy()


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # App
    env: str = Field(default="development", description="ENV")
    debug: bool = Field(default=False, description="DEBUG")
    secret_key: str = Field(default="change-me-in-production-min-32-chars")

    # MongoDB
    mongodb_uri: str = Field(default="mongodb://localhost:27017", alias="MONGODB_URI")
    mongodb_db_name: str = Field(default="sessionbank", alias="MONGODB_DB_NAME")

    # Redis (worker queue, distributed locks)
    redis_url: str = Field(default="redis://localhost:6379/0", alias="REDIS_URL")

    # Google Calendar OAuth
    google_client_id: str = Field(default="", alias="GOOGLE_CLIENT_ID")
    google_client_secret: str = Field(default="", alias="GOOGLE_CLIENT_SECRET")
    calendar_oauth_redirect_uri: str = Field(
        default="http://localhost:8000/v1/calendar/oauth/callback",
        alias="CALENDAR_OAUTH_REDIRECT_URI",
    )
    calendar_webhook_url: str | None = Field(default=None, alias="CALENDAR_WEBHOOK_URL")

    # Token encryption (Fernet key, base64)
    token_encryption_key: str = Field(default="", alias="TOKEN_ENCRYPTION_KEY")

    # Collaborator surfaces
    payment_gateway_url: str = Field(default="", alias="PAYMENT_GATEWAY_URL")
    notification_webhook_url: str = Field(default="", alias="NOTIFICATION_WEBHOOK_URL")

    # Sentry
    sentry_dsn: str | None = Field(default=None, alias="SENTRY_DSN")

    # CORS: env as string, exposed as list
    cors_origins_raw: str = Field(
        default="http://localhost:3000,http://localhost:5173",
        alias="CORS_ORIGINS",
        description="Comma-separated or JSON list",
    )

    @property
    def cors_origins(self) -> List[str]:
        return _parse_cors_origins(getattr(self, "cors_origins_raw", None))

    # Locking: "redis" (shared by API and worker) or "local" (single process, development and tests only)
    lock_backend: str = Field(default="redis", alias="LOCK_BACKEND")
    lock_timeout_seconds: float = Field(default=10.0, alias="LOCK_TIMEOUT_SECONDS")

    # Booking policy
    hold_ttl_seconds: int = Field(default=300, alias="HOLD_TTL_SECONDS")
    cancellation_window_hours: int = Field(default=24, alias="CANCELLATION_WINDOW_HOURS")
    min_slot_minutes: int = Field(default=15, alias="MIN_SLOT_MINUTES")
    default_credits_per_minute: int = Field(default=1, alias="DEFAULT_CREDITS_PER_MINUTE")

    # Credits
    credit_validity_days: int = Field(default=182, alias="CREDIT_VALIDITY_DAYS")
    credits_per_article: int = Field(default=5, alias="CREDITS_PER_ARTICLE")
    credits_low_threshold: int = Field(default=30, alias="CREDITS_LOW_THRESHOLD")

    # External calendar sync
    token_refresh_skew_seconds: int = Field(default=300, alias="TOKEN_REFRESH_SKEW_SECONDS")
    retry_max_attempts: int = Field(default=5, alias="RETRY_MAX_ATTEMPTS")
    retry_base_delay_seconds: float = Field(default=0.5, alias="RETRY_BASE_DELAY_SECONDS")
    retry_max_delay_seconds: float = Field(default=30.0, alias="RETRY_MAX_DELAY_SECONDS")
    event_max_attempts: int = Field(default=8, alias="EVENT_MAX_ATTEMPTS")


@lru_cache
def get_settings() -> Settings:
    return Settings()
