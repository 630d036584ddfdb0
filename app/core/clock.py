"""Naive-UTC time helpers; every stored datetime is naive UTC."""

from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_utc_naive(value: datetime) -> datetime:
    """Normalise an incoming datetime (aware or naive-UTC) to naive UTC."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def as_aware(value: datetime) -> datetime:
    """Attach UTC to a stored naive datetime (for APIs that need tz info)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
