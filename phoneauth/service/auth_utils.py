"""Clock helpers and secure random material for OTP codes and opaque tokens."""

from __future__ import annotations

import secrets
from datetime import datetime, timedelta, timezone

OTP_MIN = 100_000
OTP_SPAN = 900_000
# 18 random bytes encode to exactly 24 url-safe characters
TOKEN_BYTES = 18
TOKEN_LENGTH = 24


def now() -> datetime:
    """Timezone-aware UTC now; every timestamp in the service goes through here."""
    return datetime.now(timezone.utc)


def minutes_ago(minutes: int) -> datetime:
    return now() - timedelta(minutes=minutes)


def minutes_from_now(minutes: int) -> datetime:
    return now() + timedelta(minutes=minutes)


def days_from_now(days: int) -> datetime:
    return now() + timedelta(days=days)


def generate_otp() -> str:
    """Return a six digit code in the range 100000-999999."""
    return str(secrets.randbits(32) % OTP_SPAN + OTP_MIN)


def generate_token() -> str:
    """Return an opaque 24 character token for refresh tokens and sessions."""
    return secrets.token_urlsafe(TOKEN_BYTES)


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes read back from storage."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
