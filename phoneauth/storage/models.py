from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Gender(str, Enum):
    MALE = "male"
    FEMALE = "female"


class TokenType(str, Enum):
    REFRESH = "refresh_token"
    SESSION = "session"


@dataclass
class AuthRecord:
    """Root identity keyed by phone number."""

    id: str
    phone: str
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class Profile:
    """User-facing data sharing its primary key with ``AuthRecord``."""

    id: str
    name: str
    gender: Gender
    birth_year: int
    email: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)


@dataclass
class OTPRecord:
    phone: str
    code: str
    expires_at: datetime
    attempts: int = 0
    created_at: datetime = field(default_factory=_utcnow)

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at < now


@dataclass
class Token:
    id: str
    auth_id: str
    token: str
    type: TokenType
    expires_at: datetime
    device_info: Optional[str] = None
    revoked_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=_utcnow)

    def is_active(self, token_type: TokenType, now: datetime) -> bool:
        """A token is usable only for its own type, unrevoked and unexpired."""
        return (
            self.type == token_type
            and self.revoked_at is None
            and self.expires_at > now
        )
