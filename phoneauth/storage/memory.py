from __future__ import annotations

import threading
import uuid
from datetime import datetime, timezone
from typing import Dict, Optional

from phoneauth.logging import get_logger
from phoneauth.storage.errors import ConstraintViolation
from phoneauth.storage.models import (
    AuthRecord,
    Gender,
    OTPRecord,
    Profile,
    Token,
    TokenType,
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MemoryStore:
    """In-process credential store used by tests and local development.

    Every mutating method holds ``_data_lock`` for its whole read-modify-write,
    which gives the same per-key atomicity the Postgres store gets from
    conditional upserts.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.auth: Dict[str, AuthRecord] = {}
        self.auth_by_phone: Dict[str, str] = {}
        self.profiles: Dict[str, Profile] = {}
        self.otps: Dict[str, OTPRecord] = {}
        self.tokens: Dict[str, Token] = {}
        # RLock so helpers can be called while a public method holds the lock
        self._data_lock = threading.RLock()

    # otp
    def get_otp(self, phone: str) -> Optional[OTPRecord]:
        with self._data_lock:
            return self.otps.get(phone)

    def upsert_otp(
        self,
        phone: str,
        code: str,
        expires_at: datetime,
        *,
        cooldown_since: datetime,
    ) -> Optional[OTPRecord]:
        """Replace the phone's OTP unless the current one is newer than ``cooldown_since``.

        Returns ``None`` when the cooldown blocks the write.
        """
        with self._data_lock:
            existing = self.otps.get(phone)
            if existing and existing.created_at > cooldown_since:
                return None
            record = OTPRecord(
                phone=phone,
                code=code,
                expires_at=expires_at,
                attempts=0,
                created_at=_utcnow(),
            )
            self.otps[phone] = record
            return record

    def increment_otp_attempts(self, phone: str) -> Optional[int]:
        with self._data_lock:
            record = self.otps.get(phone)
            if not record:
                return None
            record.attempts += 1
            return record.attempts

    def delete_otp(self, phone: str) -> bool:
        with self._data_lock:
            return self.otps.pop(phone, None) is not None

    # identities
    def get_auth(self, auth_id: str) -> Optional[AuthRecord]:
        with self._data_lock:
            return self.auth.get(auth_id)

    def get_auth_by_phone(self, phone: str) -> Optional[AuthRecord]:
        with self._data_lock:
            auth_id = self.auth_by_phone.get(phone)
            return self.auth.get(auth_id) if auth_id else None

    def get_or_create_auth(self, phone: str) -> tuple[AuthRecord, bool]:
        """Return the identity for ``phone``, creating it on first use."""
        with self._data_lock:
            existing = self.get_auth_by_phone(phone)
            if existing:
                return existing, False
            record = AuthRecord(id=str(uuid.uuid4()), phone=phone)
            self.auth[record.id] = record
            self.auth_by_phone[phone] = record.id
            return record, True

    def delete_auth(self, auth_id: str) -> bool:
        with self._data_lock:
            record = self.auth.pop(auth_id, None)
            if not record:
                return False
            self.auth_by_phone.pop(record.phone, None)
            self.profiles.pop(auth_id, None)
            owned = [t for t, tok in self.tokens.items() if tok.auth_id == auth_id]
            for token in owned:
                self.tokens.pop(token, None)
            return True

    # tokens
    def create_token(
        self,
        auth_id: str,
        token_type: TokenType,
        token: str,
        expires_at: datetime,
        *,
        device_info: Optional[str] = None,
    ) -> Token:
        with self._data_lock:
            if auth_id not in self.auth:
                raise ConstraintViolation("token owner missing", field="auth_id")
            if token in self.tokens:
                raise ConstraintViolation("token already exists", field="token")
            now = _utcnow()
            record = Token(
                id=str(uuid.uuid4()),
                auth_id=auth_id,
                token=token,
                type=TokenType(token_type),
                expires_at=expires_at,
                device_info=device_info,
                last_used_at=now,
                created_at=now,
            )
            self.tokens[token] = record
            return record

    def get_token(self, token: str) -> Optional[Token]:
        with self._data_lock:
            return self.tokens.get(token)

    def rotate_token(
        self, old_token: str, new_token: str, expires_at: datetime, *, now: datetime
    ) -> Optional[Token]:
        """Swap an active refresh token's string in place.

        Returns ``None`` if ``old_token`` is unknown, not a refresh token,
        revoked, expired, or was already rotated by a concurrent caller.
        """
        with self._data_lock:
            record = self.tokens.get(old_token)
            if not record or not record.is_active(TokenType.REFRESH, now):
                return None
            if new_token in self.tokens:
                raise ConstraintViolation("token already exists", field="token")
            self.tokens.pop(old_token)
            record.token = new_token
            record.expires_at = expires_at
            record.last_used_at = now
            self.tokens[new_token] = record
            return record

    def revoke_token(
        self, token: str, token_type: TokenType, *, now: datetime
    ) -> bool:
        with self._data_lock:
            record = self.tokens.get(token)
            if not record or record.type != token_type or record.revoked_at is not None:
                return False
            record.revoked_at = now
            return True

    def touch_token(self, token: str, *, now: datetime) -> None:
        with self._data_lock:
            record = self.tokens.get(token)
            if record:
                record.last_used_at = now

    # profiles
    def get_profile(self, auth_id: str) -> Optional[Profile]:
        with self._data_lock:
            return self.profiles.get(auth_id)

    def create_profile(
        self,
        auth_id: str,
        *,
        name: str,
        gender: Gender,
        birth_year: int,
        email: Optional[str] = None,
    ) -> Profile:
        with self._data_lock:
            if auth_id not in self.auth:
                raise ConstraintViolation("profile identity missing", field="id")
            if auth_id in self.profiles:
                raise ConstraintViolation("profile already exists", field="id")
            if email and any(p.email == email for p in self.profiles.values()):
                raise ConstraintViolation("email already exists", field="email")
            now = _utcnow()
            profile = Profile(
                id=auth_id,
                name=name,
                gender=Gender(gender),
                birth_year=birth_year,
                email=email,
                created_at=now,
                updated_at=now,
            )
            self.profiles[auth_id] = profile
            return profile

    def verify_connection(self) -> None:
        return None

    def close(self) -> None:
        return None
