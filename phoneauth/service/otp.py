from __future__ import annotations

import hmac
from datetime import datetime
from typing import Optional, Protocol

from phoneauth.config import Settings
from phoneauth.logging import get_logger
from phoneauth.service import auth_utils
from phoneauth.service.errors import AuthenticationError, RateLimitedError
from phoneauth.service.sms import SMSSender
from phoneauth.storage.models import OTPRecord

logger = get_logger(__name__)


class OTPStore(Protocol):
    def get_otp(self, phone: str) -> Optional[OTPRecord]: ...

    def upsert_otp(
        self,
        phone: str,
        code: str,
        expires_at: datetime,
        *,
        cooldown_since: datetime,
    ) -> Optional[OTPRecord]: ...

    def increment_otp_attempts(self, phone: str) -> Optional[int]: ...

    def delete_otp(self, phone: str) -> bool: ...


class OTPService:
    """Issues and checks one-time codes, one live code per phone."""

    def __init__(self, store: OTPStore, settings: Settings) -> None:
        self.store = store
        self.settings = settings

    def request_otp(self, phone: str) -> OTPRecord:
        """Create or replace the phone's OTP.

        Raises ``RateLimitedError`` when the current code was issued within the
        cooldown window. The returned record carries the code so the caller
        can hand it to the SMS sender; it must never reach the response.
        """
        code = auth_utils.generate_otp()
        expires_at = auth_utils.minutes_from_now(self.settings.otp_expiry_minutes)
        record = self.store.upsert_otp(
            phone,
            code,
            expires_at,
            cooldown_since=auth_utils.minutes_ago(self.settings.otp_cooldown_minutes),
        )
        if record is None:
            logger.info("otp_request_rate_limited", phone=phone)
            raise RateLimitedError("Too many requests, try again later")
        logger.info("otp_issued", phone=phone, expires_at=expires_at.isoformat())
        return record

    def verify_otp(self, phone: str, code: str) -> None:
        """Consume the phone's OTP or raise ``AuthenticationError``.

        Expiry and attempt exhaustion are checked before the code is compared,
        so an exhausted or stale row can never be guessed against.
        """
        record = self.store.get_otp(phone)
        if record is None:
            raise AuthenticationError("No OTP found for this phone number")

        if record.is_expired(auth_utils.now()):
            self.store.delete_otp(phone)
            logger.info("otp_expired", phone=phone)
            raise AuthenticationError("OTP has expired")

        max_attempts = self.settings.otp_max_attempts
        if record.attempts >= max_attempts:
            self.store.delete_otp(phone)
            logger.info("otp_attempts_exhausted", phone=phone)
            raise AuthenticationError(
                "Too many failed attempts. Please request a new OTP."
            )

        if not hmac.compare_digest(record.code.encode(), code.encode()):
            attempts = self.store.increment_otp_attempts(phone)
            if attempts is None:
                # consumed by a concurrent verify between our read and the increment
                raise AuthenticationError("No OTP found for this phone number")
            if attempts >= max_attempts:
                self.store.delete_otp(phone)
                logger.info("otp_attempts_exhausted", phone=phone, attempts=attempts)
                raise AuthenticationError(
                    "Too many failed attempts. Please request a new OTP."
                )
            logger.info("otp_mismatch", phone=phone, attempts=attempts)
            raise AuthenticationError("Invalid OTP code")

        if not self.store.delete_otp(phone):
            # another request already consumed this code
            raise AuthenticationError("No OTP found for this phone number")
        logger.info("otp_verified", phone=phone)


async def deliver_otp(sender: SMSSender, phone: str, code: str) -> None:
    """Background task body for SMS dispatch; failures are logged, never raised."""
    try:
        delivered = await sender.send_otp(phone, code)
    except Exception as exc:
        logger.error(
            "otp_delivery_failed",
            phone=phone,
            provider=sender.name,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return
    if not delivered:
        logger.warning("otp_delivery_rejected", phone=phone, provider=sender.name)
