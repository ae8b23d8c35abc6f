from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Optional, Protocol, Union

from phoneauth.config import Settings
from phoneauth.logging import get_logger
from phoneauth.service import auth_utils
from phoneauth.service.errors import (
    AuthenticationError,
    ConflictError,
    ProfileIncompleteError,
)
from phoneauth.service.otp import OTPService
from phoneauth.storage.errors import ConstraintViolation
from phoneauth.storage.models import AuthRecord, Gender, Profile, Token, TokenType

logger = get_logger(__name__)


class AuthStore(Protocol):
    def get_auth(self, auth_id: str) -> Optional[AuthRecord]: ...

    def get_or_create_auth(self, phone: str) -> tuple[AuthRecord, bool]: ...

    def create_token(
        self,
        auth_id: str,
        token_type: TokenType,
        token: str,
        expires_at: datetime,
        *,
        device_info: Optional[str] = None,
    ) -> Token: ...

    def get_token(self, token: str) -> Optional[Token]: ...

    def rotate_token(
        self, old_token: str, new_token: str, expires_at: datetime, *, now: datetime
    ) -> Optional[Token]: ...

    def revoke_token(
        self, token: str, token_type: TokenType, *, now: datetime
    ) -> bool: ...

    def touch_token(self, token: str, *, now: datetime) -> None: ...

    def get_profile(self, auth_id: str) -> Optional[Profile]: ...

    def create_profile(
        self,
        auth_id: str,
        *,
        name: str,
        gender: Gender,
        birth_year: int,
        email: Optional[str] = None,
    ) -> Profile: ...


class Platform(str, Enum):
    MOBILE = "mobile"
    WEB = "web"


class AuthMode(str, Enum):
    BEARER = "bearer"
    SESSION = "session"


@dataclass(frozen=True)
class BearerCredential:
    token: str


@dataclass(frozen=True)
class SessionCredential:
    token: Optional[str]


Credential = Union[BearerCredential, SessionCredential]


@dataclass
class AuthContext:
    user_id: str
    mode: AuthMode
    session_token: Optional[str] = None


@dataclass
class IssuedCredentials:
    """What a successful login or rotation hands back to the caller.

    Mobile logins carry ``jwt`` and ``refresh_token``; web logins carry only
    ``session_token``, which the API layer moves into a cookie.
    """

    auth: AuthRecord
    platform: Platform
    jwt: Optional[str] = None
    refresh_token: Optional[str] = None
    session_token: Optional[str] = None
    created: bool = False


class AuthService:
    """OTP login, credential issuance, rotation, logout and request authentication."""

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        otp: Optional[OTPService] = None,
    ) -> None:
        self.store: AuthStore = store
        self.settings = settings
        self.otp = otp or OTPService(store, settings)  # type: ignore[arg-type]
        self.logger = logger

    # login
    def login_with_otp(
        self,
        phone: str,
        code: str,
        platform: Platform,
        *,
        device_info: Optional[str] = None,
    ) -> IssuedCredentials:
        self.otp.verify_otp(phone, code)
        auth, created = self.store.get_or_create_auth(phone)
        if created:
            self.logger.info("auth_identity_created", auth_id=auth.id, phone=phone)
        return self.issue_credentials(auth, platform, device_info=device_info, created=created)

    def issue_credentials(
        self,
        auth: AuthRecord,
        platform: Platform,
        *,
        device_info: Optional[str] = None,
        created: bool = False,
    ) -> IssuedCredentials:
        platform = Platform(platform)
        if platform == Platform.MOBILE:
            refresh_token = auth_utils.generate_token()
            self.store.create_token(
                auth.id,
                TokenType.REFRESH,
                refresh_token,
                auth_utils.days_from_now(self.settings.refresh_token_expiry_days),
                device_info=device_info,
            )
            self.logger.info("credentials_issued", auth_id=auth.id, platform=platform.value)
            return IssuedCredentials(
                auth=auth,
                platform=platform,
                jwt=self.issue_jwt(auth.id),
                refresh_token=refresh_token,
                created=created,
            )

        session_token = auth_utils.generate_token()
        self.store.create_token(
            auth.id,
            TokenType.SESSION,
            session_token,
            auth_utils.days_from_now(self.settings.session_expiry_days),
            device_info=device_info,
        )
        self.logger.info("credentials_issued", auth_id=auth.id, platform=platform.value)
        return IssuedCredentials(
            auth=auth, platform=platform, session_token=session_token, created=created
        )

    # rotation and revocation
    def rotate_refresh_token(self, refresh_token: str) -> IssuedCredentials:
        """Swap a refresh token for a new one and mint a fresh bearer credential.

        The old string stops working the moment the swap commits; a second
        caller racing with the same string gets ``AuthenticationError``.
        """
        now = auth_utils.now()
        record = self.store.get_token(refresh_token)
        if record is None or not record.is_active(TokenType.REFRESH, now):
            raise AuthenticationError("Invalid or expired refresh token")
        auth = self.store.get_auth(record.auth_id)
        if auth is None:
            raise AuthenticationError("User not found")
        rotated = self.store.rotate_token(
            refresh_token,
            auth_utils.generate_token(),
            auth_utils.days_from_now(self.settings.refresh_token_expiry_days),
            now=now,
        )
        if rotated is None:
            raise AuthenticationError("Invalid or expired refresh token")
        self.logger.info("refresh_rotated", auth_id=auth.id)
        return IssuedCredentials(
            auth=auth,
            platform=Platform.MOBILE,
            jwt=self.issue_jwt(auth.id),
            refresh_token=rotated.token,
        )

    def logout(
        self,
        refresh_token: Optional[str] = None,
        session_token: Optional[str] = None,
    ) -> bool:
        """Revoke the presented refresh token, or the session when none is given.

        Returns whether a row was revoked. Callers answer the same way either
        way so token validity never leaks.
        """
        now = auth_utils.now()
        if refresh_token:
            revoked = self.store.revoke_token(refresh_token, TokenType.REFRESH, now=now)
            kind = TokenType.REFRESH.value
        elif session_token:
            revoked = self.store.revoke_token(session_token, TokenType.SESSION, now=now)
            kind = TokenType.SESSION.value
        else:
            return False
        self.logger.info("logout", kind=kind, revoked=revoked)
        return revoked

    # request authentication
    def extract_credential(
        self, authorization: Optional[str], session_cookie: Optional[str]
    ) -> Credential:
        """Pick exactly one mode: bearer when the header says so, otherwise cookie."""
        if authorization and authorization.lower().startswith("bearer "):
            return BearerCredential(authorization.split(" ", 1)[1].strip())
        return SessionCredential(session_cookie or None)

    def authenticate(self, credential: Credential) -> AuthContext:
        if isinstance(credential, BearerCredential):
            payload = self._decode_jwt(credential.token)
            subject = payload.get("sub") if payload else None
            if not subject:
                raise AuthenticationError("Invalid or expired token")
            ctx = AuthContext(user_id=str(subject), mode=AuthMode.BEARER)
        else:
            if not credential.token:
                raise AuthenticationError("No session found")
            owner = self._active_token_owner(credential.token, TokenType.SESSION)
            if owner is None:
                raise AuthenticationError("Invalid or expired session")
            ctx = AuthContext(
                user_id=owner, mode=AuthMode.SESSION, session_token=credential.token
            )

        if self.store.get_profile(ctx.user_id) is None:
            raise ProfileIncompleteError(
                "Profile required", detail={"user_id": ctx.user_id}
            )
        return ctx

    def touch_session(self, session_token: str) -> None:
        """Background task body refreshing a session's last_used_at."""
        try:
            self.store.touch_token(session_token, now=auth_utils.now())
        except Exception as exc:
            self.logger.warning(
                "session_touch_failed", error_type=type(exc).__name__, error=str(exc)
            )

    # profiles
    def resolve_token_owner(
        self,
        refresh_token: Optional[str] = None,
        session_token: Optional[str] = None,
    ) -> Optional[str]:
        """Identity id proven by possession of a refresh token or session cookie.

        A supplied refresh token wins; the cookie is only consulted when the body
        carries none.
        """
        if refresh_token:
            return self._active_token_owner(refresh_token, TokenType.REFRESH)
        if session_token:
            return self._active_token_owner(session_token, TokenType.SESSION)
        return None

    def create_profile(
        self,
        auth_id: str,
        *,
        name: str,
        gender: Gender,
        birth_year: int,
        email: Optional[str] = None,
    ) -> Profile:
        if self.store.get_profile(auth_id) is not None:
            raise ConflictError("Profile already exists")
        try:
            profile = self.store.create_profile(
                auth_id, name=name, gender=gender, birth_year=birth_year, email=email
            )
        except ConstraintViolation as exc:
            if exc.field == "email":
                raise ConflictError("Email already in use", detail={"field": "email"})
            raise ConflictError("Profile already exists")
        self.logger.info("profile_created", auth_id=auth_id)
        return profile

    def get_profile(self, auth_id: str) -> Optional[Profile]:
        return self.store.get_profile(auth_id)

    def _active_token_owner(self, token: str, token_type: TokenType) -> Optional[str]:
        record = self.store.get_token(token)
        if record is None or not record.is_active(token_type, auth_utils.now()):
            return None
        return record.auth_id

    # jwt
    def issue_jwt(self, subject: str) -> str:
        issued_at = int(time.time())
        return self._encode_jwt(
            {
                "sub": subject,
                "iat": issued_at,
                "exp": issued_at + self.settings.jwt_expiry_minutes * 60,
            }
        )

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        secret = (self.settings.jwt_secret or "").encode()
        return self._encode_segment(
            hmac.new(secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # reject anything but HS256 so "alg": "none" can't slip through
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            self.logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            self.logger.warning("jwt_invalid_algorithm")
            return None

        # header values arrive latin-1 decoded; compare as bytes
        expected = self._sign(f"{header_b64}.{payload_b64}").encode()
        if not hmac.compare_digest(expected, sig_b64.encode("utf-8", "surrogateescape")):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            self.logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= time.time():
            return None
        return payload
