"""Unit tests for credential issuance, rotation, logout and the request gate."""

import time
from datetime import timedelta

import pytest

from phoneauth.service import auth_utils
from phoneauth.service.auth import (
    AuthMode,
    BearerCredential,
    Platform,
    SessionCredential,
)
from phoneauth.service.errors import (
    AuthenticationError,
    ConflictError,
    ProfileIncompleteError,
)
from phoneauth.storage.models import Gender, TokenType

PHONE = "01712345678"


def _login(auth_service, otp_service, platform=Platform.MOBILE, phone=PHONE, device_info=None):
    record = otp_service.request_otp(phone)
    return auth_service.login_with_otp(phone, record.code, platform, device_info=device_info)


def _with_profile(memory_store, auth_id):
    memory_store.create_profile(auth_id, name="Karim", gender=Gender.MALE, birth_year=1992)


class TestLogin:
    def test_mobile_login_issues_jwt_and_refresh_token(self, auth_service, otp_service, memory_store):
        creds = _login(auth_service, otp_service, device_info="iPhone 15")
        assert creds.platform == Platform.MOBILE
        assert creds.jwt and creds.jwt.count(".") == 2
        assert len(creds.refresh_token) == auth_utils.TOKEN_LENGTH
        assert creds.session_token is None
        assert creds.created is True

        stored = memory_store.get_token(creds.refresh_token)
        assert stored.type == TokenType.REFRESH
        assert stored.auth_id == creds.auth.id
        assert stored.device_info == "iPhone 15"
        assert stored.expires_at > auth_utils.days_from_now(29)
        assert memory_store.get_otp(PHONE) is None

    def test_web_login_issues_session_token(self, auth_service, otp_service, memory_store):
        creds = _login(auth_service, otp_service, platform=Platform.WEB)
        assert creds.jwt is None
        assert creds.refresh_token is None
        assert memory_store.get_token(creds.session_token).type == TokenType.SESSION

    def test_repeated_logins_share_one_identity(self, auth_service, otp_service, memory_store):
        first = _login(auth_service, otp_service)
        memory_store.otps.clear()
        second = _login(auth_service, otp_service, platform=Platform.WEB)
        assert first.auth.id == second.auth.id
        assert second.created is False
        assert len(memory_store.auth) == 1
        assert len(memory_store.tokens) == 2

    def test_failed_otp_creates_nothing(self, auth_service, otp_service, memory_store):
        record = otp_service.request_otp(PHONE)
        wrong = "000000" if record.code != "000000" else "111111"
        with pytest.raises(AuthenticationError):
            auth_service.login_with_otp(PHONE, wrong, Platform.MOBILE)
        assert memory_store.auth == {}
        assert memory_store.tokens == {}


class TestJWT:
    def test_round_trip_carries_subject_and_expiry(self, auth_service, settings):
        token = auth_service.issue_jwt("user-1")
        payload = auth_service._decode_jwt(token)
        assert payload["sub"] == "user-1"
        assert payload["exp"] - payload["iat"] == settings.jwt_expiry_minutes * 60

    def test_expired_token_rejected(self, auth_service):
        token = auth_service._encode_jwt({"sub": "user-1", "exp": int(time.time()) - 5})
        assert auth_service._decode_jwt(token) is None

    def test_tampered_signature_rejected(self, auth_service):
        token = auth_service.issue_jwt("user-1")
        header, payload, sig = token.split(".")
        forged = auth_service._encode_segment(b'{"sub":"admin","exp":9999999999}')
        assert auth_service._decode_jwt(f"{header}.{forged}.{sig}") is None

    def test_none_algorithm_rejected(self, auth_service):
        header = auth_service._encode_segment(b'{"alg":"none","typ":"JWT"}')
        payload = auth_service._encode_segment(b'{"sub":"user-1","exp":9999999999}')
        assert auth_service._decode_jwt(f"{header}.{payload}.") is None

    def test_garbage_rejected(self, auth_service):
        assert auth_service._decode_jwt("not-a-jwt") is None
        assert auth_service._decode_jwt("a.b.c") is None

    def test_non_ascii_signature_rejected(self, auth_service):
        header = auth_service._encode_segment(b'{"alg":"HS256","typ":"JWT"}')
        token = f"{header}.e30.\xe9\xe9"
        assert auth_service._decode_jwt(token) is None
        with pytest.raises(AuthenticationError, match="Invalid or expired token"):
            auth_service.authenticate(BearerCredential(token))


class TestRotation:
    def test_rotation_is_single_use(self, auth_service, otp_service, memory_store):
        creds = _login(auth_service, otp_service)
        rotated = auth_service.rotate_refresh_token(creds.refresh_token)
        assert rotated.refresh_token != creds.refresh_token
        assert rotated.jwt
        assert auth_service._decode_jwt(rotated.jwt)["sub"] == creds.auth.id
        assert len(memory_store.tokens) == 1

        with pytest.raises(AuthenticationError):
            auth_service.rotate_refresh_token(creds.refresh_token)

        again = auth_service.rotate_refresh_token(rotated.refresh_token)
        with pytest.raises(AuthenticationError):
            auth_service.rotate_refresh_token(rotated.refresh_token)
        assert again.refresh_token != rotated.refresh_token

    def test_session_token_cannot_be_rotated(self, auth_service, otp_service):
        creds = _login(auth_service, otp_service, platform=Platform.WEB)
        with pytest.raises(AuthenticationError):
            auth_service.rotate_refresh_token(creds.session_token)

    def test_expired_refresh_token_rejected(self, auth_service, otp_service, memory_store):
        creds = _login(auth_service, otp_service)
        memory_store.tokens[creds.refresh_token].expires_at = auth_utils.now() - timedelta(seconds=1)
        with pytest.raises(AuthenticationError, match="Invalid or expired refresh token"):
            auth_service.rotate_refresh_token(creds.refresh_token)

    def test_missing_identity_leaves_token_unrotated(self, auth_service, otp_service, memory_store):
        creds = _login(auth_service, otp_service)
        del memory_store.auth[creds.auth.id]
        with pytest.raises(AuthenticationError, match="User not found"):
            auth_service.rotate_refresh_token(creds.refresh_token)
        remaining = memory_store.get_token(creds.refresh_token)
        assert remaining is not None
        assert remaining.is_active(TokenType.REFRESH, auth_utils.now())


class TestLogout:
    def test_refresh_logout_is_idempotent(self, auth_service, otp_service, memory_store):
        creds = _login(auth_service, otp_service)
        assert auth_service.logout(refresh_token=creds.refresh_token) is True
        revoked_at = memory_store.get_token(creds.refresh_token).revoked_at
        assert revoked_at is not None
        assert auth_service.logout(refresh_token=creds.refresh_token) is False
        assert memory_store.get_token(creds.refresh_token).revoked_at == revoked_at
        with pytest.raises(AuthenticationError):
            auth_service.rotate_refresh_token(creds.refresh_token)

    def test_unknown_token_is_not_an_error(self, auth_service):
        assert auth_service.logout(refresh_token="x" * 24) is False
        assert auth_service.logout() is False

    def test_session_logout(self, auth_service, otp_service, memory_store):
        creds = _login(auth_service, otp_service, platform=Platform.WEB)
        assert auth_service.logout(session_token=creds.session_token) is True
        assert memory_store.get_token(creds.session_token).revoked_at is not None

    def test_refresh_branch_does_not_revoke_sessions(self, auth_service, otp_service, memory_store):
        creds = _login(auth_service, otp_service, platform=Platform.WEB)
        assert auth_service.logout(refresh_token=creds.session_token) is False
        assert memory_store.get_token(creds.session_token).revoked_at is None


class TestGate:
    def test_extract_prefers_bearer_header(self, auth_service):
        assert auth_service.extract_credential("Bearer abc", "cookie") == BearerCredential("abc")
        assert auth_service.extract_credential("bearer abc", None) == BearerCredential("abc")
        assert auth_service.extract_credential("Basic xyz", "cookie") == SessionCredential("cookie")
        assert auth_service.extract_credential(None, None) == SessionCredential(None)

    def test_bearer_with_profile(self, auth_service, otp_service, memory_store):
        creds = _login(auth_service, otp_service)
        _with_profile(memory_store, creds.auth.id)
        ctx = auth_service.authenticate(BearerCredential(creds.jwt))
        assert ctx.user_id == creds.auth.id
        assert ctx.mode == AuthMode.BEARER

    def test_bearer_without_profile_is_profile_incomplete(self, auth_service, otp_service):
        creds = _login(auth_service, otp_service)
        with pytest.raises(ProfileIncompleteError) as exc:
            auth_service.authenticate(BearerCredential(creds.jwt))
        assert exc.value.status_code == 409
        assert exc.value.error_code == "profile_required"

    def test_expired_bearer_rejected(self, auth_service, otp_service, memory_store):
        creds = _login(auth_service, otp_service)
        _with_profile(memory_store, creds.auth.id)
        expired = auth_service._encode_jwt({"sub": creds.auth.id, "exp": int(time.time()) - 1})
        with pytest.raises(AuthenticationError):
            auth_service.authenticate(BearerCredential(expired))

    def test_session_with_profile(self, auth_service, otp_service, memory_store):
        creds = _login(auth_service, otp_service, platform=Platform.WEB)
        _with_profile(memory_store, creds.auth.id)
        ctx = auth_service.authenticate(SessionCredential(creds.session_token))
        assert ctx.mode == AuthMode.SESSION
        assert ctx.session_token == creds.session_token

    def test_revoked_session_rejected(self, auth_service, otp_service, memory_store):
        creds = _login(auth_service, otp_service, platform=Platform.WEB)
        _with_profile(memory_store, creds.auth.id)
        auth_service.logout(session_token=creds.session_token)
        with pytest.raises(AuthenticationError, match="Invalid or expired session"):
            auth_service.authenticate(SessionCredential(creds.session_token))

    def test_missing_session_rejected(self, auth_service):
        with pytest.raises(AuthenticationError, match="No session found"):
            auth_service.authenticate(SessionCredential(None))

    def test_refresh_token_is_not_a_session(self, auth_service, otp_service, memory_store):
        creds = _login(auth_service, otp_service)
        _with_profile(memory_store, creds.auth.id)
        with pytest.raises(AuthenticationError):
            auth_service.authenticate(SessionCredential(creds.refresh_token))

    def test_touch_session_swallows_store_errors(self, auth_service, memory_store, monkeypatch):
        def _boom(*args, **kwargs):
            raise RuntimeError("db down")

        monkeypatch.setattr(memory_store, "touch_token", _boom)
        auth_service.touch_session("x" * 24)


class TestProfiles:
    def test_resolve_owner_by_refresh_or_session(self, auth_service, otp_service, memory_store):
        mobile = _login(auth_service, otp_service)
        memory_store.otps.clear()
        web = _login(auth_service, otp_service, platform=Platform.WEB)
        assert auth_service.resolve_token_owner(refresh_token=mobile.refresh_token) == mobile.auth.id
        assert auth_service.resolve_token_owner(session_token=web.session_token) == web.auth.id
        assert auth_service.resolve_token_owner() is None
        assert auth_service.resolve_token_owner(refresh_token=web.session_token) is None

    def test_resolve_owner_ignores_revoked_tokens(self, auth_service, otp_service):
        creds = _login(auth_service, otp_service)
        auth_service.logout(refresh_token=creds.refresh_token)
        assert auth_service.resolve_token_owner(refresh_token=creds.refresh_token) is None

    def test_create_profile_conflicts(self, auth_service, otp_service, memory_store):
        first = _login(auth_service, otp_service)
        second = _login(auth_service, otp_service, phone="01812345678")
        auth_service.create_profile(
            first.auth.id, name="A", gender=Gender.FEMALE, birth_year=1999, email="a@example.com"
        )
        with pytest.raises(ConflictError, match="Profile already exists"):
            auth_service.create_profile(first.auth.id, name="A", gender=Gender.FEMALE, birth_year=1999)
        with pytest.raises(ConflictError, match="Email already in use"):
            auth_service.create_profile(
                second.auth.id, name="B", gender=Gender.MALE, birth_year=1998, email="a@example.com"
            )
