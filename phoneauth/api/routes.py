from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Cookie, Depends, Header, Response

from phoneauth.api.schemas import (
    Envelope,
    LogoutRequest,
    MessageResponse,
    OTPRequest,
    OTPVerifyRequest,
    ProfileCreateRequest,
    ProfileResponse,
    RefreshTokenRequest,
    TokenPairResponse,
)
from phoneauth.config import Settings
from phoneauth.logging import get_logger
from phoneauth.service.auth import AuthContext, AuthMode, IssuedCredentials, Platform
from phoneauth.service.errors import AuthenticationError, NotFoundError
from phoneauth.service.otp import deliver_otp
from phoneauth.service.runtime import get_runtime

logger = get_logger(__name__)

router = APIRouter()

SESSION_COOKIE = "session"


def _ok(data) -> Envelope:
    if hasattr(data, "model_dump"):
        data = data.model_dump(mode="json", by_alias=True)
    return Envelope(status="ok", data=data)


def _apply_session_cookie(response: Response, session_token: str, settings: Settings) -> None:
    response.set_cookie(
        SESSION_COOKIE,
        session_token,
        max_age=settings.session_expiry_days * 24 * 60 * 60,
        path="/",
        secure=not settings.is_dev,
        httponly=True,
        samesite="strict",
    )


def _clear_session_cookie(response: Response, settings: Settings) -> None:
    response.delete_cookie(
        SESSION_COOKIE,
        path="/",
        secure=not settings.is_dev,
        httponly=True,
        samesite="strict",
    )


def _token_pair(creds: IssuedCredentials) -> TokenPairResponse:
    return TokenPairResponse(jwt=creds.jwt, refresh_token=creds.refresh_token)


def get_user(
    background_tasks: BackgroundTasks,
    authorization: Optional[str] = Header(None),
    session: Optional[str] = Cookie(None, alias=SESSION_COOKIE),
) -> AuthContext:
    """Authenticate by bearer header, or by session cookie when no bearer is sent."""
    runtime = get_runtime()
    credential = runtime.auth.extract_credential(authorization, session)
    principal = runtime.auth.authenticate(credential)
    if principal.mode == AuthMode.SESSION and principal.session_token:
        background_tasks.add_task(runtime.auth.touch_session, principal.session_token)
    return principal


@router.post("/auth/otp/request", response_model=Envelope, tags=["auth"])
def request_otp(body: OTPRequest, background_tasks: BackgroundTasks):
    runtime = get_runtime()
    record = runtime.otp.request_otp(body.phone)
    background_tasks.add_task(deliver_otp, runtime.sms, body.phone, record.code)
    return _ok(MessageResponse(message="OTP sent"))


@router.post("/auth/otp/verify", response_model=Envelope, tags=["auth"])
def verify_otp(body: OTPVerifyRequest, response: Response):
    """Exchange a valid OTP for credentials.

    Mobile clients get a bearer JWT and a refresh token in the body. Web
    clients get an HttpOnly ``session`` cookie and no secrets in the body.
    """
    runtime = get_runtime()
    creds = runtime.auth.login_with_otp(
        body.phone, body.code, body.platform, device_info=body.device_info
    )
    if creds.platform == Platform.MOBILE:
        return _ok(_token_pair(creds))
    _apply_session_cookie(response, creds.session_token, runtime.settings)
    return _ok(MessageResponse(message="Logged in"))


@router.post("/auth/token/rotate", response_model=Envelope, tags=["auth"])
def rotate_token(body: RefreshTokenRequest):
    runtime = get_runtime()
    creds = runtime.auth.rotate_refresh_token(body.refresh_token)
    return _ok(_token_pair(creds))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
def logout(
    response: Response,
    body: Optional[LogoutRequest] = None,
    session: Optional[str] = Cookie(None, alias=SESSION_COOKIE),
):
    """Revoke the presented refresh token, or the session cookie when none is sent.

    Always answers 200 so the caller learns nothing about token validity.
    """
    runtime = get_runtime()
    refresh_token = body.refresh_token if body else None
    if refresh_token:
        runtime.auth.logout(refresh_token=refresh_token)
    elif session:
        runtime.auth.logout(session_token=session)
        _clear_session_cookie(response, runtime.settings)
    return _ok(MessageResponse(message="Logged out"))


@router.post("/users", response_model=Envelope, status_code=201, tags=["users"])
def create_profile(
    body: ProfileCreateRequest,
    session: Optional[str] = Cookie(None, alias=SESSION_COOKIE),
):
    runtime = get_runtime()
    owner = runtime.auth.resolve_token_owner(
        refresh_token=body.refresh_token,
        session_token=None if body.refresh_token else session,
    )
    if owner is None:
        raise AuthenticationError("Authentication required")
    profile = runtime.auth.create_profile(
        owner,
        name=body.name,
        gender=body.gender,
        birth_year=body.birth_year,
        email=body.email,
    )
    return _ok(ProfileResponse.from_profile(profile))


@router.get("/users/me", response_model=Envelope, tags=["users"])
def get_me(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    profile = runtime.auth.get_profile(principal.user_id)
    if profile is None:
        raise NotFoundError("Profile not found")
    return _ok(ProfileResponse.from_profile(profile))
