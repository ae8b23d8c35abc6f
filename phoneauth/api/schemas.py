from __future__ import annotations

import re
import unicodedata
from datetime import datetime, timezone
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from phoneauth.logging import get_correlation_id
from phoneauth.service.auth import Platform
from phoneauth.service.auth_utils import TOKEN_LENGTH
from phoneauth.storage.models import Gender, Profile

PHONE_PATTERN = r"^01[1-9][0-9]{8}$"
OTP_CODE_PATTERN = r"^[0-9]{6}$"
MIN_BIRTH_YEAR = 1900
MAX_DEVICE_INFO_LENGTH = 512

_ERROR_CODES = {
    "validation_error",
    "unauthorized",
    "profile_required",
    "conflict",
    "not_found",
    "rate_limited",
    "unavailable",
    "server_error",
}


class ErrorBody(BaseModel):
    """Error half of the envelope; ``code`` is one of the stable error codes."""

    code: str
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _ERROR_CODES:
            raise ValueError(f"unknown error code {value!r}")
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: get_correlation_id() or str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = unicodedata.normalize("NFKC", value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


class _RequestModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)


class OTPRequest(_RequestModel):
    phone: str = Field(..., pattern=PHONE_PATTERN)


class OTPVerifyRequest(_RequestModel):
    phone: str = Field(..., pattern=PHONE_PATTERN)
    code: str = Field(..., pattern=OTP_CODE_PATTERN)
    device_info: Optional[str] = Field(
        None, alias="deviceInfo", max_length=MAX_DEVICE_INFO_LENGTH
    )
    platform: Platform


class RefreshTokenRequest(_RequestModel):
    refresh_token: str = Field(
        ..., alias="refreshToken", min_length=TOKEN_LENGTH, max_length=TOKEN_LENGTH
    )


class LogoutRequest(_RequestModel):
    refresh_token: Optional[str] = Field(
        None, alias="refreshToken", min_length=TOKEN_LENGTH, max_length=TOKEN_LENGTH
    )


class ProfileCreateRequest(_RequestModel):
    name: str = Field(..., min_length=1, max_length=255)
    gender: Gender
    birth_year: int = Field(..., alias="birthYear", ge=MIN_BIRTH_YEAR)
    email: Optional[str] = None
    refresh_token: Optional[str] = Field(
        None, alias="refreshToken", min_length=TOKEN_LENGTH, max_length=TOKEN_LENGTH
    )

    @field_validator("birth_year")
    @classmethod
    def _not_in_future(cls, value: int) -> int:
        if value > datetime.now(timezone.utc).year:
            raise ValueError("birth year cannot be in the future")
        return value

    @field_validator("email")
    @classmethod
    def _validate_profile_email(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return _validate_email(value)


class MessageResponse(BaseModel):
    message: str


class TokenPairResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    jwt: str
    refresh_token: str = Field(..., alias="refreshToken")


class ProfileResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    name: str
    gender: Gender
    birth_year: int = Field(..., alias="birthYear")
    email: Optional[str] = None
    created_at: datetime = Field(..., alias="createdAt")
    updated_at: datetime = Field(..., alias="updatedAt")

    @classmethod
    def from_profile(cls, profile: Profile) -> "ProfileResponse":
        return cls(
            id=profile.id,
            name=profile.name,
            gender=profile.gender,
            birth_year=profile.birth_year,
            email=profile.email,
            created_at=profile.created_at,
            updated_at=profile.updated_at,
        )


class HealthResponse(BaseModel):
    status: str
    checks: dict[str, Any] = Field(default_factory=dict)
