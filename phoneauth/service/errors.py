from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass pins an HTTP ``status_code`` and a stable ``error_code``
    that clients can branch on:
    - validation_error (422, the base default)
    - unauthorized (401)
    - profile_required (409)
    - conflict (409)
    - not_found (404)
    - rate_limited (429)
    - unavailable (503)
    """

    status_code: int = 422
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class AuthenticationError(ServiceError):
    """Credential or OTP missing, invalid, expired or revoked (401)."""
    status_code = 401
    error_code = "unauthorized"


class ProfileIncompleteError(ServiceError):
    """Credential is valid but no profile exists yet (409).

    Kept apart from ``AuthenticationError`` so clients route to profile
    completion instead of back to login.
    """
    status_code = 409
    error_code = "profile_required"


class ConflictError(ServiceError):
    """Duplicate creation, e.g. a second profile for one identity (409)."""
    status_code = 409
    error_code = "conflict"


class NotFoundError(ServiceError):
    status_code = 404
    error_code = "not_found"


class RateLimitedError(ServiceError):
    """OTP requested again inside the cooldown window (429)."""
    status_code = 429
    error_code = "rate_limited"


class ServiceUnavailableError(ServiceError):
    status_code = 503
    error_code = "unavailable"


__all__ = [
    "ServiceError",
    "AuthenticationError",
    "ProfileIncompleteError",
    "ConflictError",
    "NotFoundError",
    "RateLimitedError",
    "ServiceUnavailableError",
]
