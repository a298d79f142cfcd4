from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each class carries an HTTP ``status_code``, a coarse ``error_code`` used in
    the response envelope and, for auth-domain errors, a fine-grained ``kind``
    that clients can switch on. The kind is echoed in ``detail["kind"]``.

    Coarse codes:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - rate_limited (429)
    - validation_error (400)
    - conflict (409)
    - server_error (500)
    - service_unavailable (503)
    """

    status_code: int = 400
    error_code: str = "validation_error"
    kind: Optional[str] = None
    default_message: str = "request failed"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        message = message or self.default_message
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = dict(detail or {})
        if self.kind and "kind" not in self.detail:
            self.detail["kind"] = self.kind


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"
    default_message = "authentication required"


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"
    default_message = "forbidden"


class NotFoundError(ServiceError):
    status_code = 404
    error_code = "not_found"
    default_message = "not found"


class ConflictError(ServiceError):
    status_code = 409
    error_code = "conflict"
    default_message = "conflict"


class RateLimitedError(ServiceError):
    status_code = 429
    error_code = "rate_limited"
    kind = "rate_limited"
    default_message = "too many requests, try again later"


# Account lifecycle


class EmailAlreadyRegistered(ConflictError):
    kind = "email_already_registered"
    default_message = "email already registered"


class UserNotFound(NotFoundError):
    kind = "user_not_found"
    default_message = "user not found"


class InvalidOrExpiredOtp(ValidationError):
    kind = "invalid_or_expired_otp"
    default_message = "invalid or expired OTP"


class AlreadyVerified(ConflictError):
    kind = "already_verified"
    default_message = "already verified"


class NotVerified(ForbiddenError):
    kind = "not_verified"
    default_message = "email and phone must be verified"


class InvalidPassword(AuthenticationError):
    kind = "invalid_password"
    default_message = "invalid credentials"


# Token and session errors


class NotAuthenticated(AuthenticationError):
    kind = "not_authenticated"
    default_message = "not authenticated"


class NoRefreshToken(AuthenticationError):
    kind = "no_refresh_token"
    default_message = "no refresh token"


class TokenExpired(AuthenticationError):
    kind = "token_expired"
    default_message = "token expired"


class TokenInvalid(AuthenticationError):
    kind = "token_invalid"
    default_message = "invalid token"


class RefreshRevoked(AuthenticationError):
    kind = "refresh_revoked"
    default_message = "refresh token revoked"


# Authorization errors


class NotActive(ForbiddenError):
    kind = "not_active"
    default_message = "account is not active"


class InsufficientRole(ForbiddenError):
    kind = "insufficient_role"
    default_message = "access denied"


class AdminImmutable(ForbiddenError):
    kind = "admin_immutable"
    default_message = "admin accounts cannot be modified"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "EmailAlreadyRegistered",
    "UserNotFound",
    "InvalidOrExpiredOtp",
    "AlreadyVerified",
    "NotVerified",
    "InvalidPassword",
    "NotAuthenticated",
    "NoRefreshToken",
    "TokenExpired",
    "TokenInvalid",
    "RefreshRevoked",
    "NotActive",
    "InsufficientRole",
    "AdminImmutable",
]
