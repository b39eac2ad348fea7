from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines an HTTP ``status_code`` and a stable
    ``error_code`` used in the response envelope:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - rate_limited (429)
    - validation_error (400)
    - conflict (409)
    - server_error (500)

    Auth failures additionally carry a ``reason`` that names the exact
    condition and is surfaced as ``error.details.reason``.
    """

    status_code: int = 400
    error_code: str = "validation_error"
    default_message: str = "bad request"
    reason: Optional[str] = None

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
        if self.reason and "reason" not in self.detail:
            self.detail["reason"] = self.reason


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class BadRequestError(ValidationError):
    """Alias for ValidationError - request is malformed or invalid."""
    pass


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"
    default_message = "unauthorized"


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"
    default_message = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"
    default_message = "not found"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"
    default_message = "rate limit exceeded"


# Credential validation


class InvalidCredentials(AuthenticationError):
    default_message = "Invalid credentials"
    reason = "invalid_credentials"


class AccountInactive(AuthenticationError):
    default_message = "Account is not active"
    reason = "account_inactive"


# Pending sessions


class SessionNotFound(AuthenticationError):
    default_message = "Session not found"
    reason = "session_not_found"


class SessionAlreadyUsed(AuthenticationError):
    default_message = "Session already used"
    reason = "session_already_used"


class SessionExpired(AuthenticationError):
    default_message = "Session expired"
    reason = "session_expired"


class InvalidSession(ValidationError):
    """Session exists but is the wrong type or lacks a setup secret."""
    default_message = "Invalid session"
    reason = "invalid_session"


class InvalidAccountState(AuthenticationError):
    default_message = "Invalid account state"
    reason = "invalid_account_state"


# One-time codes


class InvalidCode(AuthenticationError):
    default_message = "Invalid code"
    reason = "invalid_code"


class InvalidBackupCode(InvalidCode):
    default_message = "Invalid backup code"
    reason = "invalid_backup_code"


# Tokens


class InvalidRefreshToken(AuthenticationError):
    default_message = "Invalid refresh token"
    reason = "invalid_refresh_token"


class Unauthorized(AuthenticationError):
    """Bearer token missing, malformed, expired or not bound to an active admin."""
    default_message = "Unauthorized"
    reason = "unauthorized"


class TwoFactorRequired(ForbiddenError):
    default_message = "Two-factor authentication required"
    reason = "two_factor_required"


# Password reset


class InvalidResetToken(ValidationError):
    default_message = "Invalid reset token"
    reason = "invalid_reset_token"


class ExpiredResetToken(ValidationError):
    default_message = "Reset token expired"
    reason = "expired_reset_token"


class ResetTokenAlreadyUsed(ValidationError):
    default_message = "Reset token already used"
    reason = "reset_token_already_used"


__all__ = [
    "ServiceError",
    "ValidationError",
    "BadRequestError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "RateLimitedError",
    "InvalidCredentials",
    "AccountInactive",
    "SessionNotFound",
    "SessionAlreadyUsed",
    "SessionExpired",
    "InvalidSession",
    "InvalidAccountState",
    "InvalidCode",
    "InvalidBackupCode",
    "InvalidRefreshToken",
    "Unauthorized",
    "TwoFactorRequired",
    "InvalidResetToken",
    "ExpiredResetToken",
    "ResetTokenAlreadyUsed",
]
