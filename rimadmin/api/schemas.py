from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

MAX_TOKEN_LENGTH = 4096


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize and strip zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in cleaned if c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


_USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9_.-]+$")


def _validate_username(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = _normalize_unicode(value.strip())
    if len(value) < 3:
        raise ValueError("username must be at least 3 characters")
    if len(value) > 64:
        raise ValueError("username must be at most 64 characters")
    if not _USERNAME_PATTERN.match(value):
        raise ValueError(
            "username must contain only letters, digits, dots, underscores, and hyphens"
        )
    return value


def _validate_password_strength(value: str) -> str:
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    return value


class CamelModel(BaseModel):
    """Accepts and emits camelCase field names while keeping snake_case attributes."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class LoginRequest(CamelModel):
    email: str
    password: str = Field(..., min_length=1, max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class UserSummary(CamelModel):
    id: str
    email: str
    name: str
    role: str


class LoginResponse(CamelModel):
    status: Literal["MFA_SETUP_REQUIRED", "MFA_REQUIRED"]
    session_token: Optional[str] = None
    temporary_hash: Optional[str] = None
    expires_at: datetime
    user: UserSummary


class SetupStartRequest(CamelModel):
    session_token: str = Field(..., min_length=1, max_length=256)


class SetupStartResponse(CamelModel):
    otpauth_url: str
    manual_key: str
    qr_code_data_url: str
    backup_codes: List[str]


class SetupVerifyRequest(CamelModel):
    session_token: str = Field(..., min_length=1, max_length=256)
    code: str = Field(..., min_length=1, max_length=16)


class MfaVerifyRequest(CamelModel):
    temporary_hash: str = Field(..., min_length=1, max_length=256)
    code: str = Field(..., min_length=1, max_length=16)


class LegacyMfaVerifyRequest(CamelModel):
    code: str = Field(..., min_length=1, max_length=16)


class BackupCodeConsumeRequest(CamelModel):
    temporary_hash: str = Field(..., min_length=1, max_length=256)
    code: str = Field(..., min_length=1, max_length=64)


class BackupCodesResponse(CamelModel):
    codes: List[str]


class TokenPairResponse(CamelModel):
    token: str
    refresh_token: str
    expires_in: str


class TokenRefreshRequest(CamelModel):
    refresh_token: str = Field(..., min_length=1, max_length=MAX_TOKEN_LENGTH)


class ForgotPasswordRequest(CamelModel):
    email: str
    code: str = Field(default="", max_length=16)

    @field_validator("email")
    @classmethod
    def _validate_forgot_email(cls, value: str) -> str:
        return _validate_email(value)


class ResetTokenVerifyResponse(CamelModel):
    valid: bool
    message: Optional[str] = None


class ResetPasswordRequest(CamelModel):
    token: str = Field(..., min_length=1, max_length=256)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class OkResponse(CamelModel):
    ok: bool = True


class ProfileResponse(CamelModel):
    id: str
    username: str
    email: str
    role: str
    role_id: Optional[str] = None
    status: str
    last_login: Optional[datetime] = None
    two_factor_enabled: bool
    created_at: datetime
    created_by: Optional[str] = None


class ProfileUpdateRequest(CamelModel):
    username: Optional[str] = None
    email: Optional[str] = None
    current_password: Optional[str] = Field(default=None, max_length=128)
    new_password: Optional[str] = None

    @field_validator("username")
    @classmethod
    def _validate_profile_username(cls, value: Optional[str]) -> Optional[str]:
        return _validate_username(value)

    @field_validator("email")
    @classmethod
    def _validate_profile_email(cls, value: Optional[str]) -> Optional[str]:
        return _validate_email(value) if value is not None else None

    @field_validator("new_password")
    @classmethod
    def _validate_profile_password(cls, value: Optional[str]) -> Optional[str]:
        return _validate_password_strength(value) if value is not None else None
