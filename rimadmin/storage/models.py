from __future__ import annotations

import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AdminUserStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"


class PendingSessionType(str, Enum):
    SETUP = "setup"
    MFA = "mfa"


class PendingSessionState(str, Enum):
    ACTIVE = "active"
    USED = "used"
    EXPIRED = "expired"


@dataclass
class AdminUser:
    id: str
    username: str
    email: str
    password_hash: str
    role: str = "admin"
    role_id: Optional[str] = None
    status: AdminUserStatus = AdminUserStatus.ACTIVE
    two_factor_enabled: bool = False
    otp_secret: Optional[str] = None
    refresh_token: Optional[str] = None
    password_reset_token_hash: Optional[str] = None
    password_reset_token_expires_at: Optional[datetime] = None
    password_reset_token_used_at: Optional[datetime] = None
    last_login: Optional[datetime] = None
    last_password_changed_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    created_by: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status == AdminUserStatus.ACTIVE

    @property
    def has_two_factor(self) -> bool:
        return bool(self.two_factor_enabled and self.otp_secret)


@dataclass
class PendingSession:
    """Short-lived login ceremony bridging password and second-factor checks."""

    id: str
    hash: str
    admin_user_id: str
    type: PendingSessionType
    expires_at: datetime
    used: bool = False
    attempts: int = 0
    secret: Optional[str] = None
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        admin_user_id: str,
        session_type: PendingSessionType,
        *,
        ttl_minutes: int = 10,
        ip: str | None = None,
        user_agent: str | None = None,
        now: datetime | None = None,
    ) -> "PendingSession":
        created = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            # 32 random bytes, hex encoded: unguessable and URL safe
            hash=secrets.token_hex(32),
            admin_user_id=admin_user_id,
            type=PendingSessionType(session_type),
            expires_at=created + timedelta(minutes=ttl_minutes),
            ip=ip,
            user_agent=user_agent,
            created_at=created,
        )

    def is_expired(self, now: datetime | None = None) -> bool:
        return self.expires_at <= (now or utcnow())

    def state(self, now: datetime | None = None) -> PendingSessionState:
        if self.used:
            return PendingSessionState.USED
        if self.is_expired(now):
            return PendingSessionState.EXPIRED
        return PendingSessionState.ACTIVE


@dataclass
class BackupCode:
    id: str
    admin_user_id: str
    code_hash: str
    used: bool = False
    created_at: datetime = field(default_factory=utcnow)
