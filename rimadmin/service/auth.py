from __future__ import annotations

import asyncio
import hashlib
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, List, Optional, Protocol, Sequence, Type

from argon2 import PasswordHasher, Type as Argon2Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from rimadmin.config import Settings
from rimadmin.logging import get_logger
from rimadmin.service.email import EmailService
from rimadmin.service.errors import (
    AccountInactive,
    BadRequestError,
    ExpiredResetToken,
    InvalidAccountState,
    InvalidBackupCode,
    InvalidCode,
    InvalidCredentials,
    InvalidRefreshToken,
    InvalidResetToken,
    InvalidSession,
    NotFoundError,
    ResetTokenAlreadyUsed,
    SessionAlreadyUsed,
    SessionExpired,
    SessionNotFound,
    TwoFactorRequired,
    Unauthorized,
)
from rimadmin.service.tokens import TokenIssuer
from rimadmin.service.totp import OneTimeCodeEngine
from rimadmin.storage.errors import ConstraintViolation
from rimadmin.storage.models import (
    AdminUser,
    AdminUserStatus,
    BackupCode,
    PendingSession,
    PendingSessionType,
    utcnow,
)

logger = get_logger(__name__)

STATUS_MFA_SETUP_REQUIRED = "MFA_SETUP_REQUIRED"
STATUS_MFA_REQUIRED = "MFA_REQUIRED"

RESET_LINK_INVALID = "Invalid or expired reset link"
RESET_LINK_USED = "Reset link already used"
RESET_LINK_EXPIRED = "Reset link has expired"


class AuthStore(Protocol):
    def create_admin_user(
        self,
        username: str,
        email: str,
        password_hash: str,
        *,
        role: str = "admin",
        role_id: Optional[str] = None,
        status: AdminUserStatus = AdminUserStatus.ACTIVE,
        created_by: Optional[str] = None,
    ) -> AdminUser: ...

    def get_admin_user(self, user_id: str) -> Optional[AdminUser]: ...

    def get_admin_user_by_email(self, email: str) -> Optional[AdminUser]: ...

    def get_admin_user_by_username(self, username: str) -> Optional[AdminUser]: ...

    def get_admin_user_by_reset_token_hash(self, token_hash: str) -> Optional[AdminUser]: ...

    def update_last_login(self, user_id: str, at: Optional[datetime] = None) -> None: ...

    def set_refresh_token(self, user_id: str, refresh_token: Optional[str]) -> None: ...

    def enable_two_factor(self, user_id: str, otp_secret: str) -> AdminUser: ...

    def set_password_reset_token(
        self, user_id: str, token_hash: str, expires_at: datetime
    ) -> None: ...

    def complete_password_reset(
        self, user_id: str, password_hash: str, at: Optional[datetime] = None
    ) -> bool: ...

    def update_admin_profile(
        self,
        user_id: str,
        *,
        username: Optional[str] = None,
        email: Optional[str] = None,
        password_hash: Optional[str] = None,
        password_changed_at: Optional[datetime] = None,
    ) -> AdminUser: ...

    def create_pending_session(self, session: PendingSession) -> PendingSession: ...

    def get_pending_session_by_hash(self, session_hash: str) -> Optional[PendingSession]: ...

    def mark_pending_session_used(self, session_id: str) -> bool: ...

    def record_failed_attempt(self, session_id: str, *, max_attempts: int = 0) -> int: ...

    def set_pending_session_secret(self, session_id: str, secret: str) -> None: ...

    def delete_stale_pending_sessions(
        self, user_id: str, now: Optional[datetime] = None
    ) -> int: ...

    def replace_backup_codes(
        self, user_id: str, code_hashes: Sequence[str]
    ) -> List[BackupCode]: ...

    def list_unused_backup_codes(self, user_id: str) -> List[BackupCode]: ...

    def mark_backup_code_used(self, code_id: str) -> bool: ...


@dataclass
class AuthContext:
    user_id: str
    email: str
    username: str
    role: str
    two_factor_enabled: bool = False
    otp_configured: bool = False


def format_role_name(role: Optional[str]) -> str:
    """Display form of a role key: ``super_admin`` -> ``Super Admin``."""
    if not role:
        return ""
    return " ".join(part.capitalize() for part in role.split("_") if part)


def hash_reset_token(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


def user_summary(user: AdminUser) -> dict[str, str]:
    return {
        "id": user.id,
        "email": user.email,
        "name": user.username,
        "role": format_role_name(user.role),
    }


class AuthService:
    """Admin login ceremony: credentials, pending sessions, second factor, tokens.

    Every session-consuming step goes through a conditional store update, so a
    pending session can complete at most once even when two requests race.
    """

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        totp: Optional[OneTimeCodeEngine] = None,
        tokens: Optional[TokenIssuer] = None,
        email: Optional[EmailService] = None,
    ) -> None:
        self.store: AuthStore = store
        self.settings = settings
        self.totp = totp or OneTimeCodeEngine(settings)
        self.tokens = tokens or TokenIssuer(settings)
        self.email = email or EmailService(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
            frontend_url=settings.frontend_url,
        )
        self._pwd_hasher = PasswordHasher(type=Argon2Type.ID)
        self.logger = logger

    def _now(self) -> datetime:
        return utcnow()

    # passwords
    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def _verify_hash(self, stored_hash: Optional[str], plaintext: str) -> bool:
        if not stored_hash or plaintext is None:
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, plaintext)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    def create_admin(
        self,
        username: str,
        email: str,
        password: str,
        *,
        role: str = "admin",
        role_id: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> AdminUser:
        user = self.store.create_admin_user(
            username,
            email.strip().lower(),
            self.hash_password(password),
            role=role,
            role_id=role_id,
            created_by=created_by,
        )
        self.logger.info("admin_user_created", user_id=user.id, role=role)
        return user

    # credential validation
    def validate_credentials(self, email: str, password: str) -> AdminUser:
        normalized = (email or "").strip().lower()
        user = self.store.get_admin_user_by_email(normalized)
        if not user:
            self.logger.warning("login_user_not_found", email=normalized)
            raise InvalidCredentials()
        if not user.is_active:
            self.logger.warning(
                "login_inactive_account", user_id=user.id, account_status=user.status.value
            )
            raise AccountInactive()
        if not self._verify_hash(user.password_hash, password):
            self.logger.warning("login_invalid_password", user_id=user.id)
            raise InvalidCredentials()

        now = self._now()
        self.store.update_last_login(user.id, now)
        user.last_login = now
        removed = self.store.delete_stale_pending_sessions(user.id, now)
        if removed:
            self.logger.debug("pending_sessions_cleaned", user_id=user.id, removed=removed)
        return user

    # pending sessions
    def create_pending_session(
        self,
        user_id: str,
        session_type: PendingSessionType,
        *,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> PendingSession:
        session = PendingSession.new(
            user_id,
            session_type,
            ttl_minutes=self.settings.pending_session_ttl_minutes,
            ip=ip,
            user_agent=user_agent,
            now=self._now(),
        )
        return self.store.create_pending_session(session)

    async def login(
        self,
        email: str,
        password: str,
        *,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> dict[str, Any]:
        user = self.validate_credentials(email, password)
        if not user.two_factor_enabled:
            session = self.create_pending_session(
                user.id, PendingSessionType.SETUP, ip=ip, user_agent=user_agent
            )
            self.logger.info("login_setup_session_created", user_id=user.id)
            return {
                "status": STATUS_MFA_SETUP_REQUIRED,
                "sessionToken": session.hash,
                "expiresAt": session.expires_at,
                "user": user_summary(user),
            }
        session = self.create_pending_session(
            user.id, PendingSessionType.MFA, ip=ip, user_agent=user_agent
        )
        self.logger.info("login_mfa_session_created", user_id=user.id)
        return {
            "status": STATUS_MFA_REQUIRED,
            "temporaryHash": session.hash,
            "expiresAt": session.expires_at,
            "user": user_summary(user),
        }

    def _load_session(
        self, session_hash: Optional[str], expected_type: PendingSessionType
    ) -> PendingSession:
        """Run the shared session checks in order: found, unused, unexpired, type."""
        session = (
            self.store.get_pending_session_by_hash(session_hash) if session_hash else None
        )
        if not session:
            self.logger.warning("pending_session_not_found", expected_type=expected_type.value)
            raise SessionNotFound()
        if session.used:
            self.logger.warning("pending_session_already_used", session_id=session.id)
            raise SessionAlreadyUsed()
        if session.is_expired(self._now()):
            self.store.mark_pending_session_used(session.id)
            self.logger.warning("pending_session_expired", session_id=session.id)
            raise SessionExpired()
        if session.type != expected_type:
            self.logger.warning(
                "pending_session_wrong_type",
                session_id=session.id,
                session_type=session.type.value,
                expected_type=expected_type.value,
            )
            raise InvalidSession()
        return session

    def _consume(self, session: PendingSession) -> None:
        if not self.store.mark_pending_session_used(session.id):
            self.logger.warning("pending_session_consume_lost", session_id=session.id)
            raise SessionAlreadyUsed()

    def _fail_attempt(
        self, session: PendingSession, error_cls: Type[InvalidCode] = InvalidCode
    ) -> None:
        attempts = self.store.record_failed_attempt(
            session.id, max_attempts=self.settings.mfa_max_attempts
        )
        cap = self.settings.mfa_max_attempts
        self.logger.warning(
            "pending_session_code_rejected",
            session_id=session.id,
            session_type=session.type.value,
            attempts=attempts,
            locked=bool(cap and attempts >= cap),
        )
        raise error_cls()

    def _reject_account_state(self, session: PendingSession, reason: str) -> None:
        self.store.mark_pending_session_used(session.id)
        self.logger.warning(
            "pending_session_account_state_invalid",
            session_id=session.id,
            user_id=session.admin_user_id,
            check=reason,
        )
        raise InvalidAccountState()

    async def verify_mfa(self, temporary_hash: str, code: str) -> dict[str, str]:
        session = self._load_session(temporary_hash, PendingSessionType.MFA)
        user = self.store.get_admin_user(session.admin_user_id)
        if not user:
            self._reject_account_state(session, "user_missing")
        if not user.has_two_factor:
            self._reject_account_state(session, "two_factor_not_configured")
        if not self.totp.verify(user.otp_secret, code):
            self._fail_attempt(session)
        self._consume(session)
        self.logger.info("mfa_login_completed", user_id=user.id)
        return self.issue_tokens(user)

    # enrollment
    def _mint_backup_codes(self, user_id: str) -> List[str]:
        codes = [secrets.token_hex(8) for _ in range(self.settings.backup_code_count)]
        self.store.replace_backup_codes(user_id, [self.hash_password(c) for c in codes])
        self.logger.info("backup_codes_minted", user_id=user_id, count=len(codes))
        return codes

    async def start_two_factor_setup(self, session_token: str) -> dict[str, Any]:
        session = self._load_session(session_token, PendingSessionType.SETUP)
        user = self.store.get_admin_user(session.admin_user_id)
        if not user:
            self._reject_account_state(session, "user_missing")
        secret = self.totp.generate_secret()
        self.store.set_pending_session_secret(session.id, secret)
        otpauth_url = self.totp.provisioning_uri(secret, user.email)
        qr_code = await asyncio.to_thread(self.totp.qr_code_data_url, otpauth_url)
        backup_codes = self._mint_backup_codes(user.id)
        self.logger.info("two_factor_setup_started", user_id=user.id, session_id=session.id)
        return {
            "otpauthUrl": otpauth_url,
            "manualKey": secret,
            "qrCodeDataUrl": qr_code,
            "backupCodes": backup_codes,
        }

    async def verify_two_factor_setup(self, session_token: str, code: str) -> dict[str, str]:
        session = self._load_session(session_token, PendingSessionType.SETUP)
        if not session.secret:
            self.logger.warning("setup_session_missing_secret", session_id=session.id)
            raise InvalidSession()
        if not self.totp.verify(session.secret, code):
            self._fail_attempt(session)
        user = self.store.get_admin_user(session.admin_user_id)
        if not user:
            self._reject_account_state(session, "user_missing")
        self._consume(session)
        user = self.store.enable_two_factor(user.id, session.secret)
        # Codes shown at setup start belong to this enrollment; only mint when none survive
        if not self.store.list_unused_backup_codes(user.id):
            self._mint_backup_codes(user.id)
        self.logger.info("two_factor_enabled", user_id=user.id)
        return self.issue_tokens(user)

    # backup codes
    async def consume_backup_code(self, temporary_hash: str, code: str) -> dict[str, str]:
        session = self._load_session(temporary_hash, PendingSessionType.MFA)
        user = self.store.get_admin_user(session.admin_user_id)
        if not user:
            self._reject_account_state(session, "user_missing")
        if not user.two_factor_enabled:
            self._reject_account_state(session, "two_factor_not_enabled")
        submitted = (code or "").strip()
        matched: Optional[BackupCode] = None
        if submitted:
            for candidate in self.store.list_unused_backup_codes(user.id):
                if self._verify_hash(candidate.code_hash, submitted):
                    if self.store.mark_backup_code_used(candidate.id):
                        matched = candidate
                    break
        if not matched:
            self._fail_attempt(session, InvalidBackupCode)
        self._consume(session)
        self.logger.info("backup_code_login_completed", user_id=user.id, code_id=matched.id)
        return self.issue_tokens(user)

    async def regenerate_backup_codes(self, admin_user_id: str) -> dict[str, List[str]]:
        user = self.store.get_admin_user(admin_user_id)
        if not user or not user.is_active:
            raise Unauthorized()
        return {"codes": self._mint_backup_codes(user.id)}

    # tokens
    def issue_tokens(self, user: AdminUser) -> dict[str, str]:
        pair = self.tokens.issue(user, now=self._now())
        self.store.set_refresh_token(user.id, pair["refreshToken"])
        return pair

    async def refresh(self, refresh_token: str) -> dict[str, str]:
        payload = self.tokens.verify_refresh(refresh_token) if refresh_token else None
        if not payload:
            self.logger.warning("refresh_token_rejected", check="signature_or_claims")
            raise InvalidRefreshToken()
        user = self.store.get_admin_user(str(payload.get("sub")))
        if not user:
            self.logger.warning("refresh_token_rejected", check="user_missing")
            raise InvalidRefreshToken()
        if not user.is_active:
            self.logger.warning("refresh_token_rejected", check="inactive", user_id=user.id)
            raise InvalidRefreshToken()
        if not user.refresh_token or not secrets.compare_digest(
            user.refresh_token.encode(), refresh_token.encode()
        ):
            self.logger.warning("refresh_token_rejected", check="not_current", user_id=user.id)
            raise InvalidRefreshToken()
        return self.issue_tokens(user)

    @staticmethod
    def _extract_bearer(header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        if not header.lower().startswith("bearer "):
            return None
        return header.split(" ", 1)[1].strip() or None

    async def authenticate(self, authorization: Optional[str]) -> AuthContext:
        token = self._extract_bearer(authorization)
        payload = self.tokens.verify_access(token) if token else None
        if not payload:
            raise Unauthorized()
        user = self.store.get_admin_user(str(payload.get("sub")))
        if not user or not user.is_active:
            self.logger.warning("access_token_subject_rejected", user_id=payload.get("sub"))
            raise Unauthorized()
        return AuthContext(
            user_id=user.id,
            email=user.email,
            username=user.username,
            role=user.role,
            two_factor_enabled=user.two_factor_enabled,
            otp_configured=bool(user.otp_secret),
        )

    @staticmethod
    def require_two_factor(ctx: AuthContext) -> AuthContext:
        if not (ctx.two_factor_enabled and ctx.otp_configured):
            raise TwoFactorRequired()
        return ctx

    def current_user(self, user_id: str) -> dict[str, str]:
        user = self.store.get_admin_user(user_id)
        if not user:
            raise NotFoundError("User not found")
        return user_summary(user)

    # password reset
    async def request_password_reset(
        self, email: str, code: str, *, ip: Optional[str] = None
    ) -> dict[str, bool]:
        """Always reports success; the real outcome is only logged."""
        normalized = (email or "").strip().lower()
        user = self.store.get_admin_user_by_email(normalized)
        if not user or not user.is_active:
            self.logger.warning(
                "password_reset_request_failed",
                email=normalized,
                reason="user_not_found_or_inactive",
                ip=ip or "unknown",
            )
            return {"ok": True}
        if user.two_factor_enabled:
            if not user.otp_secret:
                self.logger.warning(
                    "password_reset_request_failed",
                    user_id=user.id,
                    reason="no_otp_secret",
                    ip=ip or "unknown",
                )
                return {"ok": True}
            if not self.totp.verify(user.otp_secret, code):
                self.logger.warning(
                    "password_reset_request_failed",
                    user_id=user.id,
                    reason="invalid_2fa_code",
                    ip=ip or "unknown",
                )
                return {"ok": True}

        token = secrets.token_hex(32)
        expires_at = self._now() + timedelta(minutes=self.settings.password_reset_ttl_minutes)
        self.store.set_password_reset_token(user.id, hash_reset_token(token), expires_at)
        try:
            sent = await asyncio.to_thread(
                self.email.send_password_reset, user.email, token, expires_at
            )
        except Exception as exc:
            self.logger.error(
                "password_reset_email_failed", user_id=user.id, error=str(exc)
            )
            return {"ok": True}
        if sent:
            self.logger.info(
                "password_reset_request_succeeded", user_id=user.id, ip=ip or "unknown"
            )
        else:
            self.logger.error("password_reset_email_failed", user_id=user.id)
        return {"ok": True}

    def _reset_token_state(self, token: str) -> tuple[Optional[AdminUser], Optional[str]]:
        """Return the token owner and the failed check, if any."""
        user = self.store.get_admin_user_by_reset_token_hash(hash_reset_token(token)) if token else None
        if not user:
            return None, "invalid"
        if user.password_reset_token_used_at is not None:
            return user, "used"
        expires_at = user.password_reset_token_expires_at
        if not expires_at or expires_at <= self._now():
            return user, "expired"
        return user, None

    async def verify_reset_token(self, token: str) -> dict[str, Any]:
        _, problem = self._reset_token_state(token)
        if problem == "invalid":
            return {"valid": False, "message": RESET_LINK_INVALID}
        if problem == "used":
            return {"valid": False, "message": RESET_LINK_USED}
        if problem == "expired":
            return {"valid": False, "message": RESET_LINK_EXPIRED}
        return {"valid": True}

    async def reset_password(
        self, token: str, new_password: str, *, ip: Optional[str] = None
    ) -> dict[str, bool]:
        user, problem = self._reset_token_state(token)
        if problem == "invalid":
            raise InvalidResetToken()
        if problem == "used":
            raise ResetTokenAlreadyUsed()
        if problem == "expired":
            raise ExpiredResetToken()
        if not self.store.complete_password_reset(
            user.id, self.hash_password(new_password), self._now()
        ):
            raise ResetTokenAlreadyUsed()
        self.logger.info("password_reset_completed", user_id=user.id, ip=ip or "unknown")
        return {"ok": True}

    # profile
    @staticmethod
    def _profile(user: AdminUser) -> dict[str, Any]:
        return {
            "id": user.id,
            "username": user.username,
            "email": user.email,
            "role": format_role_name(user.role),
            "roleId": user.role_id,
            "status": user.status.value,
            "lastLogin": user.last_login,
            "twoFactorEnabled": user.two_factor_enabled,
            "createdAt": user.created_at,
            "createdBy": user.created_by,
        }

    async def get_profile(self, user_id: str) -> dict[str, Any]:
        user = self.store.get_admin_user(user_id)
        if not user:
            raise NotFoundError("User not found")
        return self._profile(user)

    async def update_profile(
        self,
        user_id: str,
        *,
        username: Optional[str] = None,
        email: Optional[str] = None,
        current_password: Optional[str] = None,
        new_password: Optional[str] = None,
    ) -> dict[str, Any]:
        user = self.store.get_admin_user(user_id)
        if not user:
            raise NotFoundError("User not found")

        password_hash = None
        if new_password:
            if not current_password:
                raise BadRequestError("Current password is required to change password")
            if not self._verify_hash(user.password_hash, current_password):
                self.logger.warning("profile_password_change_rejected", user_id=user_id)
                raise BadRequestError("Current password is incorrect")
            password_hash = self.hash_password(new_password)

        new_username = username if username is not None and username != user.username else None
        if new_username is not None:
            existing = self.store.get_admin_user_by_username(new_username)
            if existing and existing.id != user_id:
                raise BadRequestError("Username is already taken")

        new_email = None
        if email is not None:
            normalized = email.strip().lower()
            if normalized != user.email:
                existing = self.store.get_admin_user_by_email(normalized)
                if existing and existing.id != user_id:
                    raise BadRequestError("Email is already taken")
                new_email = normalized

        try:
            updated = self.store.update_admin_profile(
                user_id,
                username=new_username,
                email=new_email,
                password_hash=password_hash,
                password_changed_at=self._now() if password_hash else None,
            )
        except ConstraintViolation as exc:
            field = exc.detail.get("field")
            if field == "username":
                raise BadRequestError("Username is already taken") from exc
            if field == "email":
                raise BadRequestError("Email is already taken") from exc
            raise
        self.logger.info(
            "profile_updated",
            user_id=user_id,
            username_changed=new_username is not None,
            email_changed=new_email is not None,
            password_changed=password_hash is not None,
        )
        return self._profile(updated)
