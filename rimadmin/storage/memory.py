from __future__ import annotations

import base64
import hashlib
import json
import os
import secrets
import threading
import uuid
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from cryptography.fernet import Fernet, InvalidToken

from rimadmin.logging import get_logger
from rimadmin.storage.errors import ConstraintViolation
from rimadmin.storage.models import (
    AdminUser,
    AdminUserStatus,
    BackupCode,
    PendingSession,
    PendingSessionType,
    utcnow,
)


class MemoryStore:
    """Dict-backed admin auth store with a JSON snapshot for restarts.

    Every mutation runs under a single re-entrant lock, which is what makes the
    "one unused pending session per admin and type" rule and the conditional
    consume operations atomic. Callers always receive copies, never the stored
    records.
    """

    def __init__(
        self, fs_root: str = "/tmp/rimadmin", *, mfa_encryption_key: str | None = None
    ) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, AdminUser] = {}
        self.pending_sessions: Dict[str, PendingSession] = {}
        self.backup_codes: Dict[str, BackupCode] = {}
        # RLock so helpers can be called while a mutation already holds it
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._mfa_cipher = self._build_mfa_cipher(mfa_encryption_key)

        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def _build_mfa_cipher(self, key_material: str | None) -> Fernet:
        material = (
            key_material or os.getenv("MFA_SECRET_KEY") or os.getenv("JWT_SECRET")
        )
        if not material:
            secret_path = self.fs_root / ".mfa_secret_key"
            try:
                material = secret_path.read_text().strip()
            except FileNotFoundError:
                material = None
            if not material:
                generated = secrets.token_urlsafe(64)
                try:
                    secret_path.write_text(generated)
                    os.chmod(secret_path, 0o600)
                except OSError as exc:
                    raise RuntimeError("Unable to persist MFA encryption key") from exc
                material = generated
        return Fernet(self._derive_cipher_key(material))

    def _encrypt_secret(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return secret
        return self._mfa_cipher.encrypt(secret.encode()).decode()

    def _decrypt_secret(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return secret
        try:
            return self._mfa_cipher.decrypt(secret.encode()).decode()
        except InvalidToken:
            self.logger.warning("mfa_secret_decrypt_failed")
            return None

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    # admin users
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
    ) -> AdminUser:
        with self._data_lock:
            self._check_unique(username=username, email=email)
            user = AdminUser(
                id=str(uuid.uuid4()),
                username=username,
                email=email,
                password_hash=password_hash,
                role=role,
                role_id=role_id,
                status=AdminUserStatus(status),
                created_by=created_by,
            )
            self.users[user.id] = user
            self._persist_state()
            return replace(user)

    def _check_unique(
        self,
        *,
        username: Optional[str] = None,
        email: Optional[str] = None,
        exclude_id: Optional[str] = None,
    ) -> None:
        for existing in self.users.values():
            if existing.id == exclude_id:
                continue
            if username is not None and existing.username == username:
                raise ConstraintViolation("username already exists", {"field": "username"})
            if email is not None and existing.email == email:
                raise ConstraintViolation("email already exists", {"field": "email"})

    def get_admin_user(self, user_id: str) -> Optional[AdminUser]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_admin_user_by_email(self, email: str) -> Optional[AdminUser]:
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == email), None)
            return replace(user) if user else None

    def get_admin_user_by_username(self, username: str) -> Optional[AdminUser]:
        with self._data_lock:
            user = next((u for u in self.users.values() if u.username == username), None)
            return replace(user) if user else None

    def get_admin_user_by_reset_token_hash(self, token_hash: str) -> Optional[AdminUser]:
        with self._data_lock:
            user = next(
                (u for u in self.users.values() if u.password_reset_token_hash == token_hash),
                None,
            )
            return replace(user) if user else None

    def _require_user(self, user_id: str) -> AdminUser:
        user = self.users.get(user_id)
        if not user:
            raise ConstraintViolation("admin user not found", {"user_id": user_id})
        return user

    def update_last_login(self, user_id: str, at: Optional[datetime] = None) -> None:
        with self._data_lock:
            self._require_user(user_id).last_login = at or utcnow()
            self._persist_state()

    def set_refresh_token(self, user_id: str, refresh_token: Optional[str]) -> None:
        with self._data_lock:
            self._require_user(user_id).refresh_token = refresh_token
            self._persist_state()

    def enable_two_factor(self, user_id: str, otp_secret: str) -> AdminUser:
        with self._data_lock:
            user = self._require_user(user_id)
            user.otp_secret = otp_secret
            user.two_factor_enabled = True
            self._persist_state()
            return replace(user)

    def set_password_reset_token(
        self, user_id: str, token_hash: str, expires_at: datetime
    ) -> None:
        with self._data_lock:
            user = self._require_user(user_id)
            user.password_reset_token_hash = token_hash
            user.password_reset_token_expires_at = expires_at
            user.password_reset_token_used_at = None
            self._persist_state()

    def complete_password_reset(
        self, user_id: str, password_hash: str, at: Optional[datetime] = None
    ) -> bool:
        """Swap the password and burn the reset token unless it was already used."""
        with self._data_lock:
            user = self._require_user(user_id)
            if user.password_reset_token_used_at is not None:
                return False
            now = at or utcnow()
            user.password_hash = password_hash
            user.last_password_changed_at = now
            user.password_reset_token_used_at = now
            user.refresh_token = None
            self._persist_state()
            return True

    def update_admin_profile(
        self,
        user_id: str,
        *,
        username: Optional[str] = None,
        email: Optional[str] = None,
        password_hash: Optional[str] = None,
        password_changed_at: Optional[datetime] = None,
    ) -> AdminUser:
        with self._data_lock:
            user = self._require_user(user_id)
            self._check_unique(username=username, email=email, exclude_id=user_id)
            if username is not None:
                user.username = username
            if email is not None:
                user.email = email
            if password_hash is not None:
                user.password_hash = password_hash
                user.last_password_changed_at = password_changed_at or utcnow()
            self._persist_state()
            return replace(user)

    # pending sessions
    def create_pending_session(self, session: PendingSession) -> PendingSession:
        with self._data_lock:
            self._require_user(session.admin_user_id)
            for existing in self.pending_sessions.values():
                if (
                    existing.admin_user_id == session.admin_user_id
                    and existing.type == session.type
                    and not existing.used
                ):
                    existing.used = True
            stored = replace(session)
            self.pending_sessions[stored.id] = stored
            self._persist_state()
            return replace(stored)

    def get_pending_session_by_hash(self, session_hash: str) -> Optional[PendingSession]:
        with self._data_lock:
            sess = next(
                (s for s in self.pending_sessions.values() if s.hash == session_hash),
                None,
            )
            return replace(sess) if sess else None

    def active_pending_sessions(
        self, user_id: str, session_type: PendingSessionType
    ) -> List[PendingSession]:
        with self._data_lock:
            return [
                replace(s)
                for s in self.pending_sessions.values()
                if s.admin_user_id == user_id and s.type == session_type and not s.used
            ]

    def mark_pending_session_used(self, session_id: str) -> bool:
        """Flip ``used`` false -> true; returns False when someone else got there first."""
        with self._data_lock:
            sess = self.pending_sessions.get(session_id)
            if not sess or sess.used:
                return False
            sess.used = True
            self._persist_state()
            return True

    def record_failed_attempt(self, session_id: str, *, max_attempts: int = 0) -> int:
        """Increment the attempt counter, consuming the session at the cap."""
        with self._data_lock:
            sess = self.pending_sessions.get(session_id)
            if not sess:
                return 0
            sess.attempts += 1
            if max_attempts and sess.attempts >= max_attempts:
                sess.used = True
            self._persist_state()
            return sess.attempts

    def set_pending_session_secret(self, session_id: str, secret: str) -> None:
        with self._data_lock:
            sess = self.pending_sessions.get(session_id)
            if not sess:
                raise ConstraintViolation("pending session not found", {"session_id": session_id})
            sess.secret = secret
            self._persist_state()

    def delete_stale_pending_sessions(
        self, user_id: str, now: Optional[datetime] = None
    ) -> int:
        current = now or utcnow()
        with self._data_lock:
            stale = [
                sid
                for sid, sess in self.pending_sessions.items()
                if sess.admin_user_id == user_id and (sess.used or sess.is_expired(current))
            ]
            for sid in stale:
                self.pending_sessions.pop(sid, None)
            if stale:
                self._persist_state()
            return len(stale)

    # backup codes
    def replace_backup_codes(
        self, user_id: str, code_hashes: Sequence[str]
    ) -> List[BackupCode]:
        with self._data_lock:
            self._require_user(user_id)
            for code_id, code in list(self.backup_codes.items()):
                if code.admin_user_id == user_id:
                    self.backup_codes.pop(code_id, None)
            created = []
            for code_hash in code_hashes:
                code = BackupCode(
                    id=str(uuid.uuid4()), admin_user_id=user_id, code_hash=code_hash
                )
                self.backup_codes[code.id] = code
                created.append(replace(code))
            self._persist_state()
            return created

    def list_unused_backup_codes(self, user_id: str) -> List[BackupCode]:
        with self._data_lock:
            codes = [
                replace(c)
                for c in self.backup_codes.values()
                if c.admin_user_id == user_id and not c.used
            ]
            return sorted(codes, key=lambda c: c.created_at)

    def mark_backup_code_used(self, code_id: str) -> bool:
        with self._data_lock:
            code = self.backup_codes.get(code_id)
            if not code or code.used:
                return False
            code.used = True
            self._persist_state()
            return True

    def ping(self) -> bool:
        return True

    # persistence
    def _persist_state(self) -> None:
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "pending_sessions": [
                self._serialize_pending_session(s) for s in self.pending_sessions.values()
            ],
            "backup_codes": [
                self._serialize_backup_code(c) for c in self.backup_codes.values()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.pending_sessions = {
            s["id"]: self._deserialize_pending_session(s)
            for s in data.get("pending_sessions", [])
        }
        self.backup_codes = {
            c["id"]: self._deserialize_backup_code(c) for c in data.get("backup_codes", [])
        }
        return True

    def _serialize_user(self, user: AdminUser) -> dict:
        return {
            "id": user.id,
            "username": user.username,
            "email": user.email,
            "password_hash": user.password_hash,
            "role": user.role,
            "role_id": user.role_id,
            "status": AdminUserStatus(user.status).value,
            "two_factor_enabled": user.two_factor_enabled,
            "otp_secret": self._encrypt_secret(user.otp_secret),
            "refresh_token": user.refresh_token,
            "password_reset_token_hash": user.password_reset_token_hash,
            "password_reset_token_expires_at": self._serialize_datetime(
                user.password_reset_token_expires_at
            ),
            "password_reset_token_used_at": self._serialize_datetime(
                user.password_reset_token_used_at
            ),
            "last_login": self._serialize_datetime(user.last_login),
            "last_password_changed_at": self._serialize_datetime(
                user.last_password_changed_at
            ),
            "created_at": self._serialize_datetime(user.created_at),
            "created_by": user.created_by,
        }

    def _deserialize_user(self, data: dict) -> AdminUser:
        return AdminUser(
            id=str(data["id"]),
            username=data["username"],
            email=data["email"],
            password_hash=data["password_hash"],
            role=data.get("role", "admin"),
            role_id=data.get("role_id"),
            status=AdminUserStatus(data.get("status", "active")),
            two_factor_enabled=data.get("two_factor_enabled", False),
            otp_secret=self._decrypt_secret(data.get("otp_secret")),
            refresh_token=data.get("refresh_token"),
            password_reset_token_hash=data.get("password_reset_token_hash"),
            password_reset_token_expires_at=self._deserialize_datetime(
                data.get("password_reset_token_expires_at")
            ),
            password_reset_token_used_at=self._deserialize_datetime(
                data.get("password_reset_token_used_at")
            ),
            last_login=self._deserialize_datetime(data.get("last_login")),
            last_password_changed_at=self._deserialize_datetime(
                data.get("last_password_changed_at")
            ),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
            created_by=data.get("created_by"),
        )

    def _serialize_pending_session(self, session: PendingSession) -> dict:
        return {
            "id": session.id,
            "hash": session.hash,
            "admin_user_id": session.admin_user_id,
            "type": PendingSessionType(session.type).value,
            "expires_at": self._serialize_datetime(session.expires_at),
            "used": session.used,
            "attempts": session.attempts,
            "secret": self._encrypt_secret(session.secret),
            "ip": session.ip,
            "user_agent": session.user_agent,
            "created_at": self._serialize_datetime(session.created_at),
        }

    def _deserialize_pending_session(self, data: dict) -> PendingSession:
        return PendingSession(
            id=str(data["id"]),
            hash=data["hash"],
            admin_user_id=str(data["admin_user_id"]),
            type=PendingSessionType(data["type"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            used=data.get("used", False),
            attempts=data.get("attempts", 0),
            secret=self._decrypt_secret(data.get("secret")),
            ip=data.get("ip"),
            user_agent=data.get("user_agent"),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
        )

    def _serialize_backup_code(self, code: BackupCode) -> dict:
        return {
            "id": code.id,
            "admin_user_id": code.admin_user_id,
            "code_hash": code.code_hash,
            "used": code.used,
            "created_at": self._serialize_datetime(code.created_at),
        }

    def _deserialize_backup_code(self, data: dict) -> BackupCode:
        return BackupCode(
            id=str(data["id"]),
            admin_user_id=str(data["admin_user_id"]),
            code_hash=data["code_hash"],
            used=data.get("used", False),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
        )
