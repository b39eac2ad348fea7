from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, List, Optional, Sequence

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

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

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS admin_user (
        id UUID PRIMARY KEY,
        username TEXT NOT NULL UNIQUE,
        email TEXT NOT NULL UNIQUE,
        password_hash TEXT NOT NULL,
        role TEXT NOT NULL DEFAULT 'admin',
        role_id TEXT,
        status TEXT NOT NULL DEFAULT 'active',
        two_factor_enabled BOOLEAN NOT NULL DEFAULT false,
        otp_secret TEXT,
        refresh_token TEXT,
        password_reset_token_hash TEXT,
        password_reset_token_expires_at TIMESTAMPTZ,
        password_reset_token_used_at TIMESTAMPTZ,
        last_login TIMESTAMPTZ,
        last_password_changed_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        created_by TEXT
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS admin_user_reset_token_idx
        ON admin_user (password_reset_token_hash)
    """,
    """
    CREATE TABLE IF NOT EXISTS admin_pending_session (
        id UUID PRIMARY KEY,
        hash TEXT NOT NULL UNIQUE,
        admin_user_id UUID NOT NULL REFERENCES admin_user(id),
        type TEXT NOT NULL CHECK (type IN ('setup', 'mfa')),
        expires_at TIMESTAMPTZ NOT NULL,
        used BOOLEAN NOT NULL DEFAULT false,
        attempts INTEGER NOT NULL DEFAULT 0,
        secret TEXT,
        ip TEXT,
        user_agent TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS admin_pending_session_one_unused_idx
        ON admin_pending_session (admin_user_id, type) WHERE NOT used
    """,
    """
    CREATE TABLE IF NOT EXISTS admin_backup_code (
        id UUID PRIMARY KEY,
        admin_user_id UUID NOT NULL REFERENCES admin_user(id),
        code_hash TEXT NOT NULL,
        used BOOLEAN NOT NULL DEFAULT false,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS admin_backup_code_user_idx
        ON admin_backup_code (admin_user_id) WHERE NOT used
    """,
)

_REQUIRED_TABLES = ("admin_user", "admin_pending_session", "admin_backup_code")


class PostgresStore:
    """Postgres-backed admin auth store.

    The partial unique index on ``admin_pending_session (admin_user_id, type)
    WHERE NOT used`` is the database-side guarantee that an administrator never
    holds two unused sessions of the same type.
    """

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the admin auth tables and indexes if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def _verify_required_schema(self) -> None:
        with self._connect() as conn:
            missing_tables = []
            for table in _REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)
            if missing_tables:
                raise RuntimeError(
                    "Missing required Postgres tables: {}".format(
                        ", ".join(sorted(missing_tables))
                    )
                )

            unused_index = conn.execute(
                """
                SELECT indexdef FROM pg_indexes
                WHERE tablename = 'admin_pending_session'
                  AND indexname = 'admin_pending_session_one_unused_idx'
                """
            ).fetchone()
            if not unused_index:
                raise RuntimeError(
                    "admin_pending_session_one_unused_idx is missing; pending session uniqueness cannot be enforced"
                )

    def ping(self) -> bool:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()
        return True

    def close(self) -> None:
        self.pool.close()

    # row mapping
    @staticmethod
    def _user_from_row(row: dict[str, Any]) -> AdminUser:
        return AdminUser(
            id=str(row["id"]),
            username=row["username"],
            email=row["email"],
            password_hash=row["password_hash"],
            role=row.get("role") or "admin",
            role_id=row.get("role_id"),
            status=AdminUserStatus(row.get("status") or "active"),
            two_factor_enabled=bool(row.get("two_factor_enabled")),
            otp_secret=row.get("otp_secret"),
            refresh_token=row.get("refresh_token"),
            password_reset_token_hash=row.get("password_reset_token_hash"),
            password_reset_token_expires_at=row.get("password_reset_token_expires_at"),
            password_reset_token_used_at=row.get("password_reset_token_used_at"),
            last_login=row.get("last_login"),
            last_password_changed_at=row.get("last_password_changed_at"),
            created_at=row.get("created_at") or utcnow(),
            created_by=row.get("created_by"),
        )

    @staticmethod
    def _pending_session_from_row(row: dict[str, Any]) -> PendingSession:
        return PendingSession(
            id=str(row["id"]),
            hash=row["hash"],
            admin_user_id=str(row["admin_user_id"]),
            type=PendingSessionType(row["type"]),
            expires_at=row["expires_at"],
            used=bool(row.get("used")),
            attempts=row.get("attempts") or 0,
            secret=row.get("secret"),
            ip=row.get("ip"),
            user_agent=row.get("user_agent"),
            created_at=row.get("created_at") or utcnow(),
        )

    @staticmethod
    def _backup_code_from_row(row: dict[str, Any]) -> BackupCode:
        return BackupCode(
            id=str(row["id"]),
            admin_user_id=str(row["admin_user_id"]),
            code_hash=row["code_hash"],
            used=bool(row.get("used")),
            created_at=row.get("created_at") or utcnow(),
        )

    @staticmethod
    def _constraint_field(exc: errors.UniqueViolation) -> str:
        constraint = getattr(getattr(exc, "diag", None), "constraint_name", None) or ""
        if "username" in constraint:
            return "username"
        if "email" in constraint:
            return "email"
        return constraint or "unknown"

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
        user_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO admin_user (id, username, email, password_hash, role, role_id, status, created_by)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        user_id,
                        username,
                        email,
                        password_hash,
                        role,
                        role_id,
                        AdminUserStatus(status).value,
                        created_by,
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            field = self._constraint_field(exc)
            raise ConstraintViolation(f"{field} already exists", {"field": field})
        return self._user_from_row(row)

    def _get_user_where(self, clause: str, value: Any) -> Optional[AdminUser]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT * FROM admin_user WHERE {clause} = %s", (value,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_admin_user(self, user_id: str) -> Optional[AdminUser]:
        try:
            uuid.UUID(str(user_id))
        except ValueError:
            return None
        return self._get_user_where("id", user_id)

    def get_admin_user_by_email(self, email: str) -> Optional[AdminUser]:
        return self._get_user_where("email", email)

    def get_admin_user_by_username(self, username: str) -> Optional[AdminUser]:
        return self._get_user_where("username", username)

    def get_admin_user_by_reset_token_hash(self, token_hash: str) -> Optional[AdminUser]:
        return self._get_user_where("password_reset_token_hash", token_hash)

    def update_last_login(self, user_id: str, at: Optional[datetime] = None) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE admin_user SET last_login = %s WHERE id = %s",
                (at or utcnow(), user_id),
            )

    def set_refresh_token(self, user_id: str, refresh_token: Optional[str]) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE admin_user SET refresh_token = %s WHERE id = %s",
                (refresh_token, user_id),
            )

    def enable_two_factor(self, user_id: str, otp_secret: str) -> AdminUser:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE admin_user SET otp_secret = %s, two_factor_enabled = true
                WHERE id = %s
                RETURNING *
                """,
                (otp_secret, user_id),
            ).fetchone()
        if not row:
            raise ConstraintViolation("admin user not found", {"user_id": user_id})
        return self._user_from_row(row)

    def set_password_reset_token(
        self, user_id: str, token_hash: str, expires_at: datetime
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE admin_user
                SET password_reset_token_hash = %s,
                    password_reset_token_expires_at = %s,
                    password_reset_token_used_at = NULL
                WHERE id = %s
                """,
                (token_hash, expires_at, user_id),
            )

    def complete_password_reset(
        self, user_id: str, password_hash: str, at: Optional[datetime] = None
    ) -> bool:
        now = at or utcnow()
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE admin_user
                SET password_hash = %s,
                    last_password_changed_at = %s,
                    password_reset_token_used_at = %s,
                    refresh_token = NULL
                WHERE id = %s AND password_reset_token_used_at IS NULL
                RETURNING id
                """,
                (password_hash, now, now, user_id),
            ).fetchone()
        return row is not None

    def update_admin_profile(
        self,
        user_id: str,
        *,
        username: Optional[str] = None,
        email: Optional[str] = None,
        password_hash: Optional[str] = None,
        password_changed_at: Optional[datetime] = None,
    ) -> AdminUser:
        assignments: List[str] = []
        params: List[Any] = []
        if username is not None:
            assignments.append("username = %s")
            params.append(username)
        if email is not None:
            assignments.append("email = %s")
            params.append(email)
        if password_hash is not None:
            assignments.append("password_hash = %s")
            params.append(password_hash)
            assignments.append("last_password_changed_at = %s")
            params.append(password_changed_at or utcnow())
        if not assignments:
            user = self.get_admin_user(user_id)
            if not user:
                raise ConstraintViolation("admin user not found", {"user_id": user_id})
            return user
        params.append(user_id)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"UPDATE admin_user SET {', '.join(assignments)} WHERE id = %s RETURNING *",
                    params,
                ).fetchone()
        except errors.UniqueViolation as exc:
            field = self._constraint_field(exc)
            raise ConstraintViolation(f"{field} already exists", {"field": field})
        if not row:
            raise ConstraintViolation("admin user not found", {"user_id": user_id})
        return self._user_from_row(row)

    # pending sessions
    def create_pending_session(self, session: PendingSession) -> PendingSession:
        """Retire any unused session of the same type, then insert, in one transaction.

        Two concurrent logins can both pass the UPDATE before either INSERT
        commits; the loser hits the partial unique index and is retried once.
        """
        for attempt in range(2):
            try:
                with self._connect() as conn:
                    with conn.transaction():
                        conn.execute(
                            """
                            UPDATE admin_pending_session SET used = true
                            WHERE admin_user_id = %s AND type = %s AND NOT used
                            """,
                            (session.admin_user_id, PendingSessionType(session.type).value),
                        )
                        row = conn.execute(
                            """
                            INSERT INTO admin_pending_session
                                (id, hash, admin_user_id, type, expires_at, used, attempts, secret, ip, user_agent, created_at)
                            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                            RETURNING *
                            """,
                            (
                                session.id,
                                session.hash,
                                session.admin_user_id,
                                PendingSessionType(session.type).value,
                                session.expires_at,
                                session.used,
                                session.attempts,
                                session.secret,
                                session.ip,
                                session.user_agent,
                                session.created_at,
                            ),
                        ).fetchone()
                return self._pending_session_from_row(row)
            except errors.UniqueViolation:
                if attempt:
                    raise ConstraintViolation(
                        "pending session conflict",
                        {"admin_user_id": session.admin_user_id, "type": session.type},
                    )
                self.logger.warning(
                    "pending_session_insert_conflict",
                    admin_user_id=session.admin_user_id,
                    session_type=PendingSessionType(session.type).value,
                )
            except errors.ForeignKeyViolation:
                raise ConstraintViolation(
                    "admin user not found", {"user_id": session.admin_user_id}
                )
        raise ConstraintViolation("pending session conflict", {})

    def get_pending_session_by_hash(self, session_hash: str) -> Optional[PendingSession]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM admin_pending_session WHERE hash = %s", (session_hash,)
            ).fetchone()
        return self._pending_session_from_row(row) if row else None

    def active_pending_sessions(
        self, user_id: str, session_type: PendingSessionType
    ) -> List[PendingSession]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM admin_pending_session
                WHERE admin_user_id = %s AND type = %s AND NOT used
                """,
                (user_id, PendingSessionType(session_type).value),
            ).fetchall()
        return [self._pending_session_from_row(row) for row in rows]

    def mark_pending_session_used(self, session_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE admin_pending_session SET used = true
                WHERE id = %s AND NOT used
                RETURNING id
                """,
                (session_id,),
            ).fetchone()
        return row is not None

    def record_failed_attempt(self, session_id: str, *, max_attempts: int = 0) -> int:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE admin_pending_session
                SET attempts = attempts + 1,
                    used = used OR (%s > 0 AND attempts + 1 >= %s)
                WHERE id = %s
                RETURNING attempts
                """,
                (max_attempts, max_attempts, session_id),
            ).fetchone()
        return row["attempts"] if row else 0

    def set_pending_session_secret(self, session_id: str, secret: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE admin_pending_session SET secret = %s WHERE id = %s",
                (secret, session_id),
            )

    def delete_stale_pending_sessions(
        self, user_id: str, now: Optional[datetime] = None
    ) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                DELETE FROM admin_pending_session
                WHERE admin_user_id = %s AND (used OR expires_at <= %s)
                """,
                (user_id, now or utcnow()),
            )
            return cur.rowcount or 0

    # backup codes
    def replace_backup_codes(
        self, user_id: str, code_hashes: Sequence[str]
    ) -> List[BackupCode]:
        created: List[BackupCode] = []
        with self._connect() as conn:
            with conn.transaction():
                conn.execute(
                    "DELETE FROM admin_backup_code WHERE admin_user_id = %s", (user_id,)
                )
                for code_hash in code_hashes:
                    row = conn.execute(
                        """
                        INSERT INTO admin_backup_code (id, admin_user_id, code_hash)
                        VALUES (%s, %s, %s)
                        RETURNING *
                        """,
                        (str(uuid.uuid4()), user_id, code_hash),
                    ).fetchone()
                    created.append(self._backup_code_from_row(row))
        return created

    def list_unused_backup_codes(self, user_id: str) -> List[BackupCode]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM admin_backup_code
                WHERE admin_user_id = %s AND NOT used
                ORDER BY created_at
                """,
                (user_id,),
            ).fetchall()
        return [self._backup_code_from_row(row) for row in rows]

    def mark_backup_code_used(self, code_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE admin_backup_code SET used = true WHERE id = %s AND NOT used RETURNING id",
                (code_id,),
            ).fetchone()
        return row is not None
