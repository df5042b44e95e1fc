from __future__ import annotations

import json
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from sessionguard.logging import get_logger
from sessionguard.storage.errors import ConstraintViolation, SchemaMissing
from sessionguard.storage.models import (
    AuditEntry,
    RefreshSession,
    ResetToken,
    User,
    UserStatus,
    utcnow,
)

# Idempotent DDL for the tables this store owns. The partial unique indexes
# back the one-active-session-per-device and one-unused-reset-token rules.
SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        handle TEXT UNIQUE,
        role TEXT NOT NULL DEFAULT 'user',
        status TEXT NOT NULL DEFAULT 'active',
        suspended_until TIMESTAMPTZ,
        moderation_note TEXT,
        meta JSONB,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_auth_credential (
        user_id UUID PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_updated_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS refresh_session (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        device_id TEXT NOT NULL,
        lookup_key TEXT NOT NULL UNIQUE,
        secret_hash TEXT NOT NULL,
        ip_address TEXT,
        user_agent TEXT,
        created_at TIMESTAMPTZ NOT NULL,
        last_used_at TIMESTAMPTZ,
        expires_at TIMESTAMPTZ NOT NULL,
        is_revoked BOOLEAN NOT NULL DEFAULT FALSE,
        revoked_at TIMESTAMPTZ,
        replaced_by_session_id UUID REFERENCES refresh_session(id)
            ON DELETE SET NULL DEFERRABLE INITIALLY DEFERRED
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS refresh_session_active_device
        ON refresh_session (user_id, device_id)
        WHERE NOT is_revoked AND replaced_by_session_id IS NULL
    """,
    "CREATE INDEX IF NOT EXISTS refresh_session_user ON refresh_session (user_id)",
    """
    CREATE TABLE IF NOT EXISTS password_reset_token (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        secret_hash TEXT NOT NULL UNIQUE,
        created_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        used BOOLEAN NOT NULL DEFAULT FALSE,
        used_at TIMESTAMPTZ,
        ip_address TEXT,
        user_agent TEXT
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS password_reset_token_unused
        ON password_reset_token (user_id) WHERE NOT used
    """,
    """
    CREATE TABLE IF NOT EXISTS audit_log (
        id UUID PRIMARY KEY,
        event TEXT NOT NULL,
        severity TEXT NOT NULL,
        success BOOLEAN NOT NULL DEFAULT TRUE,
        user_id UUID,
        ip_address TEXT,
        user_agent TEXT,
        details JSONB,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS audit_log_user_created ON audit_log (user_id, created_at DESC)",
)

REQUIRED_TABLES = (
    "app_user",
    "user_auth_credential",
    "refresh_session",
    "password_reset_token",
    "audit_log",
)


class PostgresStore:
    """Postgres-backed store for users, refresh sessions, reset tokens and audit."""

    def __init__(self, dsn: str, *, ensure_schema: bool = True) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        if ensure_schema:
            self._ensure_schema()
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in SCHEMA_STATEMENTS:
                conn.execute(statement)

    def _verify_required_schema(self) -> None:
        with self._connect() as conn:
            missing = []
            for table in REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing.append(table)
        if missing:
            self.logger.error("postgres_schema_missing", tables=missing)
            raise SchemaMissing(missing)

    def close(self) -> None:
        self.pool.close()

    def ping(self) -> bool:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()
        return True

    # -- row mapping -------------------------------------------------------

    @staticmethod
    def _row_to_user(row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            handle=row.get("handle"),
            role=row.get("role") or "user",
            status=UserStatus(row.get("status") or UserStatus.ACTIVE.value),
            suspended_until=row.get("suspended_until"),
            moderation_note=row.get("moderation_note"),
            created_at=row.get("created_at") or utcnow(),
            meta=row.get("meta"),
        )

    @staticmethod
    def _row_to_refresh_session(row: Dict[str, Any]) -> RefreshSession:
        replaced_by = row.get("replaced_by_session_id")
        return RefreshSession(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            device_id=row["device_id"],
            lookup_key=row["lookup_key"],
            secret_hash=row["secret_hash"],
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            last_used_at=row.get("last_used_at"),
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
            is_revoked=bool(row.get("is_revoked")),
            revoked_at=row.get("revoked_at"),
            replaced_by_session_id=str(replaced_by) if replaced_by else None,
        )

    @staticmethod
    def _row_to_reset_token(row: Dict[str, Any]) -> ResetToken:
        return ResetToken(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            secret_hash=row["secret_hash"],
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            used=bool(row.get("used")),
            used_at=row.get("used_at"),
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
        )

    @staticmethod
    def _row_to_audit(row: Dict[str, Any]) -> AuditEntry:
        user_id = row.get("user_id")
        return AuditEntry(
            id=str(row["id"]),
            event=row["event"],
            severity=row["severity"],
            success=bool(row.get("success", True)),
            user_id=str(user_id) if user_id else None,
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
            details=row.get("details") or {},
            created_at=row["created_at"],
        )

    # -- users -------------------------------------------------------------

    def create_user(
        self,
        email: str,
        handle: Optional[str] = None,
        *,
        role: str = "user",
        meta: Optional[dict] = None,
    ) -> User:
        normalized_email = email.strip().lower()
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, handle, role, meta)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        str(uuid.uuid4()),
                        normalized_email,
                        handle,
                        role,
                        json.dumps(meta) if meta else None,
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            field = "handle" if "handle" in str(exc) else "email"
            raise ConstraintViolation(f"{field} already exists", {"field": field})
        return self._row_to_user(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,)).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email.strip().lower(),)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_handle(self, handle: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE handle = %s", (handle,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def list_users(self, limit: int = 100) -> List[User]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM app_user ORDER BY created_at DESC LIMIT %s", (limit,)
            ).fetchall()
        return [self._row_to_user(row) for row in rows]

    def update_user_role(self, user_id: str, role: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET role = %s WHERE id = %s RETURNING *", (role, user_id)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def set_user_status(
        self,
        user_id: str,
        status: UserStatus,
        *,
        suspended_until: Optional[datetime] = None,
        moderation_note: Optional[str] = None,
    ) -> Optional[User]:
        status = UserStatus(status)
        if status != UserStatus.SUSPENDED:
            suspended_until = None
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET status = %s, suspended_until = %s, moderation_note = %s
                WHERE id = %s
                RETURNING *
                """,
                (status.value, suspended_until, moderation_note, user_id),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def lift_expired_suspension(self, user_id: str, now: datetime) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET status = 'active', suspended_until = NULL, moderation_note = NULL
                WHERE id = %s AND status = 'suspended'
                  AND suspended_until IS NOT NULL AND suspended_until <= %s
                RETURNING *
                """,
                (user_id, now),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        try:
            with self._connect() as conn:
                self._write_credential(conn, user_id, password_hash, password_algo)
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user not found for credentials", {"user_id": user_id})

    @staticmethod
    def _write_credential(conn, user_id: str, password_hash: str, password_algo: str) -> None:
        conn.execute(
            """
            INSERT INTO user_auth_credential (user_id, password_hash, password_algo, last_updated_at)
            VALUES (%s, %s, %s, now())
            ON CONFLICT (user_id) DO UPDATE
            SET password_hash = EXCLUDED.password_hash,
                password_algo = EXCLUDED.password_algo,
                last_updated_at = now()
            """,
            (user_id, password_hash, password_algo),
        )

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return str(row["password_hash"]), str(row["password_algo"])

    # -- refresh sessions --------------------------------------------------

    @staticmethod
    def _insert_refresh_session(conn, session: RefreshSession) -> None:
        conn.execute(
            """
            INSERT INTO refresh_session (
                id, user_id, device_id, lookup_key, secret_hash, ip_address, user_agent,
                created_at, last_used_at, expires_at
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                session.id,
                session.user_id,
                session.device_id,
                session.lookup_key,
                session.secret_hash,
                session.ip_address,
                session.user_agent,
                session.created_at,
                session.last_used_at,
                session.expires_at,
            ),
        )

    def replace_device_session(self, session: RefreshSession) -> int:
        try:
            with self._connect() as conn, conn.transaction():
                # Serialize logins for the same user so the partial unique index never trips
                owner = conn.execute(
                    "SELECT id FROM app_user WHERE id = %s FOR UPDATE", (session.user_id,)
                ).fetchone()
                if not owner:
                    raise ConstraintViolation("user does not exist", {"user_id": session.user_id})
                revoked = conn.execute(
                    """
                    UPDATE refresh_session SET is_revoked = TRUE, revoked_at = %s
                    WHERE user_id = %s AND device_id = %s AND NOT is_revoked
                    """,
                    (session.created_at, session.user_id, session.device_id),
                ).rowcount
                self._insert_refresh_session(conn, session)
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token collision", {"field": "lookup_key"})
        return revoked or 0

    def get_refresh_session(self, session_id: str) -> Optional[RefreshSession]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_session WHERE id = %s", (session_id,)
            ).fetchone()
        return self._row_to_refresh_session(row) if row else None

    def get_refresh_session_by_lookup(self, lookup_key: str) -> Optional[RefreshSession]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_session WHERE lookup_key = %s", (lookup_key,)
            ).fetchone()
        return self._row_to_refresh_session(row) if row else None

    def list_refresh_sessions(self, user_id: str) -> List[RefreshSession]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM refresh_session WHERE user_id = %s ORDER BY created_at DESC",
                (user_id,),
            ).fetchall()
        return [self._row_to_refresh_session(row) for row in rows]

    def consume_refresh_session(
        self, session_id: str, successor: RefreshSession, now: datetime
    ) -> bool:
        with self._connect() as conn, conn.transaction():
            row = conn.execute(
                """
                UPDATE refresh_session
                SET replaced_by_session_id = %s, last_used_at = %s
                WHERE id = %s
                  AND NOT is_revoked
                  AND replaced_by_session_id IS NULL
                  AND expires_at > %s
                RETURNING id
                """,
                (successor.id, now, session_id, now),
            ).fetchone()
            if not row:
                return False
            self._insert_refresh_session(conn, successor)
        return True

    def revoke_refresh_session(self, session_id: str, now: datetime) -> bool:
        with self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE refresh_session SET is_revoked = TRUE, revoked_at = %s
                WHERE id = %s AND NOT is_revoked
                """,
                (now, session_id),
            )
            return bool(cursor.rowcount)

    def revoke_device_sessions(self, user_id: str, device_id: str, now: datetime) -> int:
        with self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE refresh_session SET is_revoked = TRUE, revoked_at = %s
                WHERE user_id = %s AND device_id = %s AND NOT is_revoked
                """,
                (now, user_id, device_id),
            )
            return cursor.rowcount or 0

    def revoke_user_refresh_sessions(self, user_id: str, now: datetime) -> int:
        with self._connect() as conn:
            return self._revoke_user_sessions(conn, user_id, now)

    @staticmethod
    def _revoke_user_sessions(conn, user_id: str, now: datetime) -> int:
        cursor = conn.execute(
            """
            UPDATE refresh_session SET is_revoked = TRUE, revoked_at = %s
            WHERE user_id = %s AND NOT is_revoked
            """,
            (now, user_id),
        )
        return cursor.rowcount or 0

    def purge_refresh_sessions(self, before: datetime) -> int:
        with self._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM refresh_session WHERE expires_at < %s", (before,)
            )
            purged = cursor.rowcount or 0
        if purged:
            self.logger.info("refresh_sessions_purged", count=purged)
        return purged

    # -- password reset ----------------------------------------------------

    def replace_reset_token(self, token: ResetToken) -> int:
        try:
            with self._connect() as conn, conn.transaction():
                # Serialize requests for the same user so the partial unique index never trips
                owner = conn.execute(
                    "SELECT id FROM app_user WHERE id = %s FOR UPDATE", (token.user_id,)
                ).fetchone()
                if not owner:
                    raise ConstraintViolation("user does not exist", {"user_id": token.user_id})
                invalidated = conn.execute(
                    """
                    UPDATE password_reset_token SET used = TRUE, used_at = %s
                    WHERE user_id = %s AND NOT used
                    """,
                    (token.created_at, token.user_id),
                ).rowcount
                conn.execute(
                    """
                    INSERT INTO password_reset_token (
                        id, user_id, secret_hash, created_at, expires_at, ip_address, user_agent
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        token.id,
                        token.user_id,
                        token.secret_hash,
                        token.created_at,
                        token.expires_at,
                        token.ip_address,
                        token.user_agent,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": token.user_id})
        except errors.UniqueViolation:
            raise ConstraintViolation("reset token collision", {"field": "secret_hash"})
        return invalidated or 0

    def get_reset_token_by_hash(self, secret_hash: str) -> Optional[ResetToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM password_reset_token WHERE secret_hash = %s", (secret_hash,)
            ).fetchone()
        return self._row_to_reset_token(row) if row else None

    def count_active_reset_tokens(self, user_id: str, now: datetime) -> int:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) AS total FROM password_reset_token
                WHERE user_id = %s AND NOT used AND expires_at > %s
                """,
                (user_id, now),
            ).fetchone()
        return int(row["total"]) if row else 0

    def complete_password_reset(
        self,
        token_id: str,
        user_id: str,
        password_hash: str,
        password_algo: str,
        now: datetime,
        audit_entry: Optional[AuditEntry] = None,
    ) -> bool:
        with self._connect() as conn, conn.transaction():
            row = conn.execute(
                """
                UPDATE password_reset_token SET used = TRUE, used_at = %s
                WHERE id = %s AND user_id = %s AND NOT used
                RETURNING id
                """,
                (now, token_id, user_id),
            ).fetchone()
            if not row:
                return False
            self._write_credential(conn, user_id, password_hash, password_algo)
            self._revoke_user_sessions(conn, user_id, now)
            if audit_entry is not None:
                self._insert_audit(conn, audit_entry)
        return True

    def purge_reset_tokens(self, before: datetime) -> int:
        with self._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM password_reset_token WHERE expires_at < %s", (before,)
            )
            purged = cursor.rowcount or 0
        if purged:
            self.logger.info("reset_tokens_purged", count=purged)
        return purged

    # -- audit -------------------------------------------------------------

    @staticmethod
    def _insert_audit(conn, entry: AuditEntry) -> None:
        conn.execute(
            """
            INSERT INTO audit_log (
                id, event, severity, success, user_id, ip_address, user_agent, details, created_at
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                entry.id,
                entry.event,
                entry.severity,
                entry.success,
                entry.user_id,
                entry.ip_address,
                entry.user_agent,
                json.dumps(entry.details) if entry.details else None,
                entry.created_at,
            ),
        )

    def append_audit_entry(self, entry: AuditEntry) -> AuditEntry:
        with self._connect() as conn:
            self._insert_audit(conn, entry)
        return entry

    def list_audit_entries(
        self,
        *,
        user_id: Optional[str] = None,
        event: Optional[str] = None,
        limit: int = 100,
    ) -> List[AuditEntry]:
        clauses = []
        params: list[Any] = []
        if user_id is not None:
            clauses.append("user_id = %s")
            params.append(user_id)
        if event is not None:
            clauses.append("event = %s")
            params.append(event)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM audit_log {where} ORDER BY created_at DESC LIMIT %s",
                params,
            ).fetchall()
        return [self._row_to_audit(row) for row in rows]


__all__ = ["PostgresStore", "SCHEMA_STATEMENTS", "REQUIRED_TABLES"]
