from __future__ import annotations

import json
import uuid
from datetime import datetime
from typing import Any, Callable, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from tokenward.logging import get_logger
from tokenward.storage.errors import ConstraintViolation
from tokenward.storage.models import (
    Credential,
    DeviceInfo,
    LockoutState,
    RevocationEntry,
    SessionLocation,
    SessionRecord,
    utcnow,
)

_PROFILE_COLUMNS = ("firstname", "lastname", "phone", "email")

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS credential (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        password_hash TEXT NOT NULL,
        firstname TEXT NOT NULL DEFAULT '',
        lastname TEXT NOT NULL DEFAULT '',
        phone TEXT,
        role TEXT NOT NULL DEFAULT 'user',
        token_version INTEGER NOT NULL DEFAULT 0,
        failed_attempts INTEGER NOT NULL DEFAULT 0 CHECK (failed_attempts >= 0),
        locked_until TIMESTAMPTZ,
        is_blocked BOOLEAN NOT NULL DEFAULT FALSE,
        last_login TIMESTAMPTZ,
        password_changed_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS token_revocation (
        token_hash TEXT PRIMARY KEY,
        user_id UUID NOT NULL,
        reason TEXT NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        ip_address TEXT,
        user_agent TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS token_revocation_expires_idx ON token_revocation (expires_at)",
    """
    CREATE TABLE IF NOT EXISTS auth_session (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES credential(id) ON DELETE CASCADE,
        access_token TEXT NOT NULL UNIQUE,
        refresh_token TEXT NOT NULL,
        ip_address TEXT,
        user_agent TEXT,
        device_browser TEXT NOT NULL DEFAULT 'Unknown',
        device_os TEXT NOT NULL DEFAULT 'Unknown',
        device_type TEXT NOT NULL DEFAULT 'Desktop',
        location JSONB,
        refresh_expires_at TIMESTAMPTZ,
        last_activity TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        ended_reason TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_session_user_idx ON auth_session (user_id, is_active)",
    "CREATE INDEX IF NOT EXISTS auth_session_refresh_idx ON auth_session (refresh_token)",
)


def _is_uuid(value: Any) -> bool:
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


class PostgresStore:
    """Postgres-backed credential, revocation and session store."""

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

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create tables and indexes if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _row_to_credential(row: dict) -> Credential:
        return Credential(
            id=str(row["id"]),
            email=row["email"],
            password_hash=row["password_hash"],
            firstname=row.get("firstname") or "",
            lastname=row.get("lastname") or "",
            phone=row.get("phone"),
            role=row.get("role", "user"),
            token_version=int(row.get("token_version", 0)),
            failed_attempts=int(row.get("failed_attempts", 0)),
            locked_until=row.get("locked_until"),
            is_blocked=bool(row.get("is_blocked", False)),
            last_login=row.get("last_login"),
            password_changed_at=row.get("password_changed_at"),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    @staticmethod
    def _row_to_session(row: dict) -> SessionRecord:
        location = row.get("location")
        if isinstance(location, str):
            location = json.loads(location)
        return SessionRecord(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            access_token=row["access_token"],
            refresh_token=row["refresh_token"],
            expires_at=row["expires_at"],
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
            device=DeviceInfo(
                browser=row.get("device_browser") or "Unknown",
                os=row.get("device_os") or "Unknown",
                device=row.get("device_type") or "Desktop",
            ),
            location=SessionLocation(**location) if location else None,
            refresh_expires_at=row.get("refresh_expires_at"),
            last_activity=row["last_activity"],
            created_at=row.get("created_at") or utcnow(),
            is_active=bool(row.get("is_active", True)),
            ended_reason=row.get("ended_reason"),
        )

    @staticmethod
    def _row_to_revocation(row: dict) -> RevocationEntry:
        return RevocationEntry(
            token_hash=row["token_hash"],
            user_id=str(row["user_id"]),
            reason=row["reason"],
            expires_at=row["expires_at"],
            created_at=row.get("created_at") or utcnow(),
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
        )

    # credentials
    def create_credential(
        self,
        email: str,
        password_hash: str,
        *,
        firstname: str = "",
        lastname: str = "",
        phone: Optional[str] = None,
        role: str = "user",
    ) -> Credential:
        user_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO credential (id, email, password_hash, firstname, lastname, phone, role)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        user_id,
                        email.strip().lower(),
                        password_hash,
                        firstname,
                        lastname,
                        phone,
                        role,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._row_to_credential(row)

    def get_credential(self, user_id: str) -> Optional[Credential]:
        if not _is_uuid(user_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM credential WHERE id = %s", (user_id,)
            ).fetchone()
        return self._row_to_credential(row) if row else None

    def get_credential_by_email(self, email: str) -> Optional[Credential]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM credential WHERE email = %s", (email.strip().lower(),)
            ).fetchone()
        return self._row_to_credential(row) if row else None

    def update_profile(self, user_id: str, **fields) -> Optional[Credential]:
        if not _is_uuid(user_id):
            return None
        unknown = set(fields) - set(_PROFILE_COLUMNS)
        if unknown:
            raise ValueError(f"unsupported profile fields: {sorted(unknown)}")
        updates = {k: v for k, v in fields.items() if v is not None}
        if "email" in updates:
            updates["email"] = updates["email"].strip().lower()
        if not updates:
            return self.get_credential(user_id)
        assignments = ", ".join(f"{column} = %s" for column in updates)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"UPDATE credential SET {assignments}, updated_at = now() WHERE id = %s RETURNING *",
                    (*updates.values(), user_id),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._row_to_credential(row) if row else None

    def update_password(
        self, user_id: str, password_hash: str, *, now: Optional[datetime] = None
    ) -> Optional[Credential]:
        """Store a new hash, bump the token version and reset lockout counters."""

        if not _is_uuid(user_id):
            return None
        stamp = now or utcnow()
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE credential
                SET password_hash = %s,
                    token_version = token_version + 1,
                    failed_attempts = 0,
                    locked_until = NULL,
                    password_changed_at = %s,
                    updated_at = %s
                WHERE id = %s
                RETURNING *
                """,
                (password_hash, stamp, stamp, user_id),
            ).fetchone()
        return self._row_to_credential(row) if row else None

    def bump_token_version(self, user_id: str) -> Optional[int]:
        if not _is_uuid(user_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE credential
                SET token_version = token_version + 1, updated_at = now()
                WHERE id = %s
                RETURNING token_version
                """,
                (user_id,),
            ).fetchone()
        return int(row["token_version"]) if row else None

    def apply_lockout(
        self,
        user_id: str,
        transition: Callable[[LockoutState], LockoutState],
        *,
        now: Optional[datetime] = None,
    ) -> Optional[Credential]:
        """Apply a lockout transition with the credential row locked."""

        if not _is_uuid(user_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM credential WHERE id = %s FOR UPDATE", (user_id,)
            ).fetchone()
            if not row:
                return None
            current = self._row_to_credential(row)
            state = transition(current.lockout)
            updated = conn.execute(
                """
                UPDATE credential
                SET failed_attempts = %s, locked_until = %s, last_login = %s, updated_at = %s
                WHERE id = %s
                RETURNING *
                """,
                (
                    state.failed_attempts,
                    state.locked_until,
                    state.last_login,
                    now or utcnow(),
                    user_id,
                ),
            ).fetchone()
        return self._row_to_credential(updated) if updated else None

    def set_blocked(self, user_id: str, blocked: bool) -> Optional[Credential]:
        if not _is_uuid(user_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE credential SET is_blocked = %s, updated_at = now() WHERE id = %s RETURNING *",
                (blocked, user_id),
            ).fetchone()
        return self._row_to_credential(row) if row else None

    def set_role(self, user_id: str, role: str) -> Optional[Credential]:
        if not _is_uuid(user_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE credential SET role = %s, updated_at = now() WHERE id = %s RETURNING *",
                (role, user_id),
            ).fetchone()
        return self._row_to_credential(row) if row else None

    def delete_credential(self, user_id: str) -> bool:
        if not _is_uuid(user_id):
            return False
        with self._connect() as conn:
            result = conn.execute("DELETE FROM credential WHERE id = %s", (user_id,))
            return result.rowcount > 0

    # revocations
    def insert_revocation(self, entry: RevocationEntry) -> bool:
        """Insert if absent; returns False when the token hash is already present."""

        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO token_revocation (token_hash, user_id, reason, expires_at, created_at, ip_address, user_agent)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (token_hash) DO NOTHING
                RETURNING token_hash
                """,
                (
                    entry.token_hash,
                    entry.user_id,
                    entry.reason,
                    entry.expires_at,
                    entry.created_at,
                    entry.ip_address,
                    entry.user_agent,
                ),
            ).fetchone()
        return row is not None

    def get_revocation(self, token_hash: str) -> Optional[RevocationEntry]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM token_revocation WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        return self._row_to_revocation(row) if row else None

    def delete_expired_revocations(self, now: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM token_revocation WHERE expires_at <= %s", (now,)
            )
            return result.rowcount

    # sessions
    def create_session(self, record: SessionRecord) -> SessionRecord:
        location: Optional[dict[str, Any]] = None
        if record.location is not None:
            location = {
                "country": record.location.country,
                "city": record.location.city,
                "region": record.location.region,
            }
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_session (
                        id, user_id, access_token, refresh_token, ip_address, user_agent,
                        device_browser, device_os, device_type, location, refresh_expires_at,
                        last_activity, expires_at, created_at, is_active
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        record.id,
                        record.user_id,
                        record.access_token,
                        record.refresh_token,
                        record.ip_address,
                        record.user_agent,
                        record.device.browser,
                        record.device.os,
                        record.device.device,
                        json.dumps(location) if location else None,
                        record.refresh_expires_at,
                        record.last_activity,
                        record.expires_at,
                        record.created_at,
                        record.is_active,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("session user missing", {"user_id": record.user_id})
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "session already exists for access token", {"field": "access_token"}
            )
        return record

    def get_session(self, session_id: str) -> Optional[SessionRecord]:
        if not _is_uuid(session_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE id = %s", (session_id,)
            ).fetchone()
        return self._row_to_session(row) if row else None

    def get_session_by_access_token(self, access_token: str) -> Optional[SessionRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE access_token = %s", (access_token,)
            ).fetchone()
        return self._row_to_session(row) if row else None

    def get_session_by_refresh_token(self, refresh_token: str) -> Optional[SessionRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE refresh_token = %s ORDER BY created_at DESC LIMIT 1",
                (refresh_token,),
            ).fetchone()
        return self._row_to_session(row) if row else None

    def touch_session(self, session_id: str, now: datetime) -> bool:
        """Update last activity; inactive sessions are left untouched."""

        if not _is_uuid(session_id):
            return False
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE auth_session SET last_activity = %s WHERE id = %s AND is_active",
                (now, session_id),
            )
            return result.rowcount > 0

    def deactivate_session(self, session_id: str, reason: str) -> bool:
        if not _is_uuid(session_id):
            return False
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE auth_session SET is_active = FALSE, ended_reason = %s
                WHERE id = %s AND is_active
                """,
                (reason, session_id),
            )
            return result.rowcount > 0

    def list_sessions(self, user_id: str, *, active_only: bool = False) -> List[SessionRecord]:
        if not _is_uuid(user_id):
            return []
        query = "SELECT * FROM auth_session WHERE user_id = %s"
        if active_only:
            query += " AND is_active"
        with self._connect() as conn:
            rows = conn.execute(query, (user_id,)).fetchall()
        return [self._row_to_session(row) for row in rows]

    def delete_stale_sessions(self, now: datetime, inactive_before: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                """
                DELETE FROM auth_session
                WHERE expires_at < %s OR (is_active AND last_activity < %s)
                """,
                (now, inactive_before),
            )
            return result.rowcount

    def delete_user_sessions(self, user_id: str) -> int:
        if not _is_uuid(user_id):
            return 0
        with self._connect() as conn:
            result = conn.execute("DELETE FROM auth_session WHERE user_id = %s", (user_id,))
            return result.rowcount


__all__ = ["PostgresStore"]
