from __future__ import annotations

import json
import threading
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional

from tokenward.logging import get_logger
from tokenward.storage.errors import ConstraintViolation
from tokenward.storage.models import (
    Credential,
    LockoutState,
    RevocationEntry,
    SessionRecord,
    utcnow,
)

_PROFILE_FIELDS = frozenset({"firstname", "lastname", "phone", "email"})


class MemoryStore:
    """In-process credential, revocation and session store.

    Every read returns a copy so callers never share mutable records with the
    store. Credentials can optionally be snapshotted to JSON under
    ``state_dir``; sessions and revocations are process-local.
    """

    def __init__(self, state_dir: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.credentials: Dict[str, Credential] = {}
        self._email_index: Dict[str, str] = {}
        self.revocations: Dict[str, RevocationEntry] = {}
        self.sessions: Dict[str, SessionRecord] = {}
        self._access_index: Dict[str, str] = {}
        self._refresh_index: Dict[str, str] = {}
        # RLock for all data operations; nested acquisitions happen in delete paths
        self._data_lock = threading.RLock()
        self.state_dir = Path(state_dir) if state_dir else None
        if self.state_dir is not None:
            self.state_dir.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Optional[Path]:
        if self.state_dir is None:
            return None
        return self.state_dir / "credentials.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

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
        normalized = email.strip().lower()
        with self._data_lock:
            if normalized in self._email_index:
                raise ConstraintViolation("email already exists", {"field": "email"})
            credential = Credential.new(
                normalized,
                password_hash,
                firstname=firstname,
                lastname=lastname,
                phone=phone,
                role=role,
            )
            self.credentials[credential.id] = credential
            self._email_index[normalized] = credential.id
            self._persist_state()
            return replace(credential)

    def get_credential(self, user_id: str) -> Optional[Credential]:
        with self._data_lock:
            credential = self.credentials.get(user_id)
            return replace(credential) if credential else None

    def get_credential_by_email(self, email: str) -> Optional[Credential]:
        with self._data_lock:
            user_id = self._email_index.get(email.strip().lower())
            if not user_id:
                return None
            return replace(self.credentials[user_id])

    def update_profile(self, user_id: str, **fields) -> Optional[Credential]:
        unknown = set(fields) - _PROFILE_FIELDS
        if unknown:
            raise ValueError(f"unsupported profile fields: {sorted(unknown)}")
        with self._data_lock:
            credential = self.credentials.get(user_id)
            if not credential:
                return None
            updates = {k: v for k, v in fields.items() if v is not None}
            if "email" in updates:
                new_email = updates["email"].strip().lower()
                owner = self._email_index.get(new_email)
                if owner and owner != user_id:
                    raise ConstraintViolation("email already exists", {"field": "email"})
                self._email_index.pop(credential.email, None)
                self._email_index[new_email] = user_id
                updates["email"] = new_email
            updated = replace(credential, **updates, updated_at=utcnow())
            self.credentials[user_id] = updated
            self._persist_state()
            return replace(updated)

    def update_password(
        self, user_id: str, password_hash: str, *, now: Optional[datetime] = None
    ) -> Optional[Credential]:
        """Store a new hash, bump the token version and reset lockout counters."""

        stamp = now or utcnow()
        with self._data_lock:
            credential = self.credentials.get(user_id)
            if not credential:
                return None
            updated = replace(
                credential,
                password_hash=password_hash,
                token_version=credential.token_version + 1,
                failed_attempts=0,
                locked_until=None,
                password_changed_at=stamp,
                updated_at=stamp,
            )
            self.credentials[user_id] = updated
            self._persist_state()
            return replace(updated)

    def bump_token_version(self, user_id: str) -> Optional[int]:
        with self._data_lock:
            credential = self.credentials.get(user_id)
            if not credential:
                return None
            credential.token_version += 1
            credential.updated_at = utcnow()
            self._persist_state()
            return credential.token_version

    def apply_lockout(
        self,
        user_id: str,
        transition: Callable[[LockoutState], LockoutState],
        *,
        now: Optional[datetime] = None,
    ) -> Optional[Credential]:
        """Read-modify-write the lockout state under the data lock."""

        with self._data_lock:
            credential = self.credentials.get(user_id)
            if not credential:
                return None
            updated = credential.with_lockout(transition(credential.lockout), now or utcnow())
            self.credentials[user_id] = updated
            self._persist_state()
            return replace(updated)

    def set_blocked(self, user_id: str, blocked: bool) -> Optional[Credential]:
        with self._data_lock:
            credential = self.credentials.get(user_id)
            if not credential:
                return None
            credential.is_blocked = blocked
            credential.updated_at = utcnow()
            self._persist_state()
            return replace(credential)

    def set_role(self, user_id: str, role: str) -> Optional[Credential]:
        with self._data_lock:
            credential = self.credentials.get(user_id)
            if not credential:
                return None
            credential.role = role
            credential.updated_at = utcnow()
            self._persist_state()
            return replace(credential)

    def delete_credential(self, user_id: str) -> bool:
        with self._data_lock:
            credential = self.credentials.pop(user_id, None)
            if not credential:
                return False
            self._email_index.pop(credential.email, None)
            self.delete_user_sessions(user_id)
            self._persist_state()
            return True

    # revocations
    def insert_revocation(self, entry: RevocationEntry) -> bool:
        """Insert if absent; returns False when the token hash is already present."""

        with self._data_lock:
            if entry.token_hash in self.revocations:
                return False
            self.revocations[entry.token_hash] = entry
            return True

    def get_revocation(self, token_hash: str) -> Optional[RevocationEntry]:
        with self._data_lock:
            return self.revocations.get(token_hash)

    def delete_expired_revocations(self, now: datetime) -> int:
        with self._data_lock:
            expired = [h for h, e in self.revocations.items() if e.expires_at <= now]
            for token_hash in expired:
                self.revocations.pop(token_hash, None)
            return len(expired)

    # sessions
    def create_session(self, record: SessionRecord) -> SessionRecord:
        with self._data_lock:
            if record.user_id not in self.credentials:
                raise ConstraintViolation("session user missing", {"user_id": record.user_id})
            if record.access_token in self._access_index:
                raise ConstraintViolation(
                    "session already exists for access token", {"field": "access_token"}
                )
            stored = replace(record)
            self.sessions[stored.id] = stored
            self._access_index[stored.access_token] = stored.id
            self._refresh_index[stored.refresh_token] = stored.id
            return replace(stored)

    def get_session(self, session_id: str) -> Optional[SessionRecord]:
        with self._data_lock:
            record = self.sessions.get(session_id)
            return replace(record) if record else None

    def get_session_by_access_token(self, access_token: str) -> Optional[SessionRecord]:
        with self._data_lock:
            session_id = self._access_index.get(access_token)
            return self.get_session(session_id) if session_id else None

    def get_session_by_refresh_token(self, refresh_token: str) -> Optional[SessionRecord]:
        with self._data_lock:
            session_id = self._refresh_index.get(refresh_token)
            return self.get_session(session_id) if session_id else None

    def touch_session(self, session_id: str, now: datetime) -> bool:
        """Update last activity; inactive sessions are left untouched."""

        with self._data_lock:
            record = self.sessions.get(session_id)
            if not record or not record.is_active:
                return False
            record.last_activity = now
            return True

    def deactivate_session(self, session_id: str, reason: str) -> bool:
        """Mark a session inactive; returns False if it already was or is missing."""

        with self._data_lock:
            record = self.sessions.get(session_id)
            if not record or not record.is_active:
                return False
            record.is_active = False
            record.ended_reason = reason
            return True

    def list_sessions(self, user_id: str, *, active_only: bool = False) -> List[SessionRecord]:
        with self._data_lock:
            return [
                replace(record)
                for record in self.sessions.values()
                if record.user_id == user_id and (record.is_active or not active_only)
            ]

    def _drop_session(self, session_id: str) -> None:
        record = self.sessions.pop(session_id, None)
        if record:
            self._access_index.pop(record.access_token, None)
            self._refresh_index.pop(record.refresh_token, None)

    def delete_stale_sessions(self, now: datetime, inactive_before: datetime) -> int:
        with self._data_lock:
            stale = [
                sid
                for sid, record in self.sessions.items()
                if record.expires_at < now
                or (record.is_active and record.last_activity < inactive_before)
            ]
            for sid in stale:
                self._drop_session(sid)
            return len(stale)

    def delete_user_sessions(self, user_id: str) -> int:
        with self._data_lock:
            owned = [sid for sid, record in self.sessions.items() if record.user_id == user_id]
            for sid in owned:
                self._drop_session(sid)
            return len(owned)

    # persistence
    def _serialize_credential(self, credential: Credential) -> dict:
        return {
            "id": credential.id,
            "email": credential.email,
            "password_hash": credential.password_hash,
            "firstname": credential.firstname,
            "lastname": credential.lastname,
            "phone": credential.phone,
            "role": credential.role,
            "token_version": credential.token_version,
            "failed_attempts": credential.failed_attempts,
            "locked_until": self._serialize_datetime(credential.locked_until),
            "is_blocked": credential.is_blocked,
            "last_login": self._serialize_datetime(credential.last_login),
            "password_changed_at": self._serialize_datetime(credential.password_changed_at),
            "created_at": self._serialize_datetime(credential.created_at),
            "updated_at": self._serialize_datetime(credential.updated_at),
        }

    def _deserialize_credential(self, data: dict) -> Credential:
        return Credential(
            id=str(data["id"]),
            email=data["email"],
            password_hash=data["password_hash"],
            firstname=data.get("firstname", ""),
            lastname=data.get("lastname", ""),
            phone=data.get("phone"),
            role=data.get("role", "user"),
            token_version=int(data.get("token_version", 0)),
            failed_attempts=int(data.get("failed_attempts", 0)),
            locked_until=self._deserialize_datetime(data.get("locked_until")),
            is_blocked=bool(data.get("is_blocked", False)),
            last_login=self._deserialize_datetime(data.get("last_login")),
            password_changed_at=self._deserialize_datetime(data.get("password_changed_at")),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
            updated_at=self._deserialize_datetime(data.get("updated_at")) or utcnow(),
        )

    def _persist_state(self) -> None:
        path = self._state_path()
        if path is None:
            return
        state = {
            "credentials": [
                self._serialize_credential(c) for c in self.credentials.values()
            ]
        }
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        if path is None:
            return False
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.credentials = {
            c["id"]: self._deserialize_credential(c) for c in data.get("credentials", [])
        }
        self._email_index = {c.email: c.id for c in self.credentials.values()}
        self.logger.info("memory_store_loaded", credentials=len(self.credentials))
        return True


__all__ = ["MemoryStore"]
