from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    USER = "user"
    ADMIN = "admin"


class RevocationReason(str, Enum):
    LOGOUT = "logout"
    LOGOUT_ALL = "logout_all"
    PASSWORD_CHANGE = "password_change"
    TOKEN_ROTATION = "token_rotation"
    FORCED_LOGOUT = "forced_logout"
    INACTIVITY_TIMEOUT = "inactivity_timeout"
    ACCOUNT_DELETED = "account_deleted"
    EXPIRED = "expired"


@dataclass(frozen=True)
class ClientMetadata:
    """Client details copied into tokens and sessions; nothing else is carried."""

    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


@dataclass(frozen=True)
class LockoutState:
    failed_attempts: int = 0
    locked_until: Optional[datetime] = None
    last_login: Optional[datetime] = None


@dataclass
class Credential:
    id: str
    email: str
    password_hash: str
    firstname: str = ""
    lastname: str = ""
    phone: Optional[str] = None
    role: str = Role.USER.value
    token_version: int = 0
    failed_attempts: int = 0
    locked_until: Optional[datetime] = None
    is_blocked: bool = False
    last_login: Optional[datetime] = None
    password_changed_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        email: str,
        password_hash: str,
        *,
        firstname: str = "",
        lastname: str = "",
        phone: Optional[str] = None,
        role: str = Role.USER.value,
        now: Optional[datetime] = None,
    ) -> "Credential":
        stamp = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            email=email,
            password_hash=password_hash,
            firstname=firstname,
            lastname=lastname,
            phone=phone,
            role=role,
            created_at=stamp,
            updated_at=stamp,
        )

    @property
    def lockout(self) -> LockoutState:
        return LockoutState(
            failed_attempts=self.failed_attempts,
            locked_until=self.locked_until,
            last_login=self.last_login,
        )

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN.value

    def with_lockout(self, state: LockoutState, now: datetime) -> "Credential":
        return replace(
            self,
            failed_attempts=state.failed_attempts,
            locked_until=state.locked_until,
            last_login=state.last_login,
            updated_at=now,
        )

    def public_view(self) -> Dict[str, Any]:
        """Identity fields safe to return to clients; never includes the hash."""

        return {
            "id": self.id,
            "email": self.email,
            "firstname": self.firstname,
            "lastname": self.lastname,
            "phone": self.phone,
            "role": self.role,
            "token_version": self.token_version,
            "is_blocked": self.is_blocked,
            "last_login": self.last_login,
            "created_at": self.created_at,
        }


@dataclass(frozen=True)
class DeviceInfo:
    browser: str = "Unknown"
    os: str = "Unknown"
    device: str = "Desktop"

    def label(self) -> str:
        return f"{self.browser} on {self.os} ({self.device})"


@dataclass(frozen=True)
class SessionLocation:
    country: Optional[str] = None
    city: Optional[str] = None
    region: Optional[str] = None


@dataclass
class SessionRecord:
    id: str
    user_id: str
    access_token: str
    refresh_token: str
    expires_at: datetime
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    device: DeviceInfo = field(default_factory=DeviceInfo)
    location: Optional[SessionLocation] = None
    refresh_expires_at: Optional[datetime] = None
    last_activity: datetime = field(default_factory=utcnow)
    created_at: datetime = field(default_factory=utcnow)
    is_active: bool = True
    ended_reason: Optional[str] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        access_token: str,
        refresh_token: str,
        expires_at: datetime,
        *,
        now: datetime,
        metadata: Optional[ClientMetadata] = None,
        device: Optional[DeviceInfo] = None,
        location: Optional[SessionLocation] = None,
        refresh_expires_at: Optional[datetime] = None,
    ) -> "SessionRecord":
        meta = metadata or ClientMetadata()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=expires_at,
            ip_address=meta.ip_address,
            user_agent=meta.user_agent,
            device=device or DeviceInfo(),
            location=location,
            refresh_expires_at=refresh_expires_at,
            last_activity=now,
            created_at=now,
        )


@dataclass(frozen=True)
class RevocationEntry:
    token_hash: str
    user_id: str
    reason: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "reason": self.reason,
            "expires_at": self.expires_at.isoformat(),
            "created_at": self.created_at.isoformat(),
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
        }

    @classmethod
    def from_payload(cls, token_hash: str, payload: Dict[str, Any]) -> "RevocationEntry":
        return cls(
            token_hash=token_hash,
            user_id=str(payload["user_id"]),
            reason=str(payload["reason"]),
            expires_at=datetime.fromisoformat(payload["expires_at"]),
            created_at=datetime.fromisoformat(payload["created_at"]),
            ip_address=payload.get("ip_address"),
            user_agent=payload.get("user_agent"),
        )
