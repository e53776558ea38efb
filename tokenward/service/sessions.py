from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional, Protocol

from tokenward.config import Settings
from tokenward.logging import get_logger
from tokenward.service.errors import DuplicateRevocationError, SessionNotActiveError
from tokenward.service.revocation import RevocationLedger
from tokenward.service.store_calls import call_store
from tokenward.storage.models import (
    ClientMetadata,
    DeviceInfo,
    RevocationReason,
    SessionLocation,
    SessionRecord,
)

logger = get_logger(__name__)

# Order matters: Edge and Opera UAs also contain "Chrome", Chrome UAs contain "Safari"
_BROWSERS = (
    ("Edge", re.compile(r"Edg(e|A|iOS)?/", re.I)),
    ("Opera", re.compile(r"OPR/|Opera", re.I)),
    ("Firefox", re.compile(r"Firefox/|FxiOS/", re.I)),
    ("Chrome", re.compile(r"Chrome/|CriOS/", re.I)),
    ("Safari", re.compile(r"Safari/", re.I)),
    ("Internet Explorer", re.compile(r"MSIE |Trident/", re.I)),
)
_OPERATING_SYSTEMS = (
    ("iOS", re.compile(r"iPhone|iPad|iPod", re.I)),
    ("Android", re.compile(r"Android", re.I)),
    ("Windows", re.compile(r"Windows", re.I)),
    ("macOS", re.compile(r"Mac OS X|Macintosh", re.I)),
    ("Linux", re.compile(r"Linux|X11", re.I)),
)
_TABLET = re.compile(r"iPad|Tablet", re.I)
_MOBILE = re.compile(r"Mobile|iPhone|iPod|Android", re.I)


def describe_device(user_agent: Optional[str]) -> DeviceInfo:
    """Classify a user agent string into browser, OS and device type."""

    if not user_agent:
        return DeviceInfo()
    browser = next((name for name, pattern in _BROWSERS if pattern.search(user_agent)), "Unknown")
    os_name = next(
        (name for name, pattern in _OPERATING_SYSTEMS if pattern.search(user_agent)), "Unknown"
    )
    if _TABLET.search(user_agent):
        device = "Tablet"
    elif _MOBILE.search(user_agent):
        device = "Mobile"
    else:
        device = "Desktop"
    return DeviceInfo(browser=browser, os=os_name, device=device)


@dataclass(frozen=True)
class DeviceSummary:
    device: DeviceInfo
    last_activity: datetime
    ip_address: Optional[str]
    location: Optional[SessionLocation]


@dataclass(frozen=True)
class SessionStats:
    total_active_sessions: int
    devices: List[DeviceSummary] = field(default_factory=list)
    oldest_session: Optional[datetime] = None
    newest_session: Optional[datetime] = None


class SessionStore(Protocol):
    def create_session(self, record: SessionRecord) -> SessionRecord: ...

    def get_session(self, session_id: str) -> Optional[SessionRecord]: ...

    def get_session_by_access_token(self, access_token: str) -> Optional[SessionRecord]: ...

    def get_session_by_refresh_token(self, refresh_token: str) -> Optional[SessionRecord]: ...

    def touch_session(self, session_id: str, now: datetime) -> bool: ...

    def deactivate_session(self, session_id: str, reason: str) -> bool: ...

    def list_sessions(self, user_id: str, *, active_only: bool = False) -> List[SessionRecord]: ...

    def delete_stale_sessions(self, now: datetime, inactive_before: datetime) -> int: ...


class SessionRegistry:
    """Tracks one session per issued token pair and enforces inactivity timeouts.

    Deactivation is sticky: the store only flips ``is_active`` from true to
    false and ``touch`` never writes to an inactive session, so a touch racing
    with an invalidation cannot resurrect it.
    """

    def __init__(
        self,
        store: SessionStore,
        ledger: RevocationLedger,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.ledger = ledger
        self.timeout = settings.store_timeout_seconds
        self.session_timeout_minutes = settings.session_timeout_minutes
        self.cleanup_hours = settings.session_cleanup_hours
        self._clock = clock

    def _now(self) -> datetime:
        if self._clock is not None:
            return self._clock()
        return datetime.now(timezone.utc)

    async def open(
        self,
        identity_id: str,
        access_token: str,
        refresh_token: str,
        metadata: Optional[ClientMetadata],
        expiry: datetime,
        *,
        refresh_expiry: Optional[datetime] = None,
        location: Optional[SessionLocation] = None,
    ) -> SessionRecord:
        meta = metadata or ClientMetadata()
        record = SessionRecord.new(
            identity_id,
            access_token,
            refresh_token,
            expiry,
            now=self._now(),
            metadata=meta,
            device=describe_device(meta.user_agent),
            location=location,
            refresh_expires_at=refresh_expiry,
        )
        created = await call_store(
            "create_session", self.store.create_session, record, timeout=self.timeout
        )
        logger.info(
            "session_opened",
            session_id=created.id,
            user_id=identity_id,
            device=created.device.label(),
        )
        return created

    async def touch(self, session: SessionRecord) -> SessionRecord:
        if not session.is_active:
            raise SessionNotActiveError(session.id)
        now = self._now()
        updated = await call_store(
            "touch_session", self.store.touch_session, session.id, now, timeout=self.timeout
        )
        if not updated:
            raise SessionNotActiveError(session.id)
        session.last_activity = now
        return session

    def is_inactive(
        self, session: SessionRecord, max_inactivity_minutes: Optional[int] = None
    ) -> bool:
        limit = (
            self.session_timeout_minutes
            if max_inactivity_minutes is None
            else max_inactivity_minutes
        )
        return self._now() - session.last_activity > timedelta(minutes=limit)

    async def invalidate(
        self, session: SessionRecord, reason: RevocationReason | str
    ) -> bool:
        """Deactivate the session and revoke its tokens.

        The access token is always revoked; the refresh token is revoked too
        while it is still unexpired. Tokens already revoked are skipped.
        Returns True if this call performed the deactivation.
        """

        reason_value = RevocationReason(reason).value
        changed = await call_store(
            "deactivate_session",
            self.store.deactivate_session,
            session.id,
            reason_value,
            timeout=self.timeout,
        )
        session.is_active = False
        session.ended_reason = session.ended_reason or reason_value
        client = ClientMetadata(ip_address=session.ip_address, user_agent=session.user_agent)
        pending = [(session.access_token, session.expires_at)]
        if session.refresh_expires_at is not None and session.refresh_expires_at > self._now():
            pending.append((session.refresh_token, session.refresh_expires_at))
        for token, expiry in pending:
            try:
                await self.ledger.revoke(token, session.user_id, expiry, reason_value, client)
            except DuplicateRevocationError:
                pass
        if changed:
            logger.info(
                "session_invalidated",
                session_id=session.id,
                user_id=session.user_id,
                reason=reason_value,
            )
        return changed

    async def find_active_by_token(
        self, token: str, identity_id: str
    ) -> Optional[SessionRecord]:
        session = await call_store(
            "get_session_by_access_token",
            self.store.get_session_by_access_token,
            token,
            timeout=self.timeout,
        )
        if not session or session.user_id != identity_id or not session.is_active:
            return None
        return session

    async def find_by_refresh_token(
        self, token: str, identity_id: str
    ) -> Optional[SessionRecord]:
        session = await call_store(
            "get_session_by_refresh_token",
            self.store.get_session_by_refresh_token,
            token,
            timeout=self.timeout,
        )
        if not session or session.user_id != identity_id:
            return None
        return session

    async def invalidate_all_for_identity(
        self, identity_id: str, reason: RevocationReason | str
    ) -> int:
        sessions = await call_store(
            "list_sessions",
            self.store.list_sessions,
            identity_id,
            active_only=True,
            timeout=self.timeout,
        )
        count = 0
        for session in sessions:
            if await self.invalidate(session, reason):
                count += 1
        logger.info(
            "sessions_invalidated_for_identity",
            user_id=identity_id,
            count=count,
            reason=RevocationReason(reason).value,
        )
        return count

    async def cleanup_stale(self, inactivity_hours: Optional[int] = None) -> int:
        hours = self.cleanup_hours if inactivity_hours is None else inactivity_hours
        now = self._now()
        removed = await call_store(
            "delete_stale_sessions",
            self.store.delete_stale_sessions,
            now,
            now - timedelta(hours=hours),
            timeout=self.timeout,
        )
        if removed:
            logger.info("stale_sessions_removed", removed=removed, inactivity_hours=hours)
        return removed

    async def list_active(self, identity_id: str) -> List[SessionRecord]:
        now = self._now()
        sessions = await call_store(
            "list_sessions",
            self.store.list_sessions,
            identity_id,
            active_only=True,
            timeout=self.timeout,
        )
        live = [s for s in sessions if s.is_active and s.expires_at > now]
        return sorted(live, key=lambda s: s.last_activity, reverse=True)

    async def stats(self, identity_id: str) -> SessionStats:
        sessions = await call_store(
            "list_sessions",
            self.store.list_sessions,
            identity_id,
            active_only=True,
            timeout=self.timeout,
        )
        if not sessions:
            return SessionStats(total_active_sessions=0)
        created = [s.created_at for s in sessions]
        return SessionStats(
            total_active_sessions=len(sessions),
            devices=[
                DeviceSummary(
                    device=s.device,
                    last_activity=s.last_activity,
                    ip_address=s.ip_address,
                    location=s.location,
                )
                for s in sessions
            ],
            oldest_session=min(created),
            newest_session=max(created),
        )


__all__ = [
    "DeviceSummary",
    "SessionRegistry",
    "SessionStats",
    "SessionStore",
    "describe_device",
]
