from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable, Optional, Protocol

from tokenward.config import Settings
from tokenward.logging import get_logger
from tokenward.service.errors import DuplicateRevocationError, IdentityNotFoundError
from tokenward.service.store_calls import bounded, call_store
from tokenward.service.tokens import hash_token
from tokenward.storage.models import ClientMetadata, RevocationEntry, RevocationReason

logger = get_logger(__name__)


class RevocationStore(Protocol):
    def insert_revocation(self, entry: RevocationEntry) -> bool: ...

    def get_revocation(self, token_hash: str) -> Optional[RevocationEntry]: ...

    def delete_expired_revocations(self, now: datetime) -> int: ...


class TokenVersionStore(Protocol):
    def bump_token_version(self, user_id: str) -> Optional[int]: ...


class RevocationCache(Protocol):
    async def record_revocation(
        self, entry: RevocationEntry, *, now: Optional[datetime] = None
    ) -> bool: ...

    async def get_revocation(self, token_hash: str) -> Optional[RevocationEntry]: ...


class RevocationLedger:
    """Record of token values that must be rejected until they expire.

    Entries are keyed by a digest of the exact token string. Inserts are
    insert-if-absent at the backend, which makes ``revoke`` the single point of
    mutual exclusion for refresh rotation: of two concurrent revocations of the
    same value exactly one succeeds. When a Redis cache is configured entries
    live there with a TTL matching the token expiry; otherwise they live in the
    store's revocation table and are removed by ``sweep_expired``.
    """

    def __init__(
        self,
        store: RevocationStore,
        credentials: TokenVersionStore,
        settings: Settings,
        *,
        cache: Optional[RevocationCache] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.credentials = credentials
        self.cache = cache
        self.timeout = settings.store_timeout_seconds
        self._clock = clock

    def _now(self) -> datetime:
        if self._clock is not None:
            return self._clock()
        return datetime.now(timezone.utc)

    async def revoke(
        self,
        token: str,
        identity_id: str,
        expiry: datetime,
        reason: RevocationReason | str,
        metadata: Optional[ClientMetadata] = None,
    ) -> RevocationEntry:
        """Revoke a token value; raises DuplicateRevocationError if already present."""

        meta = metadata or ClientMetadata()
        now = self._now()
        entry = RevocationEntry(
            token_hash=hash_token(token),
            user_id=identity_id,
            reason=RevocationReason(reason).value,
            expires_at=expiry,
            created_at=now,
            ip_address=meta.ip_address,
            user_agent=meta.user_agent,
        )
        if self.cache is not None:
            inserted = await bounded(
                "record_revocation", self.cache.record_revocation(entry, now=now), self.timeout
            )
        else:
            inserted = await call_store(
                "insert_revocation", self.store.insert_revocation, entry, timeout=self.timeout
            )
        if not inserted:
            raise DuplicateRevocationError()
        logger.info("token_revoked", user_id=identity_id, reason=entry.reason)
        return entry

    async def is_revoked(self, token: str) -> bool:
        token_hash = hash_token(token)
        if self.cache is not None:
            entry = await bounded(
                "get_revocation", self.cache.get_revocation(token_hash), self.timeout
            )
        else:
            entry = await call_store(
                "get_revocation", self.store.get_revocation, token_hash, timeout=self.timeout
            )
        return entry is not None and entry.expires_at > self._now()

    async def sweep_expired(self) -> int:
        if self.cache is not None:
            # Redis expires entries natively
            return 0
        removed = await call_store(
            "delete_expired_revocations",
            self.store.delete_expired_revocations,
            self._now(),
            timeout=self.timeout,
        )
        if removed:
            logger.info("revocations_swept", removed=removed)
        return removed

    async def revoke_all_for_identity(self, identity_id: str) -> int:
        """Bump the identity's token version so every outstanding token goes stale."""

        version = await call_store(
            "bump_token_version",
            self.credentials.bump_token_version,
            identity_id,
            timeout=self.timeout,
        )
        if version is None:
            raise IdentityNotFoundError()
        logger.info("token_version_bumped", user_id=identity_id, token_version=version)
        return version


__all__ = ["RevocationLedger", "RevocationStore", "RevocationCache", "TokenVersionStore"]
