from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from functools import partial
from typing import Any, Callable, List, Optional, Protocol

from tokenward.config import Settings
from tokenward.logging import get_logger
from tokenward.service.errors import (
    AccountBlockedError,
    AccountLockedError,
    AuthenticationError,
    DuplicateEmailError,
    DuplicateRevocationError,
    ForbiddenError,
    IdentityNotFoundError,
    InvalidCredentialsError,
    MissingTokenError,
    NotFoundError,
    SessionNotActiveError,
    SessionTimedOutError,
    StaleTokenError,
    TokenRevokedError,
    ValidationError,
    WeakPasswordError,
)
from tokenward.service.lockout import LockoutPolicy
from tokenward.service.passwords import (
    PasswordHasher,
    ensure_strong_password,
    score_password,
    validate_password,
)
from tokenward.service.revocation import RevocationCache, RevocationLedger
from tokenward.service.sessions import SessionRegistry, SessionStats
from tokenward.service.store_calls import call_store
from tokenward.service.tokens import ACCESS, REFRESH, TokenClaims, TokenService
from tokenward.storage.errors import ConstraintViolation
from tokenward.storage.models import (
    ClientMetadata,
    Credential,
    LockoutState,
    RevocationReason,
    Role,
    SessionRecord,
)

logger = get_logger(__name__)

ACCOUNT_STATUSES = {"active": False, "suspended": True}


class CredentialStore(Protocol):
    def create_credential(
        self,
        email: str,
        password_hash: str,
        *,
        firstname: str = "",
        lastname: str = "",
        phone: Optional[str] = None,
        role: str = "user",
    ) -> Credential: ...

    def get_credential(self, user_id: str) -> Optional[Credential]: ...

    def get_credential_by_email(self, email: str) -> Optional[Credential]: ...

    def update_profile(self, user_id: str, **fields) -> Optional[Credential]: ...

    def update_password(
        self, user_id: str, password_hash: str, *, now: Optional[datetime] = None
    ) -> Optional[Credential]: ...

    def bump_token_version(self, user_id: str) -> Optional[int]: ...

    def apply_lockout(
        self,
        user_id: str,
        transition: Callable[[LockoutState], LockoutState],
        *,
        now: Optional[datetime] = None,
    ) -> Optional[Credential]: ...

    def set_blocked(self, user_id: str, blocked: bool) -> Optional[Credential]: ...

    def delete_credential(self, user_id: str) -> bool: ...


@dataclass
class AuthResult:
    credential: Credential
    session: SessionRecord
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime


@dataclass
class AuthContext:
    credential: Credential
    token: str
    claims: TokenClaims
    session: Optional[SessionRecord] = None

    @property
    def user_id(self) -> str:
        return self.credential.id

    @property
    def role(self) -> str:
        return self.credential.role


class AuthService:
    """Signup, login, request authentication, refresh rotation and logout.

    The only component that talks to the credential store, token service,
    revocation ledger, session registry and lockout policy together. Store
    calls run in worker threads under ``store_timeout_seconds``.
    """

    def __init__(
        self,
        store: CredentialStore,
        tokens: TokenService,
        ledger: RevocationLedger,
        sessions: SessionRegistry,
        lockout: LockoutPolicy,
        settings: Settings,
        *,
        hasher: Optional[PasswordHasher] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store: CredentialStore = store
        self.tokens = tokens
        self.ledger = ledger
        self.sessions = sessions
        self.lockout = lockout
        self.settings = settings
        self.hasher = hasher or PasswordHasher()
        self.timeout = settings.store_timeout_seconds
        self._clock = clock
        self.logger = logger

    @classmethod
    def build(
        cls,
        store: Any,
        settings: Settings,
        *,
        cache: Optional[RevocationCache] = None,
        clock: Optional[Callable[[], datetime]] = None,
        hasher: Optional[PasswordHasher] = None,
    ) -> "AuthService":
        """Wire the service graph over a store implementing every store protocol."""

        tokens = TokenService(settings, clock=clock)
        ledger = RevocationLedger(store, store, settings, cache=cache, clock=clock)
        sessions = SessionRegistry(store, ledger, settings, clock=clock)
        lockout = LockoutPolicy(settings)
        return cls(
            store, tokens, ledger, sessions, lockout, settings, hasher=hasher, clock=clock
        )

    def _now(self) -> datetime:
        """Timezone-aware UTC helper to avoid naive datetime usage."""

        if self._clock is not None:
            return self._clock()
        return datetime.now(timezone.utc)

    async def _call(self, operation: str, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        return await call_store(operation, func, *args, timeout=self.timeout, **kwargs)

    async def _verify_password(self, credential: Credential, password: str) -> bool:
        return await asyncio.to_thread(self.hasher.verify, credential.password_hash, password)

    async def _hash_password(self, password: str) -> str:
        return await asyncio.to_thread(self.hasher.hash, password)

    async def _require_credential(self, identity_id: str) -> Credential:
        credential = await self._call("get_credential", self.store.get_credential, identity_id)
        if credential is None:
            raise IdentityNotFoundError()
        return credential

    async def _start_session(
        self, credential: Credential, metadata: Optional[ClientMetadata]
    ) -> AuthResult:
        access_token, access_exp = self.tokens.issue_access_token(
            credential.id, credential.token_version, metadata
        )
        refresh_token, refresh_exp, _ = self.tokens.issue_refresh_token(
            credential.id, credential.token_version, metadata
        )
        session = await self.sessions.open(
            credential.id,
            access_token,
            refresh_token,
            metadata,
            access_exp,
            refresh_expiry=refresh_exp,
        )
        return AuthResult(
            credential=credential,
            session=session,
            access_token=access_token,
            refresh_token=refresh_token,
            access_expires_at=access_exp,
            refresh_expires_at=refresh_exp,
        )

    def _ensure_not_locked(self, credential: Credential, now: datetime) -> None:
        if self.lockout.is_locked(credential, now):
            raise AccountLockedError(self.lockout.remaining_minutes(credential, now))

    async def _revoke_quietly(
        self,
        token: str,
        identity_id: str,
        expiry: datetime,
        reason: RevocationReason,
        metadata: Optional[ClientMetadata] = None,
    ) -> None:
        try:
            await self.ledger.revoke(token, identity_id, expiry, reason, metadata)
        except DuplicateRevocationError:
            pass

    # signup / login
    async def signup(
        self,
        firstname: str,
        lastname: str,
        email: str,
        password: str,
        phone: Optional[str] = None,
        metadata: Optional[ClientMetadata] = None,
        *,
        confirm_password: Optional[str] = None,
    ) -> AuthResult:
        normalized_email = email.strip().lower()
        # The email rule is enforced on password change only
        ensure_strong_password(
            password, confirm_password, firstname=firstname, lastname=lastname
        )
        password_hash = await self._hash_password(password)
        try:
            credential = await self._call(
                "create_credential",
                self.store.create_credential,
                normalized_email,
                password_hash,
                firstname=firstname,
                lastname=lastname,
                phone=phone,
                role=Role.USER.value,
            )
        except ConstraintViolation as exc:
            if exc.field == "email":
                raise DuplicateEmailError() from exc
            raise
        result = await self._start_session(credential, metadata)
        self.logger.info("signup_succeeded", user_id=credential.id)
        return result

    async def login(
        self, email: str, password: str, metadata: Optional[ClientMetadata] = None
    ) -> AuthResult:
        return await self._login(email, password, metadata, require_admin=False)

    async def admin_login(
        self, email: str, password: str, metadata: Optional[ClientMetadata] = None
    ) -> AuthResult:
        return await self._login(email, password, metadata, require_admin=True)

    async def _login(
        self,
        email: str,
        password: str,
        metadata: Optional[ClientMetadata],
        *,
        require_admin: bool,
    ) -> AuthResult:
        credential = await self._call(
            "get_credential_by_email", self.store.get_credential_by_email, email
        )
        if credential is None:
            self.logger.warning("login_failed", reason="unknown_email", admin=require_admin)
            raise InvalidCredentialsError()
        # Role check precedes lock/block checks for admin logins
        if require_admin and not credential.is_admin:
            self.logger.warning("admin_login_denied", user_id=credential.id)
            raise ForbiddenError("Access denied. Admin privileges required.")

        now = self._now()
        if self.lockout.is_locked(credential, now):
            self.logger.warning("login_rejected_locked", user_id=credential.id)
            raise AccountLockedError(self.lockout.remaining_minutes(credential, now))
        if credential.is_blocked:
            self.logger.warning("login_rejected_blocked", user_id=credential.id)
            raise AccountBlockedError()

        if not await self._verify_password(credential, password):
            updated = await self._call(
                "apply_lockout",
                self.store.apply_lockout,
                credential.id,
                partial(self.lockout.register_failure, now=now),
                now=now,
            )
            if updated is not None and self.lockout.is_locked(updated, now):
                self.logger.warning(
                    "account_lockout_triggered",
                    user_id=credential.id,
                    failed_attempts=updated.failed_attempts,
                    locked_until=updated.locked_until.isoformat(),
                )
            else:
                self.logger.warning(
                    "login_failed",
                    reason="password_mismatch",
                    user_id=credential.id,
                    failed_attempts=updated.failed_attempts if updated else None,
                )
            raise InvalidCredentialsError()

        updated = await self._call(
            "apply_lockout",
            self.store.apply_lockout,
            credential.id,
            partial(self.lockout.register_success, now=now),
            now=now,
        )
        if updated is None:
            raise InvalidCredentialsError()
        result = await self._start_session(updated, metadata)
        self.logger.info("login_succeeded", user_id=updated.id, admin=require_admin)
        return result

    # request authentication
    async def authenticate_request(
        self, token: Optional[str], metadata: Optional[ClientMetadata] = None
    ) -> AuthContext:
        if not token:
            raise MissingTokenError()
        if await self.ledger.is_revoked(token):
            raise TokenRevokedError()
        claims = self.tokens.verify(token, ACCESS)
        credential = await self._call("get_credential", self.store.get_credential, claims.sub)
        if credential is None:
            raise IdentityNotFoundError("The user that belongs to this token no longer exists")
        if claims.token_version != credential.token_version:
            await self._revoke_quietly(
                token,
                credential.id,
                claims.expires_at,
                RevocationReason.PASSWORD_CHANGE,
                metadata,
            )
            self.logger.warning(
                "stale_token_rejected",
                user_id=credential.id,
                token_version=claims.token_version,
                current_version=credential.token_version,
            )
            raise StaleTokenError()
        if credential.is_blocked:
            raise AccountBlockedError(
                "Your account has been blocked. Contact support for assistance"
            )
        self._ensure_not_locked(credential, self._now())

        session = await self.sessions.find_active_by_token(token, credential.id)
        if session is not None:
            if self.sessions.is_inactive(session):
                await self.sessions.invalidate(session, RevocationReason.INACTIVITY_TIMEOUT)
                self.logger.info(
                    "session_timed_out", user_id=credential.id, session_id=session.id
                )
                raise SessionTimedOutError(self.settings.session_timeout_minutes)
            try:
                await self.sessions.touch(session)
            except SessionNotActiveError:
                # Invalidated between lookup and touch
                raise TokenRevokedError()
        return AuthContext(credential=credential, token=token, claims=claims, session=session)

    async def optional_authenticate(
        self, token: Optional[str], metadata: Optional[ClientMetadata] = None
    ) -> Optional[AuthContext]:
        """Authenticate when possible; auth failures degrade to anonymous."""

        if not token:
            return None
        try:
            return await self.authenticate_request(token, metadata)
        except (AuthenticationError, ForbiddenError, NotFoundError) as exc:
            self.logger.info("optional_auth_skipped", error_code=exc.error_code)
            return None

    # rotation
    async def refresh(
        self, refresh_token: Optional[str], metadata: Optional[ClientMetadata] = None
    ) -> AuthResult:
        if not refresh_token:
            raise MissingTokenError("Refresh token is required")
        if await self.ledger.is_revoked(refresh_token):
            raise TokenRevokedError("Refresh token has been invalidated. Please login again")
        claims = self.tokens.verify(refresh_token, REFRESH)
        credential = await self._require_credential(claims.sub)
        if claims.token_version != credential.token_version:
            raise StaleTokenError()
        if credential.is_blocked:
            raise AccountBlockedError()
        self._ensure_not_locked(credential, self._now())

        # Insert-if-absent on the ledger decides the single winner of a rotation race
        try:
            await self.ledger.revoke(
                refresh_token,
                credential.id,
                claims.expires_at,
                RevocationReason.TOKEN_ROTATION,
                metadata,
            )
        except DuplicateRevocationError:
            self.logger.warning("refresh_rotation_race_lost", user_id=credential.id)
            raise TokenRevokedError("Refresh token has been invalidated. Please login again")

        previous = await self.sessions.find_by_refresh_token(refresh_token, credential.id)
        if previous is not None and previous.is_active:
            await self.sessions.invalidate(previous, RevocationReason.TOKEN_ROTATION)
        result = await self._start_session(credential, metadata)
        self.logger.info("tokens_refreshed", user_id=credential.id, session_id=result.session.id)
        return result

    # logout
    async def logout(
        self, context: AuthContext, metadata: Optional[ClientMetadata] = None
    ) -> None:
        """Revoke the presented token and end its session; repeating it is a no-op."""

        await self._revoke_quietly(
            context.token,
            context.user_id,
            context.claims.expires_at,
            RevocationReason.LOGOUT,
            metadata,
        )
        if context.session is not None:
            await self.sessions.invalidate(context.session, RevocationReason.LOGOUT)
        self.logger.info("logout", user_id=context.user_id)

    async def logout_all(self, context: AuthContext) -> int:
        count = await self.sessions.invalidate_all_for_identity(
            context.user_id, RevocationReason.LOGOUT_ALL
        )
        # The presented token may not be bound to a tracked session
        await self._revoke_quietly(
            context.token,
            context.user_id,
            context.claims.expires_at,
            RevocationReason.LOGOUT_ALL,
        )
        self.logger.info("logout_all", user_id=context.user_id, sessions=count)
        return count

    async def change_password(
        self,
        context: AuthContext,
        current_password: str,
        new_password: str,
        confirm_password: Optional[str] = None,
    ) -> Credential:
        credential = await self._require_credential(context.user_id)
        if not await self._verify_password(credential, current_password):
            self.logger.warning("password_change_rejected", user_id=credential.id)
            raise InvalidCredentialsError("Current password is incorrect")

        violations = validate_password(
            new_password,
            confirm_password,
            email=credential.email,
            firstname=credential.firstname,
            lastname=credential.lastname,
        )
        if new_password == current_password:
            violations.append("New password must be different from current password")
        if violations:
            raise WeakPasswordError(violations, strength=score_password(new_password).as_dict())

        password_hash = await self._hash_password(new_password)
        updated = await self._call(
            "update_password",
            self.store.update_password,
            credential.id,
            password_hash,
            now=self._now(),
        )
        if updated is None:
            raise IdentityNotFoundError()
        count = await self.sessions.invalidate_all_for_identity(
            credential.id, RevocationReason.PASSWORD_CHANGE
        )
        self.logger.info(
            "password_changed",
            user_id=credential.id,
            token_version=updated.token_version,
            sessions_invalidated=count,
        )
        return updated

    # identity and session views
    async def get_identity(self, identity_id: str) -> Credential:
        return await self._require_credential(identity_id)

    async def update_profile(
        self,
        context: AuthContext,
        *,
        firstname: Optional[str] = None,
        lastname: Optional[str] = None,
        phone: Optional[str] = None,
        email: Optional[str] = None,
        name: Optional[str] = None,
    ) -> Credential:
        if name and name.strip():
            parts = name.strip().split()
            firstname = parts[0]
            lastname = " ".join(parts[1:]) or parts[0]
        try:
            updated = await self._call(
                "update_profile",
                self.store.update_profile,
                context.user_id,
                firstname=firstname or None,
                lastname=lastname or None,
                phone=phone or None,
                email=email or None,
            )
        except ConstraintViolation as exc:
            if exc.field == "email":
                raise DuplicateEmailError() from exc
            raise
        if updated is None:
            raise IdentityNotFoundError()
        self.logger.info("profile_updated", user_id=context.user_id)
        return updated

    async def list_sessions(self, context: AuthContext) -> List[dict]:
        sessions = await self.sessions.list_active(context.user_id)
        return [
            {
                "id": session.id,
                "device": session.device,
                "ip_address": session.ip_address,
                "location": session.location,
                "last_activity": session.last_activity,
                "created_at": session.created_at,
                "is_current": session.access_token == context.token,
            }
            for session in sessions
        ]

    async def session_stats(self, context: AuthContext) -> SessionStats:
        return await self.sessions.stats(context.user_id)

    # administration
    @staticmethod
    def ensure_role(context: AuthContext, *roles: str) -> None:
        if context.role not in roles:
            raise ForbiddenError("You are not allowed to access this route")

    async def set_account_status(self, identity_id: str, status: str) -> Credential:
        if status not in ACCOUNT_STATUSES:
            raise ValidationError(
                "Invalid status. Use 'active' or 'suspended'",
                detail={"allowed": sorted(ACCOUNT_STATUSES)},
            )
        blocked = ACCOUNT_STATUSES[status]
        updated = await self._call("set_blocked", self.store.set_blocked, identity_id, blocked)
        if updated is None:
            raise IdentityNotFoundError()
        if blocked:
            await self.sessions.invalidate_all_for_identity(
                identity_id, RevocationReason.FORCED_LOGOUT
            )
        self.logger.info("account_status_changed", user_id=identity_id, status=status)
        return updated

    async def force_logout(self, identity_id: str) -> int:
        await self._require_credential(identity_id)
        count = await self.sessions.invalidate_all_for_identity(
            identity_id, RevocationReason.FORCED_LOGOUT
        )
        await self.ledger.revoke_all_for_identity(identity_id)
        self.logger.info("forced_logout", user_id=identity_id, sessions=count)
        return count

    async def delete_identity(self, identity_id: str) -> None:
        await self._require_credential(identity_id)
        await self.sessions.invalidate_all_for_identity(
            identity_id, RevocationReason.ACCOUNT_DELETED
        )
        deleted = await self._call(
            "delete_credential", self.store.delete_credential, identity_id
        )
        if not deleted:
            raise IdentityNotFoundError()
        self.logger.info("identity_deleted", user_id=identity_id)

    async def run_maintenance(self) -> dict[str, int]:
        swept = await self.ledger.sweep_expired()
        removed = await self.sessions.cleanup_stale()
        return {"revocations_swept": swept, "sessions_removed": removed}


__all__ = ["AuthContext", "AuthResult", "AuthService", "CredentialStore"]
