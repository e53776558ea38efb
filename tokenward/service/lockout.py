from __future__ import annotations

import math
from datetime import datetime, timedelta

from tokenward.config import Settings
from tokenward.storage.models import Credential, LockoutState


class LockoutPolicy:
    """Pure lockout transitions; the store applies them atomically per credential."""

    def __init__(self, settings: Settings) -> None:
        self.max_attempts = settings.max_failed_login_attempts
        self.lock_duration = timedelta(minutes=settings.lock_duration_minutes)

    def register_failure(self, state: LockoutState, now: datetime) -> LockoutState:
        if state.locked_until is not None and state.locked_until < now:
            # Expired lock: this failure starts a fresh window
            return LockoutState(failed_attempts=1, locked_until=None, last_login=state.last_login)

        attempts = state.failed_attempts + 1
        locked_until = state.locked_until
        already_locked = locked_until is not None and locked_until > now
        if attempts >= self.max_attempts and not already_locked:
            locked_until = now + self.lock_duration
        return LockoutState(
            failed_attempts=attempts, locked_until=locked_until, last_login=state.last_login
        )

    def register_success(self, state: LockoutState, now: datetime) -> LockoutState:
        return LockoutState(failed_attempts=0, locked_until=None, last_login=now)

    @staticmethod
    def is_locked(credential: Credential, now: datetime) -> bool:
        return credential.locked_until is not None and credential.locked_until > now

    @staticmethod
    def remaining_minutes(credential: Credential, now: datetime) -> int:
        if credential.locked_until is None or credential.locked_until <= now:
            return 0
        return math.ceil((credential.locked_until - now).total_seconds() / 60)


__all__ = ["LockoutPolicy"]
