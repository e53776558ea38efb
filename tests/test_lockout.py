"""Tests for lockout state transitions."""

from datetime import timedelta

import pytest

from tokenward.service.lockout import LockoutPolicy
from tokenward.storage.models import Credential, LockoutState


@pytest.fixture
def policy(settings):
    return LockoutPolicy(settings)


class TestRegisterFailure:
    """Tests for the failure path."""

    def test_increments_below_threshold(self, policy, clock):
        state = policy.register_failure(LockoutState(failed_attempts=2), clock.now)

        assert state.failed_attempts == 3
        assert state.locked_until is None

    def test_locks_on_reaching_threshold(self, policy, clock):
        state = LockoutState()
        for _ in range(5):
            state = policy.register_failure(state, clock.now)

        assert state.failed_attempts == 5
        assert state.locked_until == clock.now + timedelta(minutes=120)

    def test_does_not_extend_existing_lock(self, policy, clock):
        locked_until = clock.now + timedelta(minutes=30)
        state = policy.register_failure(
            LockoutState(failed_attempts=5, locked_until=locked_until), clock.now
        )

        assert state.failed_attempts == 6
        assert state.locked_until == locked_until

    def test_expired_lock_restarts_count(self, policy, clock):
        expired = clock.now - timedelta(minutes=1)
        state = policy.register_failure(
            LockoutState(failed_attempts=5, locked_until=expired), clock.now
        )

        assert state.failed_attempts == 1
        assert state.locked_until is None

    def test_preserves_last_login(self, policy, clock):
        last_login = clock.now - timedelta(days=1)
        state = policy.register_failure(LockoutState(last_login=last_login), clock.now)

        assert state.last_login == last_login


class TestRegisterSuccess:
    def test_resets_counters_and_stamps_login(self, policy, clock):
        state = policy.register_success(
            LockoutState(failed_attempts=4, locked_until=clock.now), clock.now
        )

        assert state == LockoutState(failed_attempts=0, locked_until=None, last_login=clock.now)


class TestLockQueries:
    """Tests for is_locked and remaining_minutes."""

    def _credential(self, locked_until):
        credential = Credential.new("a@example.com", "hash")
        credential.locked_until = locked_until
        return credential

    def test_unlocked_credential(self, policy, clock):
        credential = self._credential(None)

        assert policy.is_locked(credential, clock.now) is False
        assert policy.remaining_minutes(credential, clock.now) == 0

    def test_remaining_minutes_rounds_up(self, policy, clock):
        credential = self._credential(clock.now + timedelta(minutes=10, seconds=1))

        assert policy.is_locked(credential, clock.now) is True
        assert policy.remaining_minutes(credential, clock.now) == 11

    def test_lock_ends_exactly_at_locked_until(self, policy, clock):
        credential = self._credential(clock.now)

        assert policy.is_locked(credential, clock.now) is False
