"""Tests for the revocation ledger over the memory store."""

import asyncio
from datetime import timedelta

import pytest

from tokenward.service.errors import (
    DuplicateRevocationError,
    IdentityNotFoundError,
    StoreUnavailableError,
)
from tokenward.service.revocation import RevocationLedger
from tokenward.service.tokens import hash_token
from tokenward.storage.models import ClientMetadata, RevocationReason


@pytest.fixture
def ledger(memory_store, settings, clock):
    return RevocationLedger(memory_store, memory_store, settings, clock=clock)


class TestRevoke:
    """Tests for insert-if-absent revocation."""

    async def test_revoked_token_is_reported(self, ledger, clock):
        expiry = clock.now + timedelta(hours=1)
        entry = await ledger.revoke(
            "token-a",
            "user-1",
            expiry,
            RevocationReason.LOGOUT,
            ClientMetadata(ip_address="10.0.0.1"),
        )

        assert entry.token_hash == hash_token("token-a")
        assert entry.reason == "logout"
        assert entry.ip_address == "10.0.0.1"
        assert await ledger.is_revoked("token-a") is True
        assert await ledger.is_revoked("token-b") is False

    async def test_second_revocation_raises_duplicate(self, ledger, clock):
        expiry = clock.now + timedelta(hours=1)
        await ledger.revoke("token-a", "user-1", expiry, "logout")

        with pytest.raises(DuplicateRevocationError):
            await ledger.revoke("token-a", "user-1", expiry, "token_rotation")

    async def test_concurrent_revocations_have_one_winner(self, ledger, clock):
        expiry = clock.now + timedelta(hours=1)
        results = await asyncio.gather(
            *(ledger.revoke("token-a", "user-1", expiry, "token_rotation") for _ in range(5)),
            return_exceptions=True,
        )

        winners = [r for r in results if not isinstance(r, Exception)]
        losers = [r for r in results if isinstance(r, DuplicateRevocationError)]
        assert len(winners) == 1
        assert len(losers) == 4

    async def test_unknown_reason_rejected(self, ledger, clock):
        with pytest.raises(ValueError):
            await ledger.revoke("token-a", "user-1", clock.now, "because")

    async def test_token_value_never_stored(self, ledger, memory_store, clock):
        await ledger.revoke("secret-token", "user-1", clock.now + timedelta(hours=1), "logout")

        assert "secret-token" not in memory_store.revocations
        assert hash_token("secret-token") in memory_store.revocations


class TestExpiry:
    """Tests for expiry filtering and sweeping."""

    async def test_expired_entry_is_not_reported(self, ledger, clock):
        await ledger.revoke("token-a", "user-1", clock.now + timedelta(minutes=5), "logout")
        clock.advance(minutes=5)

        assert await ledger.is_revoked("token-a") is False

    async def test_sweep_removes_only_expired(self, ledger, memory_store, clock):
        await ledger.revoke("short", "user-1", clock.now + timedelta(minutes=5), "logout")
        await ledger.revoke("long", "user-1", clock.now + timedelta(days=7), "logout")
        clock.advance(minutes=10)

        assert await ledger.sweep_expired() == 1
        assert hash_token("short") not in memory_store.revocations
        assert await ledger.is_revoked("long") is True

    async def test_sweep_is_noop_with_cache(self, memory_store, settings, clock):
        class NullCache:
            async def record_revocation(self, entry, *, now=None):
                return True

            async def get_revocation(self, token_hash):
                return None

        ledger = RevocationLedger(memory_store, memory_store, settings, cache=NullCache(), clock=clock)

        assert await ledger.sweep_expired() == 0


class TestRevokeAllForIdentity:
    async def test_bumps_token_version(self, ledger, memory_store):
        credential = memory_store.create_credential("a@example.com", "hash")

        assert await ledger.revoke_all_for_identity(credential.id) == 1
        assert memory_store.get_credential(credential.id).token_version == 1

    async def test_unknown_identity(self, ledger):
        with pytest.raises(IdentityNotFoundError):
            await ledger.revoke_all_for_identity("missing")


class TestStoreFailures:
    async def test_store_error_surfaces_as_unavailable(self, memory_store, settings, clock):
        class BrokenStore:
            def get_revocation(self, token_hash):
                raise ConnectionError("db down")

        ledger = RevocationLedger(BrokenStore(), memory_store, settings, clock=clock)

        with pytest.raises(StoreUnavailableError) as excinfo:
            await ledger.is_revoked("token-a")
        assert excinfo.value.status_code == 500
        assert excinfo.value.detail["retryable"] is True
