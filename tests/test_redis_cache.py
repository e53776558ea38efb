"""Unit tests for the Redis revocation cache with the client stubbed out."""

from datetime import datetime, timedelta, timezone

import pytest

from tokenward.service.errors import DuplicateRevocationError
from tokenward.service.revocation import RevocationLedger
from tokenward.storage.models import RevocationEntry
from tokenward.storage.redis_cache import RedisCache, SyncRedisCache

NOW = datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)


class FakeRedis:
    """Just enough of redis.Redis for SET NX / GET."""

    def __init__(self):
        self.values = {}
        self.ttls = {}

    def set(self, key, value, ex=None, nx=False):
        if nx and key in self.values:
            return None
        self.values[key] = value
        self.ttls[key] = ex
        return True

    def get(self, key):
        return self.values.get(key)

    def close(self):
        pass


@pytest.fixture
def cache():
    instance: SyncRedisCache = SyncRedisCache.__new__(SyncRedisCache)
    instance.redis_url = "redis://unused"
    instance._sync_client = FakeRedis()
    return instance


def _entry(token_hash="abc", expires_in=timedelta(hours=1)):
    return RevocationEntry(
        token_hash=token_hash,
        user_id="user-1",
        reason="logout",
        expires_at=NOW + expires_in,
        created_at=NOW,
        ip_address="10.0.0.1",
    )


def test_ttl_is_clamped_to_one_second():
    assert RedisCache._ttl_seconds(NOW + timedelta(minutes=5), NOW) == 300
    assert RedisCache._ttl_seconds(NOW - timedelta(minutes=5), NOW) == 1
    assert RedisCache._ttl_seconds(datetime(2025, 1, 15, 12, 1), NOW) == 60


def test_rate_keys_are_hashed():
    key = RedisCache._normalize_rate_key("login:a@b.io\r\nFLUSHALL")

    assert key.startswith("rate:")
    assert "\n" not in key
    assert key == RedisCache._normalize_rate_key("login:a@b.io\r\nFLUSHALL")


async def test_record_revocation_is_set_nx(cache):
    assert await cache.record_revocation(_entry(), now=NOW) is True
    assert await cache.record_revocation(_entry(), now=NOW) is False
    assert cache._sync_client.ttls["auth:revoked:abc"] == 3600


async def test_revocation_round_trips_entry(cache):
    await cache.record_revocation(_entry(), now=NOW)

    restored = await cache.get_revocation("abc")

    assert restored == _entry()
    assert await cache.get_revocation("missing") is None


async def test_rate_limit_unpacks_script_result(cache):
    cache._token_bucket = lambda keys, args: [0, 0, 12]

    assert await cache.check_rate_limit("k", 5, 60, return_remaining=True) == (False, 0, 12)
    assert await cache.check_rate_limit("k", 5, 60) is False


async def test_ledger_uses_cache_for_revocations(cache, memory_store, settings):
    ledger = RevocationLedger(memory_store, memory_store, settings, cache=cache, clock=lambda: NOW)

    await ledger.revoke("token-a", "user-1", NOW + timedelta(hours=1), "logout")

    assert await ledger.is_revoked("token-a") is True
    assert memory_store.revocations == {}
    with pytest.raises(DuplicateRevocationError):
        await ledger.revoke("token-a", "user-1", NOW + timedelta(hours=1), "logout")
