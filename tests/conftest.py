import asyncio
import inspect
import os
from datetime import datetime, timedelta, timezone

# Configure the environment before any imports that might initialize the runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# Empty REDIS_URL keeps revocations in the store and rate limits in-process;
# point it at a Redis instance to exercise SyncRedisCache instead
os.environ.setdefault("REDIS_URL", "")
# The test client talks plain HTTP, which never carries Secure cookies
os.environ.setdefault("COOKIE_SECURE", "false")

import pytest  # noqa: E402

from tokenward.config import Settings  # noqa: E402
from tokenward.service.auth import AuthService  # noqa: E402
from tokenward.service.passwords import PasswordHasher  # noqa: E402
from tokenward.service.runtime import reset_runtime_for_tests  # noqa: E402
from tokenward.storage.memory import MemoryStore  # noqa: E402

TEST_SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"
STRONG_PASSWORD = "Str0ng!Pass99"


class FrozenClock:
    """Manually advanced UTC clock shared by every component under test."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FastHasher(PasswordHasher):
    """argon2id with minimal cost parameters to keep the suite fast."""

    def __init__(self) -> None:
        from argon2 import PasswordHasher as Argon2Hasher
        from argon2 import Type

        self._hasher = Argon2Hasher(time_cost=1, memory_cost=8, parallelism=1, type=Type.ID)


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings():
    return Settings(
        jwt_secret=TEST_SECRET,
        test_mode=True,
        use_memory_store=True,
        redis_url=None,
    )


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def auth_service(memory_store, settings, clock):
    return AuthService.build(memory_store, settings, clock=clock, hasher=FastHasher())


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
