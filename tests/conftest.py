import asyncio
import inspect
import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="creatorauth_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# Unit tests use in-process fakes for the revocation list
os.environ.setdefault("REDIS_URL", "")

import pytest  # noqa: E402
from argon2 import PasswordHasher, Type  # noqa: E402
from redis.exceptions import ConnectionError as RedisConnectionError  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from creatorauth.config import Settings  # noqa: E402
from creatorauth.service.auth import AuthService  # noqa: E402
from creatorauth.storage.memory import MemoryStore  # noqa: E402
from creatorauth.storage.models import UserRole  # noqa: E402

TEST_SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"
TEST_PASSWORD = "CorrectHorse9!"


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeRevocationCache:
    """In-process stand-in for RedisCache's revocation list."""

    def __init__(self):
        self.revoked: dict[str, int] = {}
        self.closed = False

    def verify_connection(self) -> None:
        return None

    async def revoke_token(self, token_id: str, ttl_seconds: int) -> None:
        if ttl_seconds > 0:
            self.revoked[token_id] = ttl_seconds

    async def is_token_revoked(self, token_id: str) -> bool:
        return token_id in self.revoked

    async def close(self) -> None:
        self.closed = True


class FailingRevocationCache:
    """Revocation list whose backend is down."""

    def __init__(self):
        self.calls = 0

    def verify_connection(self) -> None:
        raise RedisConnectionError("redis unavailable")

    async def revoke_token(self, token_id: str, ttl_seconds: int) -> None:
        self.calls += 1
        raise RedisConnectionError("redis unavailable")

    async def is_token_revoked(self, token_id: str) -> bool:
        self.calls += 1
        raise RedisConnectionError("redis unavailable")

    async def close(self) -> None:
        return None


class SlowRevocationCache(FakeRevocationCache):
    async def is_token_revoked(self, token_id: str) -> bool:
        await asyncio.sleep(5)
        return True


@pytest.fixture
def settings():
    return Settings(
        jwt_secret=TEST_SECRET,
        test_mode=True,
        use_memory_store=True,
        redis_url=None,
        max_login_attempts=5,
        lockout_duration_minutes=30,
        max_concurrent_sessions=3,
        cache_timeout_seconds=0.2,
    )


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def fast_hasher():
    # Minimum argon2 cost keeps the suite quick
    return PasswordHasher(time_cost=1, memory_cost=8, parallelism=1, type=Type.ID)


@pytest.fixture
def revocation_cache():
    return FakeRevocationCache()


@pytest.fixture
def failing_cache():
    return FailingRevocationCache()


@pytest.fixture
def slow_cache():
    return SlowRevocationCache()


@pytest.fixture
def password():
    return TEST_PASSWORD


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def auth_service(memory_store, revocation_cache, settings, fast_hasher, clock):
    return AuthService.from_settings(
        memory_store, revocation_cache, settings, password_hasher=fast_hasher, clock=clock
    )


@pytest.fixture
def make_user(auth_service):
    """Register and verify a user; returns the stored record."""

    def _make(
        username: str = "alice",
        email: str | None = None,
        password: str = TEST_PASSWORD,
        role: UserRole = UserRole.SUBSCRIBER,
    ):
        user = auth_service.register(
            username, email or f"{username}@example.com", password, role=role
        )
        return auth_service.verify_email(user.id)

    return _make


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
