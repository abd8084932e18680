import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="staykey_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# Denylist behaviour is exercised with an in-process fake; keep Redis out of
# the default runtime so results do not depend on a local server.
os.environ.setdefault("REDIS_URL", "")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from staykey.config import Settings  # noqa: E402
from staykey.service.runtime import reset_runtime_for_tests  # noqa: E402
from staykey.storage.memory import MemoryStore  # noqa: E402
from staykey.storage.models import utcnow  # noqa: E402
from staykey.storage.redis_cache import RedisCache  # noqa: E402

TEST_SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"


class FakeDenylistCache:
    """Stands in for RedisCache in unit tests; records what was denylisted."""

    def __init__(self, *, fail: bool = False):
        self.entries: dict[str, int] = {}
        self.fail = fail

    ttl_until = staticmethod(RedisCache.ttl_until)

    async def denylist_access_token(self, jti: str, ttl_seconds: int) -> None:
        if self.fail:
            raise ConnectionError("redis unavailable")
        if ttl_seconds > 0:
            self.entries[jti] = ttl_seconds

    async def is_access_token_denylisted(self, jti: str) -> bool:
        if self.fail:
            raise ConnectionError("redis unavailable")
        return jti in self.entries


class FrozenClock:
    """Manually advanced clock for lifetime tests."""

    def __init__(self, start):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, delta):
        self.now = self.now + delta


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings():
    return Settings(
        jwt_secret=TEST_SECRET,
        access_token_ttl_minutes=60,
        refresh_token_ttl_minutes=7 * 24 * 60,
    )


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def clock():
    return FrozenClock(utcnow().replace(microsecond=0))


@pytest.fixture
def fake_cache():
    return FakeDenylistCache()


@pytest.fixture
def failing_cache():
    return FakeDenylistCache(fail=True)


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
