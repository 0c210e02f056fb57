import asyncio
import inspect
import os
import sys
from pathlib import Path

# Set before any import that might initialize the runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# No Redis in the suite: sessions, rate limits and fan-out run on MemoryCache
os.environ.setdefault("REDIS_URL", "")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from devconnect.config import Settings  # noqa: E402
from devconnect.service.runtime import reset_runtime_for_tests  # noqa: E402
from devconnect.service.sessions import SessionRegistry  # noqa: E402
from devconnect.service.tokens import TokenIssuer  # noqa: E402
from devconnect.storage.memory import MemoryStore  # noqa: E402
from devconnect.storage.memory_cache import MemoryCache  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings():
    return Settings(jwt_secret="unit-test-secret", token_ttl_seconds=3600)


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def cache():
    return MemoryCache()


@pytest.fixture
def sessions(cache):
    return SessionRegistry(cache)


@pytest.fixture
def tokens(settings, sessions):
    return TokenIssuer(settings, sessions)


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
