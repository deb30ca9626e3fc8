import asyncio
import inspect
import os
import sys
from pathlib import Path

# Configure the runtime before any import that might initialize it
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("COOKIE_SECURE", "false")
os.environ.setdefault("SECRET_KEY", "test-secret-key-for-testing-only-do-not-use-in-production")
# Integration flows make many auth calls from one client address
os.environ.setdefault("RATE_LIMIT_CAPACITY", "1000")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from authgate.service.runtime import reset_runtime_for_tests  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


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


@pytest.fixture
def settings():
    from authgate.config import Settings

    return Settings(
        redis_url="",
        test_mode=True,
        secret_key="unit-test-secret-key-0123456789abcdefghijklmnop",
        cookie_secure=False,
        backup_code_count=4,
    )


@pytest.fixture
def store(settings):
    from authgate.storage.memory import MemoryStore

    return MemoryStore(secret_key=settings.secret_key)


@pytest.fixture
def identity(store, settings):
    from authgate.service.identity import IdentityProvider

    return IdentityProvider(store, None, settings)
