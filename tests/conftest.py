import asyncio
import inspect
import os
import sys
from datetime import datetime, timezone
from pathlib import Path

TEST_SECRET = "test-secret-key-for-testing-only-do-not-use-in-production"

os.environ.setdefault("JWT_SECRET", TEST_SECRET)
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from sessionguard.clock import ManualClock  # noqa: E402
from sessionguard.config import load_settings, reset_settings_cache  # noqa: E402
from sessionguard.service.auth import AuthService  # noqa: E402
from sessionguard.service.identity import StaticIdentityProvider  # noqa: E402
from sessionguard.storage.models import User  # noqa: E402

START = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)

CHROME_UA = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)


@pytest.fixture(autouse=True)
def reset_settings_state():
    reset_settings_cache()
    yield
    reset_settings_cache()


@pytest.fixture
def clock():
    return ManualClock(START)


@pytest.fixture
def settings():
    """Settings with the strict rate-limit preset and default device caps."""
    return load_settings(jwt_secret=TEST_SECRET)


@pytest.fixture
def alice():
    return User(id="user-alice", email="alice@example.com", name="Alice")


@pytest.fixture
def identity(alice):
    provider = StaticIdentityProvider()
    provider.add_user(alice, "correct horse battery staple")
    provider.add_user(User(id="user-bob", email="bob@example.com"), "hunter2hunter2")
    return provider


@pytest.fixture
def good_credentials():
    return {"email": "alice@example.com", "password": "correct horse battery staple"}


@pytest.fixture
def auth_service(settings, identity, clock):
    return AuthService(settings, identity, clock=clock)


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
