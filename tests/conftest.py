import asyncio
import inspect
import os
import sys
from pathlib import Path

# Signing secrets must exist before any module builds settings
os.environ.setdefault("ACCESS_TOKEN_SECRET", "test-access-secret-for-automation-only-0123456789")
os.environ.setdefault("REFRESH_TOKEN_SECRET", "test-refresh-secret-for-automation-only-9876543210")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from clinicrecords.config import Settings, reset_settings_cache  # noqa: E402
from clinicrecords.service.auth import AuthService  # noqa: E402
from clinicrecords.storage.memory import MemoryStore  # noqa: E402


@pytest.fixture(autouse=True)
def reset_settings_state():
    reset_settings_cache()
    yield
    reset_settings_cache()


@pytest.fixture
def settings():
    return Settings(
        access_token_secret="unit-access-secret-0123456789abcdefghijkl",
        refresh_token_secret="unit-refresh-secret-0123456789abcdefghijk",
        rate_limit_rps=100,
        rate_limit_burst=1000,
    )


@pytest.fixture
def token_config(settings):
    return settings.token_config()


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def auth_service(memory_store, token_config):
    return AuthService(memory_store, token_config)


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
