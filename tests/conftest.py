import asyncio
import inspect
import os
import sys
import time
from pathlib import Path

# Configure the environment before any import that might load settings
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
# Cheap argon2 parameters; production defaults take ~100ms per hash
os.environ.setdefault("PASSWORD_HASH_TIME_COST", "1")
os.environ.setdefault("PASSWORD_HASH_MEMORY_COST", "8192")
os.environ.setdefault("PASSWORD_HASH_PARALLELISM", "1")
os.environ.setdefault("LOG_JSON", "false")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from shopauth.service.tokens import generate_rsa_keypair  # noqa: E402

# One signing key for the whole run instead of one per runtime reset
if "JWT_PRIVATE_KEY" not in os.environ:
    _private_pem, _public_pem = generate_rsa_keypair()
    os.environ["JWT_PRIVATE_KEY"] = _private_pem
    os.environ["JWT_PUBLIC_KEY"] = _public_pem

from shopauth.service.runtime import reset_runtime_for_tests  # noqa: E402


class FakeClock:
    """Deterministic clock; call it for the current epoch seconds."""

    def __init__(self, start: float | None = None):
        self.now = float(start if start is not None else int(time.time()))

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


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
