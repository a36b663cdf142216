import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Set before any import reads the environment
_test_tmp_dir = tempfile.mkdtemp(prefix="reflective_auth_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("CHALLENGE_STORE", "memory")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from reflective_auth.config import Settings, reset_settings_cache  # noqa: E402
from reflective_auth.service.email import DeliveryError  # noqa: E402
from reflective_auth.service.runtime import Runtime  # noqa: E402
from reflective_auth.storage.challenge_store import MemoryChallengeStore  # noqa: E402
from reflective_auth.storage.memory import MemoryStore  # noqa: E402

TEST_JWT_SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"


class FakeClock:
    """Settable epoch clock shared by the challenge store and services."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSender:
    """Email collaborator that records codes instead of sending them."""

    def __init__(self) -> None:
        self.codes: list[tuple[str, str]] = []
        self.welcomed: list[str] = []
        self.fail_codes = False

    def send_verification_code(self, to_email: str, code: str) -> None:
        if self.fail_codes:
            raise DeliveryError("smtp transport error")
        self.codes.append((to_email, code))

    def send_welcome(self, to_email: str, name: str) -> bool:
        self.welcomed.append(to_email)
        return True

    def last_code(self, email: str) -> str:
        for to_email, code in reversed(self.codes):
            if to_email == email:
                return code
        raise AssertionError(f"no code sent to {email}")


@pytest.fixture(autouse=True)
def reset_settings_state():
    reset_settings_cache()
    yield
    reset_settings_cache()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sender():
    return RecordingSender()


@pytest.fixture
def settings():
    return Settings(
        jwt_secret=TEST_JWT_SECRET,
        use_memory_store=True,
        challenge_store="memory",
        test_mode=True,
        login_rate_limit_per_minute=1000,
        verify_rate_limit_per_minute=1000,
        resend_rate_limit_per_minute=1000,
    )


@pytest.fixture
def identity_store():
    return MemoryStore()


@pytest.fixture
def challenge_store(clock):
    return MemoryChallengeStore(clock=clock)


@pytest.fixture
def runtime(settings, identity_store, challenge_store, sender, clock):
    return Runtime(
        settings,
        store=identity_store,
        challenges=challenge_store,
        email=sender,
        clock=clock,
    )


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
