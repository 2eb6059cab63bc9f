import asyncio
import inspect
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Configure the environment before anything reads settings
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("REDIS_URL", "")
# Cheap argon2 parameters keep the suite fast
os.environ.setdefault("ARGON2_TIME_COST", "1")
os.environ.setdefault("ARGON2_MEMORY_COST", "1024")
os.environ.setdefault("ARGON2_PARALLELISM", "1")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from hikariauth.config import Settings, reset_settings_cache  # noqa: E402
from hikariauth.service.auth import RequestContext  # noqa: E402
from hikariauth.service.runtime import Runtime  # noqa: E402


class FakeClock:
    """Controllable UTC clock shared by every component of a test runtime."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class RecordingNotifier:
    """Captures outgoing verification and reset tokens instead of mailing them."""

    def __init__(self) -> None:
        self.verifications: list[tuple[str, str]] = []
        self.resets: list[tuple[str, str]] = []
        self.fail = False

    async def send_email_verification(self, to_email: str, token: str) -> bool:
        if self.fail:
            raise ConnectionError("smtp unreachable")
        self.verifications.append((to_email, token))
        return True

    async def send_password_reset(self, to_email: str, token: str) -> bool:
        if self.fail:
            raise ConnectionError("smtp unreachable")
        self.resets.append((to_email, token))
        return True

    def last_verification_token(self) -> str:
        return self.verifications[-1][1]

    def last_reset_token(self) -> str:
        return self.resets[-1][1]


@pytest.fixture(autouse=True)
def reset_settings_state():
    reset_settings_cache()
    yield
    reset_settings_cache()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return Settings(
        test_mode=True,
        use_memory_store=True,
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        argon2_time_cost=1,
        argon2_memory_cost=1024,
        argon2_parallelism=1,
        cookie_secure=False,
    )


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def runtime(settings, notifier, clock):
    return Runtime.in_memory(settings, notifier=notifier, clock=clock)


@pytest.fixture
def ctx():
    return RequestContext(ip_address="203.0.113.7", user_agent="pytest")


def signup_payload(
    username: str = "alice",
    email: str = "alice@example.com",
    password: str = "correct-horse-1",
    **overrides,
) -> dict:
    payload = {
        "username": username,
        "email": email,
        "password": password,
        "confirmPassword": password,
        "agreeTerms": True,
    }
    payload.update(overrides)
    return payload


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
