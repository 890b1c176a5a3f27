import asyncio
import inspect
import os
import sys
from pathlib import Path

# Configure the environment before anything reads settings
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-cronostudio-tests-only-0123456789")
os.environ.setdefault("CORS_ALLOWED_ORIGINS", "http://allowed.test")
os.environ.setdefault("RATE_LIMIT_ENFORCE", "false")
os.environ.setdefault("PASSWORD_HASH_TIME_COST", "1")
os.environ.setdefault("PASSWORD_HASH_MEMORY_COST", "1024")
os.environ.setdefault("REDIS_URL", "")

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from cronostudio.app import create_app  # noqa: E402
from cronostudio.config import Settings  # noqa: E402
from cronostudio.service.auth import AuthService  # noqa: E402
from cronostudio.service.email import EmailService  # noqa: E402
from cronostudio.service.runtime import Runtime  # noqa: E402
from cronostudio.service.tokens import TokenService  # noqa: E402
from cronostudio.storage.memory import MemoryStore  # noqa: E402

TEST_SECRET = "test-secret-key-for-cronostudio-tests-only-0123456789"
ALLOWED_ORIGIN = "http://allowed.test"


class RecordingEmailService(EmailService):
    """Keeps outgoing tokens in memory instead of talking to SMTP."""

    def __init__(self) -> None:
        super().__init__()
        self.password_resets: list[tuple[str, str]] = []
        self.verifications: list[tuple[str, str]] = []

    def send_password_reset(self, to_email: str, token: str) -> bool:
        self.password_resets.append((to_email, token))
        return True

    def send_email_verification(self, to_email: str, token: str) -> bool:
        self.verifications.append((to_email, token))
        return True


def build_settings(**overrides) -> Settings:
    values = dict(
        environment="test",
        jwt_secret=TEST_SECRET,
        use_memory_store=True,
        redis_url=None,
        cors_allowed_origins=[ALLOWED_ORIGIN],
        rate_limit_enforce=False,
        password_hash_time_cost=1,
        password_hash_memory_cost=1024,
        test_mode=True,
    )
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def make_settings():
    return build_settings


@pytest.fixture
def settings():
    return build_settings()


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def email_outbox():
    return RecordingEmailService()


@pytest.fixture
def token_service(settings):
    return TokenService(settings)


@pytest.fixture
def auth_service(memory_store, token_service, settings, email_outbox):
    return AuthService(memory_store, token_service, settings, email=email_outbox)


@pytest.fixture
def runtime(settings, memory_store, email_outbox):
    return Runtime(settings, store=memory_store, email=email_outbox)


@pytest.fixture
def client(runtime):
    with TestClient(create_app(runtime)) as test_client:
        yield test_client


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
