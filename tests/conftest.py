import asyncio
import inspect
import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Create temp directory for tests before any imports that might read settings
_test_tmp_dir = tempfile.mkdtemp(prefix="warden_test_")
os.environ.setdefault("STATE_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("SITE_URL", "https://app.example.com")
os.environ.setdefault("LOG_JSON", "false")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from warden.config import Settings, reset_settings_cache  # noqa: E402
from warden.service.providers.credentials import Anonymous, Password  # noqa: E402
from warden.service.providers.device import DeviceProvider  # noqa: E402
from warden.service.providers.email import EmailProvider  # noqa: E402
from warden.service.providers.totp import TotpProvider  # noqa: E402
from warden.service.signin import AuthEngine  # noqa: E402
from warden.storage.memory import MemoryStore  # noqa: E402


class FakeClock:
    """Mutable clock handed to the engine so tests can move time."""

    def __init__(self, start=None):
        self.now = start or datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture(autouse=True)
def reset_settings():
    reset_settings_cache()
    yield
    reset_settings_cache()


@pytest.fixture
def settings():
    """Create test settings."""
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        site_url="https://app.example.com",
        passkey_rp_id="app.example.com",
        passkey_origin="https://app.example.com",
    )


@pytest.fixture
def memory_store(tmp_path):
    """Create memory store for testing."""
    return MemoryStore(fs_root=str(tmp_path), totp_encryption_key="test-totp-key")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def outbox():
    """Collects (identifier, token) pairs handed to the delivery collaborator."""
    return []


@pytest.fixture
def email_provider(outbox):
    def send(identifier, *, url, token, expires, provider, params):
        outbox.append({"identifier": identifier, "token": token, "url": url})

    return EmailProvider(id="email", send_verification_request=send)


@pytest.fixture
def engine(memory_store, settings, clock, email_provider, outbox):
    """Engine with the providers most tests need."""
    def send_reset(identifier, *, url, token, expires, provider, params):
        outbox.append({"identifier": identifier, "token": token, "url": url, "kind": "reset"})

    providers = [
        Password(reset=EmailProvider(id="password-reset", send_verification_request=send_reset)),
        Anonymous(),
        email_provider,
        TotpProvider(),
        DeviceProvider(),
    ]
    return AuthEngine(memory_store, settings, providers, clock=clock)


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
