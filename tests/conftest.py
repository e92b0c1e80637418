import asyncio
import inspect
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import MagicMock

os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("COOKIE_SECURE", "false")
os.environ.setdefault("MFA_SECRET_KEY", "test-mfa-key-for-testing-only")
# Cheap argon2 parameters keep hashing fast under test.
os.environ.setdefault("ARGON2_TIME_COST", "1")
os.environ.setdefault("ARGON2_MEMORY_COST_KIB", "1024")
# Rate-limit counters stay in-process so tests never share state through Redis.
os.environ.pop("REDIS_URL", None)

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from authcore.config import Settings  # noqa: E402
from authcore.service.account import AccountService  # noqa: E402
from authcore.service.credentials import CredentialVerifier  # noqa: E402
from authcore.service.email_change import EmailChangeWorkflow  # noqa: E402
from authcore.service.rate_limit import RateLimiter  # noqa: E402
from authcore.service.runtime import (  # noqa: E402
    build_password_hasher,
    reset_runtime_for_tests,
)
from authcore.service.sessions import SessionStore  # noqa: E402
from authcore.service.step_up import StepUpGate  # noqa: E402
from authcore.service.totp import BackupCodeStore, TotpVerifier  # noqa: E402
from authcore.storage.memory import MemoryStore  # noqa: E402

PASSWORD = "Correct-Horse-9"


class FakeClock:
    """Settable UTC clock shared by every component built in a test."""

    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def timestamp(self) -> float:
        return self.current.timestamp()

    def advance(self, **kwargs) -> None:
        self.current = self.current + timedelta(**kwargs)


class RecordingAuditSink:
    def __init__(self) -> None:
        self.events: list[tuple[str, dict]] = []

    def record(self, event, metadata=None):
        self.events.append((event, dict(metadata or {})))

    def names(self) -> list[str]:
        return [name for name, _ in self.events]


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings():
    return Settings(
        test_mode=True,
        use_memory_store=True,
        argon2_time_cost=1,
        argon2_memory_cost_kib=1024,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def audit():
    return RecordingAuditSink()


@pytest.fixture
def store():
    return MemoryStore(mfa_encryption_key="unit-test-key")


@pytest.fixture
def hasher(settings):
    return build_password_hasher(settings)


@pytest.fixture
def credentials(hasher):
    return CredentialVerifier(hasher)


@pytest.fixture
def rate_limiter(audit, clock):
    return RateLimiter(None, audit=audit, clock=clock)


@pytest.fixture
def totp(clock):
    return TotpVerifier(window=2, interval=30, clock=clock.timestamp)


@pytest.fixture
def backup_codes(store, hasher):
    return BackupCodeStore(store, count=8, hasher=hasher)


@pytest.fixture
def sessions(store, audit, clock):
    return SessionStore(
        store,
        pending_ttl=timedelta(minutes=15),
        full_ttl=timedelta(days=30),
        audit=audit,
        clock=clock,
    )


@pytest.fixture
def step_up(store, totp, backup_codes, rate_limiter, settings, audit):
    return StepUpGate(store, totp, backup_codes, rate_limiter, settings, audit=audit)


@pytest.fixture
def notifier():
    mock = MagicMock()
    mock.send_verification.return_value = True
    mock.send_security_notice.return_value = True
    mock.send_account_verification.return_value = True
    mock.send_password_reset.return_value = True
    return mock


@pytest.fixture
def workflow(store, step_up, notifier, rate_limiter, settings, audit, clock):
    return EmailChangeWorkflow(
        store, step_up, notifier, rate_limiter, settings, audit=audit, clock=clock
    )


@pytest.fixture
def accounts(store, credentials, step_up, rate_limiter, notifier, settings, audit, clock):
    return AccountService(
        store, credentials, step_up, rate_limiter, notifier, settings, audit=audit, clock=clock
    )


@pytest.fixture
def make_identity(store, credentials, clock):
    """Create a confirmed identity, optionally with a password and TOTP enabled."""

    def _make(
        email="alice@example.com",
        *,
        password=PASSWORD,
        totp_secret=None,
        backup=None,
        verified=True,
    ):
        with store.transaction() as repo:
            identity = repo.create_identity(
                email,
                password_hash=credentials.hash_password(password) if password else None,
            )
            if verified:
                repo.mark_email_verified(identity.id, at=clock())
            if totp_secret:
                repo.set_totp(identity.id, totp_secret, enabled=True)
            if backup:
                repo.set_backup_codes(identity.id, backup)
            return repo.get_identity(identity.id)

    return _make


@pytest.fixture
def mfa_identity(make_identity, totp, backup_codes):
    """Identity with TOTP enabled; exposes its secret and plaintext backup codes."""

    secret = totp.generate_secret()
    codes = backup_codes.generate()
    identity = make_identity(totp_secret=secret, backup=backup_codes.hash_codes(codes))
    identity.backup_plain = codes
    return identity


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
