"""
Pytest config.

Local imports like `import lyria` rely on the repo root being on sys.path when the
project is not installed; pin that here so tests can always import the local package.

Every test runs against the in-process credential store with a fixed clock, a mailer
that records codes instead of sending them, and a cheap bcrypt cost.
"""

from __future__ import annotations

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List, Tuple

import pytest


def _ensure_repo_root_on_syspath() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    repo_root_str = str(repo_root)
    if repo_root_str not in sys.path:
        sys.path.insert(0, repo_root_str)


_ensure_repo_root_on_syspath()

from lyria.auth.config import load_auth_config  # noqa: E402
from lyria.auth.errors import DeliveryError  # noqa: E402

TEST_SECRET = "test-secret-key-for-testing-purposes-only"

_CLEARED_ENV = (
    "AUTH_PUBLIC_BASE_URL",
    "AUTH_COOKIE_SECURE",
    "AUTH_SESSION_TTL_SECONDS",
    "AUTH_OTP_TTL_SECONDS",
    "AUTH_OTP_MAX_ATTEMPTS",
    "AUTH_PASSWORD_MIN_LENGTH",
    "AUTH_PASSWORD_MAX_ATTEMPTS",
    "AUTH_PASSWORD_WINDOW_SECONDS",
    "AUTH_HTTP_TIMEOUT_SECONDS",
    "AUTH_DEFAULT_LOCALE",
    "AUTH_LOCALES",
    "GOOGLE_CLIENT_ID",
    "GOOGLE_CLIENT_SECRET",
    "GITHUB_CLIENT_ID",
    "GITHUB_CLIENT_SECRET",
    "X_CLIENT_ID",
    "X_CLIENT_SECRET",
    "RESEND_API_KEY",
    "EMAIL_FROM",
    "DATABASE_URL",
    "POSTGRES_DSN",
    "POSTGRES_HOST",
    "POSTGRES_DB",
    "POSTGRES_USER",
    "POSTGRES_PASSWORD",
    "DB_AUTO_MIGRATE",
)


class FixedClock:
    """Callable clock that only moves when a test says so."""

    def __init__(self, now: datetime = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:  # type: ignore[no-untyped-def]
        self.now = self.now + timedelta(**kwargs)


class RecordingMailer:
    def __init__(self) -> None:
        self.sent: List[Tuple[str, str, str]] = []
        self.fail = False

    def send(self, email: str, code: str, purpose: str) -> None:
        if self.fail:
            raise DeliveryError()
        self.sent.append((email, code, purpose))

    @property
    def last_code(self) -> str:
        return self.sent[-1][1]


@pytest.fixture(autouse=True)
def _auth_env(monkeypatch: pytest.MonkeyPatch):  # type: ignore[no-untyped-def]
    """Known-good auth settings; provider/mailer/database settings are cleared."""
    for name in _CLEARED_ENV:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("AUTH_SESSION_SECRET", TEST_SECRET)
    monkeypatch.setenv("AUTH_STORE_BACKEND", "memory")
    load_auth_config.cache_clear()
    yield
    load_auth_config.cache_clear()


@pytest.fixture(autouse=True)
def _fast_bcrypt(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("lyria.auth.local.BCRYPT_ROUNDS", 4)


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def mailer() -> RecordingMailer:
    return RecordingMailer()


@pytest.fixture
def store():  # type: ignore[no-untyped-def]
    from lyria.store.memory import InMemoryCredentialStore

    return InMemoryCredentialStore()


@pytest.fixture
def cfg():  # type: ignore[no-untyped-def]
    return load_auth_config()


@pytest.fixture
def service(cfg, store, mailer, clock):  # type: ignore[no-untyped-def]
    from lyria.auth.service import AuthService

    return AuthService(cfg, store, mailer, providers={}, clock=clock)
