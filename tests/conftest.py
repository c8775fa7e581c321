"""
tests/conftest.py -- Shared test fixtures for IDCore.

This module provides:
  - FakeClock: one controllable clock for token expiry (datetime) and the
    cache TTLs (epoch seconds), so tests can step past lockout windows and
    token lifetimes without sleeping.
  - RecordingSender: a notification sender that keeps messages in a list
    (or raises NotificationError when told to fail).
  - store/cache/sender/dispatcher and one fixture per service.
  - api_client: TestClient over the real app with a patched lifespan.

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because the background dispatcher and TestClient run code in other threads.
Plain :memory: DBs are per-connection and would present a blank schema to
each worker thread. The named URI format
(file:name?mode=memory&cache=shared&uri=true) shares one in-memory instance
across all connections in the same process. Each test gets its own name.

The DEBUG env var must be set before any auth module import so get_settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError.
BCRYPT_ROUNDS=4 keeps hashing fast; it is only accepted with DEBUG.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

# CRITICAL: Set DEBUG before any auth/core import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "4")

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app, init_state
from auth.credentials import CredentialService
from auth.linking import FederatedIdentityLinker
from auth.models import User
from auth.recovery import PasswordResetService
from auth.sessions import SessionTokenService
from auth.store import AuthStore
from auth.verification import EmailVerificationService
from cache.store import SQLiteCache
from core.background import BackgroundDispatcher
from core.config import Settings
from notify.email import Message, NotificationError

TEST_ROUNDS = 4
TEST_SECRET = "test-secret-key-0123456789abcdef0123456789"
FRONTEND_URL = "http://frontend.test"

# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------


class FakeClock:
    """A clock that only moves when advance() is called."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def time(self) -> float:
        return self.now.timestamp()

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class RecordingSender:
    def __init__(self) -> None:
        self.messages: list[Message] = []
        self.fail = False

    def send(self, message: Message) -> None:
        if self.fail:
            raise NotificationError("smtp unavailable")
        self.messages.append(message)

    def tokens(self) -> list[str]:
        """Extract the ?token= value from every recorded link, oldest first."""
        found = []
        for m in self.messages:
            _, _, rest = m.body.partition("?token=")
            found.append(rest.split()[0])
        return found


# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------


def _memory_url(prefix: str) -> str:
    return f"sqlite:///file:{prefix}_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> Generator[AuthStore, None, None]:
    s = AuthStore(_memory_url("test_auth"))
    yield s
    s.close()


@pytest.fixture
def cache(clock: FakeClock) -> Generator[SQLiteCache, None, None]:
    c = SQLiteCache(":memory:", clock=clock.time)
    yield c
    c.close()


@pytest.fixture
def sender() -> RecordingSender:
    return RecordingSender()


@pytest.fixture
def dispatcher() -> Generator[BackgroundDispatcher, None, None]:
    d = BackgroundDispatcher(max_workers=2, name="test-bg")
    yield d
    d.shutdown()


# ---------------------------------------------------------------------------
# Services
# ---------------------------------------------------------------------------


@pytest.fixture
def credentials(store: AuthStore, cache: SQLiteCache) -> CredentialService:
    return CredentialService(store, cache, bcrypt_rounds=TEST_ROUNDS)


@pytest.fixture
def sessions(store: AuthStore, credentials: CredentialService, clock: FakeClock) -> SessionTokenService:
    return SessionTokenService(
        store,
        credentials,
        secret=TEST_SECRET,
        access_expire_seconds=900,
        refresh_expire_days=30,
        issuer="idcore",
        audience="idcore-api",
        clock=clock,
    )


@pytest.fixture
def recovery(store, cache, sender, dispatcher, clock) -> PasswordResetService:
    return PasswordResetService(
        store, cache, sender, dispatcher, frontend_url=FRONTEND_URL, bcrypt_rounds=TEST_ROUNDS, clock=clock
    )


@pytest.fixture
def verification(store, cache, sender, dispatcher, clock) -> EmailVerificationService:
    return EmailVerificationService(store, cache, sender, dispatcher, frontend_url=FRONTEND_URL, clock=clock)


@pytest.fixture
def linker(store: AuthStore) -> FederatedIdentityLinker:
    return FederatedIdentityLinker(store)


@pytest.fixture
def user(credentials: CredentialService) -> User:
    """A registered local user: a@x.com / Aa1!aaaa."""
    return credentials.register("a@x.com", "Aa1!aaaa", "A")


# ---------------------------------------------------------------------------
# HTTP boundary
# ---------------------------------------------------------------------------


def _patch_lifespan(settings: Settings, store: AuthStore, cache: SQLiteCache, sender, dispatcher):
    """Return an async context manager that replaces the real lifespan.

    Wires in-memory collaborators into app.state through the same
    init_state() the real lifespan uses.

    The purge_task is a long-sleeping coroutine that keeps asyncio happy
    (a real asyncio.Task is required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        init_state(app, settings, store=store, cache=cache, sender=sender, dispatcher=dispatcher)
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


@pytest.fixture
def api_settings() -> Settings:
    return Settings(
        debug=True,
        secret_key=TEST_SECRET,
        bcrypt_rounds=TEST_ROUNDS,
        frontend_url=FRONTEND_URL,
        oauth_frontend_url=f"{FRONTEND_URL}/auth/callback",
    )


@pytest.fixture
def api_client(api_settings: Settings, sender: RecordingSender) -> Generator[TestClient, None, None]:
    """Yield a TestClient over the real app and routes with isolated collaborators.

    The slowapi limiter is switched off so tests can log in repeatedly; the
    per-email lockout in CredentialService still applies.
    Tests reach the wired services through client.app.state.
    """
    api_store = AuthStore(_memory_url("test_api"))
    api_cache = SQLiteCache(":memory:")
    api_dispatcher = BackgroundDispatcher(max_workers=2, name="test-api-bg")

    app.router.lifespan_context = _patch_lifespan(api_settings, api_store, api_cache, sender, api_dispatcher)
    limiter.enabled = False

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client

    limiter.enabled = True
    api_dispatcher.shutdown()
    api_cache.close()
    api_store.close()
