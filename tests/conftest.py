"""
tests/conftest.py -- Shared test fixtures for SessionGate.

This module provides:
  - FakeClock / RecordingNotifier: controllable collaborators
  - store, cache, ledger, otp, coordinators: service fixtures for unit tests
  - create_admin / create_user: identity factories with cheap bcrypt hashes
  - api_context / api: TestClient with a patched lifespan for HTTP integration tests

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process. Each
fixture appends a random suffix so tests never share rows.

DEBUG must be set before any api/ import so get_settings() auto-generates
SECRET_KEY in dev mode rather than raising ValueError. Rate limits are raised
so the integration suite never trips them.
"""

from __future__ import annotations

import asyncio
import os
import time
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

# CRITICAL: Set before any api/ or core/ import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")
os.environ.setdefault("OTP_RATE_LIMIT", "1000/minute")

import pytest
from fastapi.testclient import TestClient

from api.main import app, install_services
from auth.ledger import RefreshTokenLedger
from auth.models import Identity, IdentityKind
from auth.otp import OtpChallengeManager
from auth.sessions import SessionCoordinator, SessionPolicy
from auth.store import IdentityStore
from auth.tokens import hash_password
from cache.store import IdentityCache
from core.config import Settings, get_settings

TEST_SECRET = "test-secret-key-that-is-at-least-32-characters-long"
PASSWORD = "correct-horse-battery"


# ---------------------------------------------------------------------------
# Controllable collaborators
# ---------------------------------------------------------------------------


class FakeClock:
    """Callable UTC clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class RecordingNotifier:
    """Notifier double. Records deliveries; can be told to fail or stall."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str, datetime]] = []
        self.fail_with: Exception | None = None
        self.delay: float = 0.0

    def send_otp_email(self, to_email: str, code: str, expires_at: datetime) -> None:
        if self.delay:
            time.sleep(self.delay)
        if self.fail_with is not None:
            raise self.fail_with
        self.sent.append((to_email, code, expires_at))

    @property
    def last_code(self) -> str:
        return self.sent[-1][1]


def memory_url(name: str) -> str:
    return f"sqlite:///file:{name}_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"


def _create(store: IdentityStore, identity: Identity, password: str) -> Identity:
    # Low bcrypt cost keeps the suite fast; verification reads the cost from the hash.
    identity.password_hash = hash_password(password, rounds=4)
    identity.id = store.create_identity(identity)
    return store.get_by_id(identity.id)


def create_admin(store: IdentityStore, email: str = "admin@example.com", password: str = PASSWORD, **kw) -> Identity:
    return _create(store, Identity(kind=IdentityKind.admin, email=email, **kw), password)


def create_user(
    store: IdentityStore,
    email: str = "user@acme.io",
    password: str = PASSWORD,
    company_id: int = 7,
    role: str = "regular",
    **kw,
) -> Identity:
    identity = Identity(kind=IdentityKind.user, email=email, company_id=company_id, role=role, **kw)
    return _create(store, identity, password)


# ---------------------------------------------------------------------------
# Service fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    return Settings(secret_key=TEST_SECRET, debug=False)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def store() -> Generator[IdentityStore, None, None]:
    s = IdentityStore(db_url=memory_url("test_auth"))
    yield s
    s.close()


@pytest.fixture
def cache(tmp_path) -> Generator[IdentityCache, None, None]:
    c = IdentityCache(tmp_path / "cache.db", ttl=3600)
    yield c
    c.close()


@pytest.fixture
def ledger(store: IdentityStore, clock: FakeClock) -> RefreshTokenLedger:
    return RefreshTokenLedger(store.engine, expire_days=3, max_tokens=3, clock=clock)


@pytest.fixture
def otp(store, notifier, cache, clock) -> Generator[OtpChallengeManager, None, None]:
    manager = OtpChallengeManager(store, notifier, cache=cache, delivery_timeout=2.0, clock=clock)
    yield manager
    manager.close()


@pytest.fixture
def coordinators(store, ledger, cache, settings) -> dict[IdentityKind, SessionCoordinator]:
    return {
        kind: SessionCoordinator(SessionPolicy.for_kind(kind, settings), store, ledger, cache, settings)
        for kind in IdentityKind
    }


@pytest.fixture
def admin(store) -> Identity:
    return create_admin(store, is_manager=True)


@pytest.fixture
def user(store) -> Identity:
    return create_user(store)


# ---------------------------------------------------------------------------
# HTTP integration
# ---------------------------------------------------------------------------


def _patch_lifespan(store: IdentityStore, cache: IdentityCache, notifier: RecordingNotifier):
    """Return an async context manager that replaces the real lifespan.

    Wires pre-created test stores into app.state so TestClient routes see
    isolated test DBs rather than the production databases.

    The purge_task is a long-sleeping coroutine that keeps asyncio happy
    (a real asyncio.Task is required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        install_services(app, get_settings(), store, cache, notifier)
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()
        app.state.otp.close()

    return test_lifespan


class ApiContext:
    """Everything an HTTP test needs: client, stores, notifier, seeded identities."""

    def __init__(self, client, store, cache, notifier, admin, user) -> None:
        self.client: TestClient = client
        self.store: IdentityStore = store
        self.cache: IdentityCache = cache
        self.notifier: RecordingNotifier = notifier
        self.admin: Identity = admin
        self.user: Identity = user


@pytest.fixture(scope="module")
def api_context(tmp_path_factory) -> Generator[ApiContext, None, None]:
    """Yield an ApiContext for API integration tests (one client per module).

    A manager admin (admin@example.com) and a regular user (user@acme.io) are
    created before the client starts, both with password PASSWORD.
    """
    store = IdentityStore(db_url=memory_url("test_api"))
    cache = IdentityCache(tmp_path_factory.mktemp("cache") / "cache.db")
    notifier = RecordingNotifier()
    admin = create_admin(store, is_manager=True, first_name="Ada")
    user = create_user(store, first_name="Jane", company_id=4)

    app.router.lifespan_context = _patch_lifespan(store, cache, notifier)

    with TestClient(app, raise_server_exceptions=False) as client:
        yield ApiContext(client, store, cache, notifier, admin, user)

    cache.close()
    store.close()


@pytest.fixture
def api(api_context: ApiContext) -> ApiContext:
    """Per-test view of the module client with a clean cookie jar."""
    api_context.client.cookies.clear()
    api_context.notifier.fail_with = None
    return api_context
