"""
tests/conftest.py -- Shared test fixtures for AuthCore.

This module provides:
  - FrozenClock: a controllable clock for session lifetime tests
  - make_settings(): Settings with fast hashing costs for tests
  - settings / settings_factory / clock / store / auth: per-test core fixtures
  - _patch_lifespan(): wires test stores into app.state, bypassing real startup
  - api_client: module-scoped TestClient for HTTP integration tests
  - client: api_client with an empty cookie jar, one per test

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

Every store gets a fresh uuid-suffixed name so tests never share rows.

The DEBUG env var must be set before any core import so get_settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError. The
rate limits are relaxed for the same reason: a module's worth of sign-ins
from one test client IP would otherwise trip the production limits.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

# CRITICAL: Set before any auth/core/api import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")
os.environ.setdefault("SIGNUP_RATE_LIMIT", "1000/minute")

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.orchestrator import AuthOrchestrator
from auth.store import AuthStore
from core.config import Settings

TEST_SECRET_KEY = "test-secret-key-that-is-long-enough-0123456789"

# Fixed start instant for lifetime tests.
EPOCH = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class FrozenClock:
    """Clock that only moves when told to."""

    def __init__(self, start: datetime = EPOCH) -> None:
        self.current = start

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current


def make_settings(**overrides) -> Settings:
    """Build Settings with cheap argon2 parameters; overrides win."""
    values = {
        "debug": True,
        "secret_key": TEST_SECRET_KEY,
        "argon2_time_cost": 1,
        "argon2_memory_cost": 1024,
        "argon2_parallelism": 1,
        "bcrypt_rounds": 4,
    }
    values.update(overrides)
    return Settings(**values)


def memory_db_url(prefix: str = "auth") -> str:
    return f"sqlite:///file:test_{prefix}_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"


# ---------------------------------------------------------------------------
# Core fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def settings_factory():
    """Return make_settings, for tests that need non-default policy."""
    return make_settings


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def store() -> Generator[AuthStore, None, None]:
    s = AuthStore(db_url=memory_db_url())
    yield s
    s.close()


@pytest.fixture
def auth(store: AuthStore, settings: Settings, clock: FrozenClock) -> AuthOrchestrator:
    return AuthOrchestrator(store, settings, clock=clock)


# ---------------------------------------------------------------------------
# API fixtures
# ---------------------------------------------------------------------------


def _patch_lifespan(store: AuthStore, settings: Settings):
    """Return an async context manager that replaces the real lifespan.

    Wires a pre-created test store and fast Settings into app.state so
    TestClient routes never touch the configured production database.

    The purge_task is a long-sleeping coroutine that keeps asyncio happy
    (a real asyncio.Task is required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.settings = settings
        app.state.store = store
        app.state.auth = AuthOrchestrator(store, settings)
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


@pytest.fixture(scope="module")
def api_client() -> Generator[TestClient, None, None]:
    """Yield a TestClient bound to the real app with an isolated in-memory store.

    Module-scoped for speed: tests inside one module share users, so each
    test registers its own uniquely-named accounts.
    """
    settings = make_settings()
    store = AuthStore(db_url=memory_db_url("api"))
    app.router.lifespan_context = _patch_lifespan(store, settings)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client

    store.close()


@pytest.fixture
def client(api_client: TestClient) -> TestClient:
    """The shared TestClient with its cookie jar emptied.

    Sign-in responses set the session cookie on the client, and a leftover
    cookie would authenticate the next test's "anonymous" requests.
    """
    api_client.cookies.clear()
    return api_client
