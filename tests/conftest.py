"""
tests/conftest.py -- Shared test fixtures for the Steam admin auth service.

This module provides:
  - _patch_lifespan(): wires an in-memory store and a MockTransport-backed
    httpx client into app.state, bypassing the real startup
  - upstream: fake Steam + fake remote directory (tests/fakes.py)
  - make_client: factory for TestClients with per-test settings overrides
  - client: the default local-mode TestClient
  - login_cookie: helper that mints a valid session cookie header

Design: in-memory SQLite ("sqlite://") runs on a StaticPool inside
LocalAdminStore, so every thread-pool worker sees the same database.

The DEBUG env var must be set before any core import so get_settings() can
auto-generate SECRET_KEY in dev mode (api/main.py reads settings at import).
"""

from __future__ import annotations

import os
from collections.abc import Callable, Generator
from contextlib import ExitStack, asynccontextmanager
from typing import Optional

# CRITICAL: Set DEBUG before any core/api import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app, init_services
from core.config import Settings
from core.models import SessionUser
from directory.store import LocalAdminStore
from fakes import DEV_ID, FakeUpstream, make_settings


def _patch_lifespan(settings: Settings, upstream: FakeUpstream, store: LocalAdminStore):
    """Return an async context manager that replaces the real lifespan.

    Runs the production init_services() with test doubles: every outbound
    call lands on the fake upstream, and the directory uses the given store.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        async with upstream.client() as http:
            await init_services(app, settings, http, store=store)
            yield

    return test_lifespan


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def upstream() -> FakeUpstream:
    return FakeUpstream()


@pytest.fixture
def make_client(upstream: FakeUpstream) -> Generator[Callable[..., TestClient], None, None]:
    """Yield a factory: make_client(settings=None, store=None) -> TestClient.

    follow_redirects=False is essential: the login tests assert on redirect
    Location headers, which disappear once the client follows them.
    """
    stack = ExitStack()

    def _make(settings: Optional[Settings] = None, store: Optional[LocalAdminStore] = None) -> TestClient:
        settings = settings or make_settings()
        store = store or LocalAdminStore("sqlite://")
        stack.callback(store.close)
        app.router.lifespan_context = _patch_lifespan(settings, upstream, store)
        # Rate-limit counters are process-wide; start every client from zero.
        limiter.reset()
        return stack.enter_context(TestClient(app, follow_redirects=False, raise_server_exceptions=True))

    yield _make
    stack.close()


@pytest.fixture
def client(make_client) -> TestClient:
    return make_client()


@pytest.fixture
def login_cookie() -> Callable[..., dict[str, str]]:
    """Return a helper that builds a Cookie header for a signed-in user.

    Uses the running app's token service, so call it after the client exists.
    The display name and avatar are set, so no profile refresh is triggered.
    """

    def _cookie(steam_id: str = DEV_ID, display_name: str = "Tester", avatar: str = "https://avatars.test/a.jpg"):
        token = app.state.tokens.issue_session_token(SessionUser(steam_id, display_name, avatar))
        return {"cookie": f"admin_auth={token}"}

    return _cookie
