"""
tests/conftest.py -- Shared test fixtures for the IAM console.

This module provides:
  - make_token_store(): isolated in-memory token store per test
  - make_principal(): a Principal with sensible defaults
  - make_jwt(): a backend-style JWT carrying a user_id claim
  - console: the collaborators the lifespan would build, with a mocked gateway
  - web_client: TestClient over asgi.app with follow_redirects=False

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs sync route handlers in a thread pool. Plain :memory:
DBs are per-connection and would present a blank schema to each worker
thread. The named URI format (file:name?mode=memory&cache=shared&uri=true)
shares one in-memory instance across all connections in the same process.

The gateway is a MagicMock(spec=ApiClient): route tests drive the console's
own state machines, never a real backend.
"""

from __future__ import annotations

import itertools
from collections.abc import Generator
from contextlib import asynccontextmanager
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient
from jose import jwt

from api.limiter import limiter
from asgi import app
from auth.flow import LoginFlow
from auth.session import SessionStore
from auth.store import TokenStore
from core.config import get_settings
from core.gateway import ApiClient
from core.models import Principal, Role
from vault.clipboard import BufferClipboard
from vault.visibility import SecretVisibilityCache

_db_counter = itertools.count()


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


def make_token_store() -> TokenStore:
    """A fresh named shared-memory store; the counter keeps tests isolated."""
    name = f"test_session_{next(_db_counter)}"
    return TokenStore(f"sqlite:///file:{name}?mode=memory&cache=shared&uri=true")


def make_principal(username: str = "alice", user_id: str = "u-1", roles: tuple[str, ...] = ("admin",)) -> Principal:
    return Principal(
        id=user_id,
        username=username,
        email=f"{username}@example.com",
        roles=[Role(id=f"r-{name}", name=name) for name in roles],
    )


def make_jwt(user_id: str = "u-1") -> str:
    return jwt.encode({"user_id": user_id, "username": "alice"}, "backend-secret", algorithm="HS256")


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def token_store() -> Generator[TokenStore, None, None]:
    store = make_token_store()
    yield store
    store.close()


@pytest.fixture
def session(token_store: TokenStore) -> SessionStore:
    return SessionStore(token_store)


@pytest.fixture
def console(token_store: TokenStore, session: SessionStore) -> SimpleNamespace:
    """Everything api.main.lifespan puts on app.state, around a mocked gateway."""
    client = MagicMock(spec=ApiClient)
    client.list_users.return_value = []
    client.list_secrets.return_value = []
    client.list_audit.return_value = []
    clipboard = BufferClipboard()
    vault = SecretVisibilityCache(client, clipboard, refetch_on_reveal=True)
    session.subscribe(vault.on_session_change)
    return SimpleNamespace(
        settings=get_settings(),
        token_store=token_store,
        session=session,
        client=client,
        login_flow=LoginFlow(client, session),
        clipboard=clipboard,
        vault=vault,
    )


@pytest.fixture
def web_client(console: SimpleNamespace) -> Generator[TestClient, None, None]:
    """TestClient over the assembled app with the test collaborators wired in.

    follow_redirects=False is essential for web route tests: we assert on
    redirect *locations* (e.g. 302 to /login), which are invisible once
    the client follows the redirect and returns the final 200 response.

    base_url must be an allowed host; TrustedHostMiddleware rejects the
    TestClient default "testserver".
    """

    @asynccontextmanager
    async def test_lifespan(app):
        for name, value in vars(console).items():
            setattr(app.state, name, value)
        yield

    app.router.lifespan_context = test_lifespan
    limiter.enabled = False
    with TestClient(app, base_url="http://localhost", follow_redirects=False, raise_server_exceptions=True) as client:
        yield client
    limiter.enabled = True
    limiter.reset()
