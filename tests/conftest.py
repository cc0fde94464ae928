"""
tests/conftest.py -- Shared test fixtures for WikiMillionaire auth tests.

This module provides:
  - _patch_lifespan(): wires a test provider into app.state, bypassing real startup
  - provider: module-scoped shared-memory SQLiteProvider
  - client: TestClient (follow_redirects=False) over the real ASGI app
  - settings / issuer: the same Settings and TokenIssuer the app uses
  - user: a freshly created user row

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs sync route handlers in a thread pool. Plain :memory:
DBs are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

Environment variables must be set before any api/ or core/ import: api.main
reads settings at import time (allowed hosts), and get_settings() is cached.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager

# CRITICAL: Set before any project import. DEBUG auto-generates JWT_SECRET and
# turns the Secure cookie flag off so TestClient (plain http) sends cookies back.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("ALLOWED_HOSTS", '["testserver", "localhost"]')
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")
os.environ.setdefault("WIKIMEDIA_CONSUMER_KEY", "test-consumer-key")
os.environ.setdefault("WIKIMEDIA_CONSUMER_SECRET", "test-consumer-secret")
os.environ.setdefault("WIKIMEDIA_CLIENT_ID", "test-client-id")
os.environ.setdefault("WIKIMEDIA_REDIRECT_URI", "http://testserver/api/auth/callback")

import pytest
from fastapi.testclient import TestClient
from helpers import make_provider, unique_subject

from asgi import app
from auth.models import User
from auth.store import SQLiteProvider
from auth.tokens import TokenIssuer
from core.config import Settings, get_settings


def _patch_lifespan(provider: SQLiteProvider):
    """Return an async context manager that replaces the real lifespan.

    The purge_task is a long-sleeping coroutine that keeps asyncio happy
    (a real asyncio.Task is required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.settings = get_settings()
        app.state.db_provider = provider
        app.state.token_issuer = TokenIssuer.from_settings(app.state.settings)
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


@pytest.fixture(scope="module")
def provider(request) -> Generator[SQLiteProvider, None, None]:
    """One isolated database per test module."""
    p = make_provider(request.module.__name__.rsplit(".", 1)[-1])
    yield p
    p.close()


@pytest.fixture
def client(provider: SQLiteProvider) -> Generator[TestClient, None, None]:
    """TestClient over the real app with a fresh cookie jar per test.

    follow_redirects=False is essential: tests assert on redirect Location
    headers and on the Set-Cookie headers of the redirect itself.
    """
    app.router.lifespan_context = _patch_lifespan(provider)
    with TestClient(app, follow_redirects=False, raise_server_exceptions=True) as c:
        yield c


@pytest.fixture
def settings() -> Settings:
    return get_settings()


@pytest.fixture
def issuer(settings: Settings) -> TokenIssuer:
    return TokenIssuer.from_settings(settings)


@pytest.fixture
def user(provider: SQLiteProvider) -> User:
    """A freshly created user with a unique Wikimedia subject."""
    return provider.create_user(User(username=f"user-{uuid.uuid4().hex[:8]}", wikimedia_id=unique_subject()))
