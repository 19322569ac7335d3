"""
tests/conftest.py -- Shared test fixtures for crmctl integration tests.

This module provides:
  - make_manager(): a Manager over an isolated in-memory DB and fakeredis
  - seed_accounts(): the admin and readonly accounts most tests log in as
  - make_client(): TestClient for a fresh app with a patched lifespan
  - token_headers(): X-Access-Token header for a seeded account
  - api_client: module-scoped (client, manager) pair for route tests
  - manager: function-scoped unseeded Manager for unit tests

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

Redis collaborators run on fakeredis; each Manager gets its own FakeServer.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager

# CRITICAL: set before any core import. Debug mode lets Settings() start
# without a secret key, and /dev/null keeps the repo's config.ini out of tests.
os.environ.setdefault("CRMCTL_APP__DEBUG", "true")
os.environ["CRMCTL_CONFIG"] = os.devnull

import fakeredis
import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import create_app
from auth.authenticator import Authenticator, BuiltinAuthenticator
from core.config import AppSection, Settings
from core.models import Account
from manager.manager import Manager
from store.kv import RedisTokenStore
from store.sessions import SessionStore
from store.sql import SQLStore

TEST_SECRET = "test-secret-key-0123456789abcdef-0123456789"

ADMIN = ("testadmin", "testpass123")
VIEWER = ("viewer", "viewpass123")

# Rate limits are exercised by slowapi's own tests; keep login unthrottled here.
limiter.enabled = False


def make_settings(**app_overrides) -> Settings:
    return Settings(app=AppSection(secret_key=TEST_SECRET, debug=True, **app_overrides))


def make_manager(
    db_suffix: str,
    authenticator: Authenticator | None = None,
    redis_tokens: bool = True,
    sessions: bool = True,
    token_lifetime: int = 3600,
) -> Manager:
    """Build a Manager over isolated stores.

    Args:
        db_suffix: Readable part of the DB name; a uuid keeps each call isolated.
        redis_tokens: False keeps auth tokens in the SQL store, as when [redis]
                      is not configured.
    """
    db_url = f"sqlite:///file:test_{db_suffix}_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"
    client = fakeredis.FakeRedis(server=fakeredis.FakeServer(), decode_responses=True)
    return Manager(
        store=SQLStore(db_url),
        authenticator=authenticator or BuiltinAuthenticator(),
        secret_key=TEST_SECRET,
        sessions=SessionStore(client) if sessions else None,
        tokens=RedisTokenStore(client) if redis_tokens else None,
        token_lifetime=token_lifetime,
    )


def seed_accounts(manager: Manager) -> None:
    manager.save_account(Account(username=ADMIN[0], roles=["admin"]), password=ADMIN[1])
    manager.save_account(Account(username=VIEWER[0], roles=["readonly"]), password=VIEWER[1])


def token_headers(manager: Manager, username: str) -> dict[str, str]:
    token = manager.new_auth_token(username, "pytest")
    return {"X-Access-Token": f"{username}:{token.token}"}


def _patch_lifespan(manager: Manager):
    """Return an async context manager that replaces the real lifespan.

    Wires the pre-built test Manager into app.state so TestClient routes see
    isolated stores rather than whatever config/config.ini points at.

    The gc_task is a long-sleeping coroutine that keeps asyncio happy
    (a real asyncio.Task is required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.manager = manager
        app.state.gc_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.gc_task.cancel()

    return test_lifespan


def make_client(manager: Manager, **app_overrides) -> TestClient:
    """TestClient for a new app; use it as a context manager to run the lifespan."""
    app = create_app(make_settings(**app_overrides))
    app.router.lifespan_context = _patch_lifespan(manager)
    return TestClient(app, raise_server_exceptions=True)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(scope="module")
def api_client() -> Generator[tuple[TestClient, Manager], None, None]:
    """Yield (client, manager) for API integration tests.

    The TestClient uses the real FastAPI app with a patched lifespan so
    tests hit the real middleware chain and route handlers. testadmin (admin)
    and viewer (readonly) exist before the client starts.
    """
    manager = make_manager("api")
    seed_accounts(manager)
    with make_client(manager) as client:
        yield client, manager
    manager.close()


@pytest.fixture
def manager() -> Generator[Manager, None, None]:
    m = make_manager("unit")
    yield m
    m.close()
