"""
tests/conftest.py -- Shared test fixtures for the tenant portal tests.

This module provides:
  - make_store(): isolated named shared-memory PortalStore
  - seed_portal(): tenants + one account per role, all with PASSWORD
  - _patch_lifespan(): wires a test store and session manager into app.state
  - api_client: TestClient over the real app with a seeded store

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool and SessionManager
runs store calls on its own workers. Plain :memory: DBs are per-connection
and would present a blank schema to each worker thread.

DEBUG, ALLOWED_HOSTS and the rate limits must be set before any project
import so get_settings() auto-generates SECRET_KEY, accepts TestClient's
"testserver" host and does not throttle the test run.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

# CRITICAL: set before any auth/core/api import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("ALLOWED_HOSTS", '["testserver", "localhost"]')
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")
os.environ.setdefault("REFRESH_RATE_LIMIT", "1000/minute")

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.models import Account, Role, Tenant, TenantStatus
from auth.passwords import hash_password
from auth.sessions import SessionManager
from auth.store import PortalStore
from auth.tokens import TokenCodec

SECRET = "s" * 48
PASSWORD = "Correct-Horse-9!"
# Hashing is slow by design; every seeded account shares one hash.
_PASSWORD_HASH = hash_password(PASSWORD)


# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def make_store(db_suffix: str) -> PortalStore:
    """Create an isolated named shared-memory store.

    Args:
        db_suffix: Unique string appended to the DB name so test modules
                   don't share state (e.g. 'api', 'policy').
    """
    return PortalStore(db_url=f"sqlite:///file:test_portal_{db_suffix}?mode=memory&cache=shared&uri=true")


@dataclass
class Seed:
    """Ids of the seeded rows, by short name."""

    tenants: dict[str, str] = field(default_factory=dict)
    accounts: dict[str, str] = field(default_factory=dict)
    emails: dict[str, str] = field(default_factory=dict)


def seed_portal(store: PortalStore) -> Seed:
    """Seed two active tenants, one inactive tenant, and one account per role.

    acme:   owner (client_owner), alice + bob (user)
    globex: gowner (client_owner), gina (user)
    dormant (inactive): dora (user)
    admin:  platform admin, no tenant
    """
    seed = Seed()
    seed.tenants["acme"] = store.create_tenant(Tenant(name="Acme"))
    seed.tenants["globex"] = store.create_tenant(Tenant(name="Globex"))
    seed.tenants["dormant"] = store.create_tenant(Tenant(name="Dormant", status=TenantStatus.INACTIVE))

    rows = [
        ("admin", Role.ADMIN, None),
        ("owner", Role.CLIENT_OWNER, "acme"),
        ("alice", Role.USER, "acme"),
        ("bob", Role.USER, "acme"),
        ("gowner", Role.CLIENT_OWNER, "globex"),
        ("gina", Role.USER, "globex"),
        ("dora", Role.USER, "dormant"),
    ]
    for name, role, tenant in rows:
        email = f"{name}@portal.test"
        seed.emails[name] = email
        seed.accounts[name] = store.create_account(
            Account(
                email=email,
                display_name=name.title(),
                role=role,
                tenant_id=seed.tenants[tenant] if tenant else None,
                hashed_password=_PASSWORD_HASH,
            )
        )
    return seed


def make_manager(store: PortalStore, **kwargs) -> SessionManager:
    kwargs.setdefault("retry_backoff", 0.0)
    return SessionManager(store, TokenCodec(SECRET), **kwargs)


def _patch_lifespan(store: PortalStore, manager: SessionManager):
    """Return an async context manager that replaces the real lifespan.

    The purge_task is a long-sleeping coroutine that keeps asyncio happy
    (a real asyncio.Task is required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.store = store
        app.state.session_manager = manager
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@dataclass
class Portal:
    client: TestClient
    store: PortalStore
    manager: SessionManager
    seed: Seed

    def headers(self, name: str) -> dict[str, str]:
        """Bearer headers for a fresh session of the named seeded account."""
        grant = self.manager.login(self.seed.emails[name], PASSWORD)
        return {"Authorization": f"Bearer {grant.tokens.access_token}"}


@pytest.fixture(scope="module")
def api_client(request) -> Generator[Portal, None, None]:
    """Yield a Portal for API integration tests.

    One store per test module (named after the module) so modules that
    mutate accounts cannot affect each other.
    """
    store = make_store(request.module.__name__.rsplit(".", 1)[-1])
    seed = seed_portal(store)
    manager = make_manager(store)
    app.router.lifespan_context = _patch_lifespan(store, manager)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield Portal(client=client, store=store, manager=manager, seed=seed)

    manager.close()
    store.close()
