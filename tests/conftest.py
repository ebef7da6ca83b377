"""
tests/conftest.py -- Shared test fixtures for VulnConsole tests.

This module provides:
  - _make_test_stores(): creates isolated in-memory DBs for auth + CMDB
  - _patch_lifespan(): wires test stores into app.state, bypassing real startup
  - stores / client: per-test stores and a TestClient bound to them
  - make_user / make_org / make_domain / make_vuln / auth_headers: factories

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

The env vars below must be set before any core/auth/api import because
get_settings() is cached on first call and api.limiter reads it at import.
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager

# CRITICAL: set before any core/auth/api import.
os.environ["DEBUG"] = "true"
os.environ["ALLOW_IDENTITY_OVERRIDES"] = "true"
os.environ["RATE_LIMIT_ENABLED"] = "false"

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.models import User
from auth.store import UserStore
from auth.tokens import create_access_token
from cmdb.models import Domain, Organization, Vulnerability
from cmdb.ownership import OwnershipResolver
from cmdb.store import CMDBStore

# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def _make_test_stores(db_suffix: str) -> tuple[UserStore, CMDBStore]:
    """Create isolated named shared-memory SQLite stores.

    Args:
        db_suffix: Unique string appended to the DB name so tests never
                   share state.
    """
    auth_url = f"sqlite:///file:test_auth_{db_suffix}?mode=memory&cache=shared&uri=true"
    cmdb_url = f"sqlite:///file:test_cmdb_{db_suffix}?mode=memory&cache=shared&uri=true"
    return UserStore(db_url=auth_url), CMDBStore(db_url=cmdb_url)


def _patch_lifespan(user_store: UserStore, cmdb: CMDBStore):
    """Return an async context manager that replaces the real lifespan.

    Wires pre-created test stores into app.state so TestClient routes see
    isolated test DBs rather than the on-disk databases.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.user_store = user_store
        app.state.cmdb = cmdb
        app.state.resolver = OwnershipResolver(cmdb, user_store)
        yield

    return test_lifespan


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def stores() -> Generator[tuple[UserStore, CMDBStore], None, None]:
    user_store, cmdb = _make_test_stores(uuid.uuid4().hex)
    yield user_store, cmdb
    user_store.close()
    cmdb.close()


@pytest.fixture
def user_store(stores) -> UserStore:
    return stores[0]


@pytest.fixture
def cmdb(stores) -> CMDBStore:
    return stores[1]


@pytest.fixture
def resolver(user_store, cmdb) -> OwnershipResolver:
    return OwnershipResolver(cmdb, user_store)


@pytest.fixture
def client(user_store, cmdb) -> Generator[TestClient, None, None]:
    """TestClient over the real app with a patched lifespan.

    Requests hit real route handlers, dependencies and exception handlers
    but use the isolated in-memory stores from the stores fixture.
    """
    app.router.lifespan_context = _patch_lifespan(user_store, cmdb)
    with TestClient(app, raise_server_exceptions=True) as c:
        yield c


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------


@pytest.fixture
def make_user(user_store):
    """Create a user and optionally attach roles.

    roles maps organization id -> (role, approved).
    """

    def _make(user_type: str = "standard", email: str | None = None, roles: dict | None = None) -> int:
        uid = user_store.create_user(
            User(email=email or f"{uuid.uuid4().hex[:10]}@example.gov", user_type=user_type)
        )
        for org_id, (role, approved) in (roles or {}).items():
            user_store.attach_role(uid, org_id, role=role, approved=approved)
        return uid

    return _make


@pytest.fixture
def make_org(cmdb):
    def _make(name: str = "Acme") -> int:
        return cmdb.create_organization(Organization(name=name, root_domains=[f"{name.lower()}.gov"]))

    return _make


@pytest.fixture
def make_domain(cmdb):
    """Create a pending domain. created_at may be given to fix sort order."""

    def _make(org_id: int, name: str | None = None, created_at: str = "") -> int:
        return cmdb.create_domain(
            Domain(organization_id=org_id, name=name or f"{uuid.uuid4().hex[:8]}.example.gov", created_at=created_at)
        )

    return _make


@pytest.fixture
def make_vuln(cmdb):
    def _make(domain_id: int, substate: str = "unconfirmed", title: str = "Open port", **kwargs) -> int:
        return cmdb.create_vulnerability(Vulnerability(domain_id=domain_id, title=title, substate=substate, **kwargs))

    return _make


@pytest.fixture
def auth_headers():
    """Return an Authorization header for user_id.

    Extra keyword arguments become inline user_type / roles claims, honoured
    because ALLOW_IDENTITY_OVERRIDES is on for the test run.
    """

    def _headers(user_id: int, **claims) -> dict[str, str]:
        return {"Authorization": f"Bearer {create_access_token(user_id=user_id, **claims)}"}

    return _headers
