"""
tests/conftest.py -- Shared test fixtures for the auth service.

This module provides:
  - clock / keys / registry / user_store / events: the core components,
    each built explicitly the way the lifespan builds them
  - service: an AuthService wired from those components
  - make_user: factory fixture that stores a user with a real bcrypt hash
  - _patch_lifespan(): wires test components into app.state, bypassing real startup
  - api_client: TestClient plus an admin user and its access token

Design: the API fixture uses a named shared-memory SQLite URI (not plain
:memory:) because TestClient runs sync route handlers in a thread pool.
Plain :memory: DBs are per-connection and would present a blank schema to
each worker thread.

Environment must be set before any core/auth import: DEBUG lets
get_settings() auto-generate SECRET_KEY, BCRYPT_ROUNDS=4 keeps hashing fast,
and the login rate limit is raised so repeated logins across tests are not
throttled.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timezone

# CRITICAL: set before any auth/core import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.events import RecordingEventPublisher
from auth.keys import KeyProvider, SigningKey
from auth.models import UserRecord
from auth.passwords import hash_password
from auth.revocation import InMemoryRevocationRegistry
from auth.service import AuthService
from auth.store import UserStore
from auth.tokens import TokenIssuer, TokenValidator
from auth.verifier import CredentialVerifier
from core.clock import FrozenClock, SystemClock
from core.config import get_settings

TEST_ROUNDS = 4
T0 = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)
TEST_SECRET = "test-signing-secret-0123456789abcdef"


# ---------------------------------------------------------------------------
# Core component fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(T0)


@pytest.fixture
def keys() -> KeyProvider:
    return KeyProvider(SigningKey(key_id="test", secret=TEST_SECRET))


@pytest.fixture
def registry() -> InMemoryRevocationRegistry:
    return InMemoryRevocationRegistry()


@pytest.fixture
def user_store(clock: FrozenClock) -> Generator[UserStore, None, None]:
    store = UserStore("sqlite:///:memory:", clock=clock)
    yield store
    store.close()


@pytest.fixture
def events() -> RecordingEventPublisher:
    return RecordingEventPublisher()


@pytest.fixture
def issuer(keys: KeyProvider, clock: FrozenClock) -> TokenIssuer:
    return TokenIssuer(keys, clock)


@pytest.fixture
def validator(keys: KeyProvider, registry: InMemoryRevocationRegistry, clock: FrozenClock) -> TokenValidator:
    return TokenValidator(keys, registry, clock)


@pytest.fixture
def service(user_store, registry, keys, clock, events, issuer, validator) -> AuthService:
    return AuthService(
        users=user_store,
        registry=registry,
        verifier=CredentialVerifier(user_store, clock, dummy_rounds=TEST_ROUNDS),
        issuer=issuer,
        validator=validator,
        clock=clock,
        events=events,
        password_rounds=TEST_ROUNDS,
    )


@pytest.fixture
def make_user(user_store: UserStore):
    """Return a factory that stores a user with a real bcrypt hash.

    Usage:
        alice = make_user("alice", "secret123", roles={"user"}, enabled=False)
    """

    def factory(username: str, password: str, roles=("user",), **flags) -> UserRecord:
        user_id = user_store.create_user(
            UserRecord(
                username=username,
                email=f"{username}@example.com",
                hashed_password=hash_password(password, TEST_ROUNDS),
                roles=frozenset(roles),
                **flags,
            )
        )
        return user_store.get_by_id(user_id)

    return factory


# ---------------------------------------------------------------------------
# API fixtures
# ---------------------------------------------------------------------------


def _patch_lifespan(user_store: UserStore, service: AuthService, keys: KeyProvider):
    """Return an async context manager that replaces the real lifespan.

    The prune_task is a long-sleeping coroutine so shutdown's .cancel() has a
    real asyncio.Task to act on.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.settings = get_settings()
        app.state.keys = keys
        app.state.user_store = user_store
        app.state.revocations = service.registry
        app.state.auth_service = service
        app.state.prune_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.prune_task.cancel()

    return test_lifespan


@pytest.fixture(scope="module")
def api_client() -> Generator[tuple[TestClient, str, str], None, None]:
    """Yield (client, admin_access_token, admin_user_id).

    The admin user is created before the client starts: username
    "testadmin", password "testpass123", roles {"admin", "user"}.
    """
    settings = get_settings()
    url = f"sqlite:///file:test_auth_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"
    clock = SystemClock()
    user_store = UserStore(url, clock=clock)
    keys = KeyProvider.from_settings(settings)
    service = AuthService.build(settings, user_store, InMemoryRevocationRegistry(), keys, clock)

    admin = service.register("testadmin", "admin@example.com", "testpass123", roles=["admin", "user"])
    token = service.issuer.issue(admin.id, admin.roles, "access").value

    app.router.lifespan_context = _patch_lifespan(user_store, service, keys)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, token, admin.id

    user_store.close()
