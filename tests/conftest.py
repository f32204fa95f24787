"""
tests/conftest.py -- Shared test fixtures for SessionKeeper.

This module provides:
  - FakeEmailSender: records outgoing mail, can be told to fail
  - FrozenClock: a controllable clock injected into the service and authenticator
  - make_test_store(): isolated named shared-memory SQLite store
  - store / mailer / clock / issuer / service / authenticator: per-test fixtures
  - register(): signup + verify helper returning a verified account
  - api_client: TestClient wired to an isolated store through a patched lifespan

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs sync route handlers in a thread pool. Plain :memory:
DBs are per-connection and would present a blank schema to each worker
thread. The named URI format (file:name?mode=memory&cache=shared&uri=true)
shares one in-memory instance across all connections in the same process.

Environment defaults must be set before any auth/core import so that
get_settings() generates dev signing secrets, hashes at the minimum bcrypt
cost and accepts TestClient's "testserver" Host header.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

# CRITICAL: Set before any auth/core import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("ALLOWED_HOSTS", '["*"]')

import pytest
from fastapi.testclient import TestClient

from api.main import app, stop_maintenance, wire_services
from auth.authenticator import RequestAuthenticator
from auth.mailer import EmailDeliveryError
from auth.models import AccountView
from auth.service import AuthService
from auth.store import AuthStore
from auth.tokens import TokenIssuer
from core.config import get_settings

PASSWORD = "correct-horse-battery"


# ---------------------------------------------------------------------------
# Collaborator fakes
# ---------------------------------------------------------------------------


class FakeEmailSender:
    """EmailSender that records messages instead of sending them.

    Set ``fail = True`` to make every send raise EmailDeliveryError.
    """

    def __init__(self) -> None:
        self.outbox: list[tuple[str, str, str | None]] = []
        self.fail = False

    def _record(self, kind: str, email: str, token: str | None) -> None:
        if self.fail:
            raise EmailDeliveryError("smtp unavailable")
        self.outbox.append((kind, email, token))

    def send_verification_email(self, email: str, token: str) -> None:
        self._record("verification", email, token)

    def send_password_reset_email(self, email: str, token: str) -> None:
        self._record("reset", email, token)

    def send_password_changed_notice(self, email: str) -> None:
        self._record("password_changed", email, None)

    def last_token(self, kind: str) -> str:
        return next(token for k, _email, token in reversed(self.outbox) if k == kind)


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = (start or datetime.now(timezone.utc)).replace(microsecond=0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def make_test_store(db_suffix: str) -> AuthStore:
    """Create an isolated named shared-memory SQLite store.

    Args:
        db_suffix: Unique string appended to the DB name so tests and modules
                   don't share state.
    """
    return AuthStore(db_url=f"sqlite:///file:test_auth_{db_suffix}?mode=memory&cache=shared&uri=true")


# ---------------------------------------------------------------------------
# Per-test fixtures -- fresh database for every test
# ---------------------------------------------------------------------------


@pytest.fixture
def store() -> Generator[AuthStore, None, None]:
    s = make_test_store(uuid.uuid4().hex)
    yield s
    s.close()


@pytest.fixture
def mailer() -> FakeEmailSender:
    return FakeEmailSender()


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def issuer() -> TokenIssuer:
    return TokenIssuer(get_settings())


@pytest.fixture
def service(store: AuthStore, mailer: FakeEmailSender, issuer: TokenIssuer, clock: FrozenClock) -> AuthService:
    return AuthService(store, mailer, issuer, get_settings(), clock=clock)


@pytest.fixture
def authenticator(store: AuthStore, issuer: TokenIssuer, clock: FrozenClock) -> RequestAuthenticator:
    return RequestAuthenticator(store, issuer, clock=clock)


@pytest.fixture
def register(service: AuthService, mailer: FakeEmailSender):
    """Return a helper that signs up and verifies an account."""

    def _register(email: str = "alice@example.com", password: str = PASSWORD, name: str = "Alice") -> AccountView:
        service.signup(name=name, email=email, password=password).unwrap()
        return service.verify_email(mailer.last_token("verification")).unwrap()

    return _register


# ---------------------------------------------------------------------------
# API client -- one TestClient per test module for speed
# ---------------------------------------------------------------------------


def _patch_lifespan(store: AuthStore, mailer: FakeEmailSender):
    """Return an async context manager that replaces the real lifespan.

    Wires the test store and fake mailer into app.state through the same
    wire_services() the real lifespan uses. The maintenance task is a
    long-sleeping coroutine so shutdown has a real task to cancel.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        wire_services(app, store, mailer, get_settings())
        app.state.maintenance_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        await stop_maintenance(app)

    return test_lifespan


@pytest.fixture(scope="module")
def api_client(request) -> Generator[tuple[TestClient, FakeEmailSender], None, None]:
    """Yield (client, mailer) for API integration tests.

    Each test module gets its own database. Tests inside a module share it,
    so they use distinct email addresses.
    """
    store = make_test_store(f"api_{request.module.__name__.rsplit('.', 1)[-1]}_{uuid.uuid4().hex[:8]}")
    mailer = FakeEmailSender()
    app.router.lifespan_context = _patch_lifespan(store, mailer)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, mailer

    store.close()
