"""
tests/conftest.py -- Shared test fixtures for SessionGate.

This module provides:
  - make_store(): isolated named shared-memory SQLite store
  - RecordingNotifier: captures outgoing verification emails
  - MutableClock: a controllable clock for expiry / cooldown tests
  - signer, store, notifier, clock, issuer, sessions, accounts: unit fixtures
  - client: TestClient over the real app with a patched lifespan
  - register_and_verify(): helper that creates a verified, signed-in user

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.

Environment variables must be set before any api/core import:
  DEBUG=true             -- get_settings() auto-generates SECRET_KEY
  LOGIN_RATE_LIMIT       -- high enough that test traffic is never throttled
  ALLOWED_HOSTS          -- TestClient sends Host: testserver
"""

from __future__ import annotations

import itertools
import os
import re
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")
os.environ.setdefault("ALLOWED_HOSTS", '["*"]')

import pytest
from fastapi.testclient import TestClient

from api.main import app, configure_auth
from auth.accounts import AccountService
from auth.errors import DeliveryError
from auth.sessions import SessionManager
from auth.store import UserStore
from auth.tokens import TokenSigner
from auth.verification import VerificationCodeIssuer
from core.config import get_settings

TEST_SECRET = "test-secret-key-that-is-at-least-32-characters-long"
PASSWORD = "Secret123"

_db_counter = itertools.count()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def make_store(name: str) -> UserStore:
    """Return a UserStore on a fresh named shared-memory database."""
    url = f"sqlite:///file:test_{name}_{next(_db_counter)}?mode=memory&cache=shared&uri=true"
    return UserStore(db_url=url)


@dataclass
class RecordingNotifier:
    """Notifier that keeps every message. Set fail=True to simulate an outage."""

    sent: list[tuple[str, str, str]] = field(default_factory=list)
    fail: bool = False

    def send(self, to_email: str, subject: str, body: str) -> None:
        if self.fail:
            raise DeliveryError()
        self.sent.append((to_email, subject, body))

    def last_code(self, email: str | None = None) -> str:
        for to_email, _subject, body in reversed(self.sent):
            if email is None or to_email == email:
                match = re.search(r"\d{5}", body)
                if match:
                    return match.group(0)
        raise AssertionError(f"no verification code sent to {email}")


class MutableClock:
    """Callable clock whose time only moves when a test says so."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime.now(timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


# ---------------------------------------------------------------------------
# Unit fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def store() -> Generator[UserStore, None, None]:
    user_store = make_store("unit")
    yield user_store
    user_store.close()


@pytest.fixture
def signer() -> TokenSigner:
    return TokenSigner(TEST_SECRET)


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def clock() -> MutableClock:
    return MutableClock()


@pytest.fixture
def issuer(store: UserStore, notifier: RecordingNotifier, clock: MutableClock) -> VerificationCodeIssuer:
    return VerificationCodeIssuer(store, notifier, clock=clock)


@pytest.fixture
def sessions(store: UserStore, signer: TokenSigner, clock: MutableClock) -> SessionManager:
    return SessionManager(store, signer, clock=clock)


@pytest.fixture
def accounts(store: UserStore, issuer: VerificationCodeIssuer, sessions: SessionManager) -> AccountService:
    return AccountService(store, issuer, sessions)


# ---------------------------------------------------------------------------
# Integration fixtures
# ---------------------------------------------------------------------------


def _patch_lifespan(user_store: UserStore, notifier: RecordingNotifier):
    """Return an async context manager that replaces the real lifespan.

    Wires the test store and recording notifier into app.state through the
    same configure_auth() the production lifespan uses.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        configure_auth(app, get_settings(), user_store, notifier)
        yield

    return test_lifespan


@dataclass
class ApiHarness:
    client: TestClient
    store: UserStore
    notifier: RecordingNotifier


@pytest.fixture
def api() -> Generator[ApiHarness, None, None]:
    """Yield a TestClient (follow_redirects=False) bound to a fresh store.

    follow_redirects=False is essential: gate tests assert on redirect
    Location headers, which are invisible once the client follows them.
    """
    user_store = make_store("api")
    recording = RecordingNotifier()
    app.router.lifespan_context = _patch_lifespan(user_store, recording)

    with TestClient(app, follow_redirects=False, raise_server_exceptions=True) as client:
        yield ApiHarness(client=client, store=user_store, notifier=recording)

    user_store.close()


def register_and_verify(api: ApiHarness, email: str = "alice@example.com", name: str = "Alice") -> str:
    """Register, verify with the emailed code and return the user id.

    The client ends up holding a valid session cookie.
    """
    resp = api.client.post(
        "/api/v1/auth/register",
        json={"name": name, "email": email, "password": PASSWORD, "confirm_password": PASSWORD},
    )
    assert resp.status_code == 201, resp.text
    user_id = resp.json()["user_id"]
    resp = api.client.post(
        "/api/v1/auth/verify",
        json={"user_id": user_id, "code": api.notifier.last_code(email)},
    )
    assert resp.status_code == 200, resp.text
    return user_id
