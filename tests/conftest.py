"""
tests/conftest.py -- Shared test fixtures for userapi tests.

This module provides:
  - make_store(): isolated in-memory AccountStore per test
  - FakeMailer: records verification mails instead of sending them
  - store / mailer / lifecycle: unit-test fixtures for the engine
  - api_client: TestClient wired to a fresh store and FakeMailer

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs sync route handlers in a thread pool. Plain :memory:
DBs are per-connection and would present a blank schema to each worker
thread. The named URI format (file:name?mode=memory&cache=shared&uri=true)
shares one in-memory instance across all connections in the same process.

DEBUG and BCRYPT_ROUNDS must be set before any auth/core import:
get_settings() is read at module load, DEBUG lets it auto-generate
SECRET_KEY, and the minimum bcrypt cost keeps the suite fast.
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

# CRITICAL: Set before any auth/core import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "4")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import text

from api.main import app
from auth.errors import NotificationFailure
from auth.lifecycle import CredentialLifecycle
from auth.store import AccountStore

BASE_URL = "http://localhost"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def make_store(name: str | None = None) -> AccountStore:
    """Create an AccountStore on a uniquely named shared-memory SQLite database."""
    name = name or uuid.uuid4().hex
    return AccountStore(db_url=f"sqlite:///file:test_{name}?mode=memory&cache=shared&uri=true")


def count_rows(store: AccountStore) -> int:
    with store.engine.connect() as conn:
        return conn.execute(text("SELECT COUNT(*) FROM users")).scalar() or 0


def fetch_row(store: AccountStore, email: str):
    """Read the raw row for an email, verified or not."""
    with store.engine.connect() as conn:
        return conn.execute(text("SELECT * FROM users WHERE email = :email"), {"email": email}).fetchone()


def cookie_value(resp, name: str) -> str | None:
    """Return the value a response sets for cookie `name`, parsed from Set-Cookie headers."""
    for header in resp.headers.get_list("set-cookie"):
        first = header.split(";", 1)[0]
        key, _, value = first.partition("=")
        if key.strip() == name:
            return value.strip().strip('"')
    return None


@dataclass
class SentMail:
    to_email: str
    verification_code: str
    display_name: str


@dataclass
class FakeMailer:
    """Mailer double: records every send; raises NotificationFailure when fail=True."""

    fail: bool = False
    sent: list[SentMail] = field(default_factory=list)

    def send(self, to_email: str, verification_code: str, display_name: str) -> None:
        if self.fail:
            raise NotificationFailure()
        self.sent.append(SentMail(to_email, verification_code, display_name))

    def close(self) -> None:
        pass

    @property
    def last_code(self) -> str:
        return self.sent[-1].verification_code


# ---------------------------------------------------------------------------
# Unit-test fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def store() -> Generator[AccountStore, None, None]:
    s = make_store()
    yield s
    s.close()


@pytest.fixture
def mailer() -> FakeMailer:
    return FakeMailer()


@pytest.fixture
def lifecycle(store: AccountStore, mailer: FakeMailer) -> CredentialLifecycle:
    return CredentialLifecycle(store, mailer)


# ---------------------------------------------------------------------------
# Integration fixture
# ---------------------------------------------------------------------------


def _patch_lifespan(store: AccountStore, mailer: FakeMailer):
    """Return a lifespan that wires the test store and FakeMailer into app.state."""

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.account_store = store
        app.state.mailer = mailer
        app.state.lifecycle = CredentialLifecycle(store, mailer)
        yield

    return test_lifespan


@pytest.fixture
def api_client() -> Generator[tuple[TestClient, FakeMailer, AccountStore], None, None]:
    """Yield (client, mailer, store) backed by a fresh in-memory store.

    base_url uses "localhost" so requests pass TrustedHostMiddleware.
    """
    store = make_store()
    mailer = FakeMailer()
    app.router.lifespan_context = _patch_lifespan(store, mailer)

    with TestClient(app, base_url=BASE_URL, raise_server_exceptions=True) as client:
        yield client, mailer, store

    store.close()
