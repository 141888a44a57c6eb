"""
tests/conftest.py -- Shared test fixtures for authgate.

This module provides:
  - FakeClock: a settable time source for counter windows and token expiry
  - FakeCaptchaSession: stands in for the requests.Session the captcha
    verifier posts to; "valid-captcha" is the only token it accepts
  - RecordingSender: a ResetLinkSender that records links instead of mailing
  - engine / service / users: an isolated in-memory auth stack per test
  - api_client: TestClient wired to that stack through a patched lifespan

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
for api_client because TestClient runs sync route handlers in a thread pool.
Plain :memory: DBs are per-connection and would present a blank schema to
each worker thread. Each test gets its own database name.

DEBUG and LOGIN_RATE_LIMIT must be set before any api/auth import so
get_settings() generates a SECRET_KEY and the slowapi cap does not interfere
with tests that make many login calls.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from unittest.mock import MagicMock

# CRITICAL: Set before any api/auth/core import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("LOGIN_RATE_LIMIT", "10000/minute")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.engine import Engine

from api.main import app
from auth.broker import ResetDeliveryError, ResetLinkSender
from auth.models import User
from auth.ratelimit import SqlCounterStore
from auth.service import AuthSessionService, build_service
from auth.store import UserStore, create_store_engine
from auth.tokens import hash_password
from core.config import Settings

VALID_CAPTCHA = "valid-captcha"
SITE_KEY = "site-key-for-tests"
TEST_IP = "203.0.113.7"

ACTIVE_EMAIL = "a@x.com"
ACTIVE_PASSWORD = "correct-password"
DISABLED_EMAIL = "off@x.com"
DISABLED_PASSWORD = "disabled-password"


# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------


class FakeClock:
    """Callable time source. advance() moves it forward."""

    def __init__(self, start: float = 1_800_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeCaptchaSession:
    """Minimal requests.Session stand-in for the siteverify endpoint."""

    def __init__(self, valid_tokens: tuple[str, ...] = (VALID_CAPTCHA,)) -> None:
        self.valid_tokens = set(valid_tokens)
        self.calls: list[dict] = []

    def post(self, url: str, data: dict | None = None, timeout: float | None = None):
        self.calls.append(dict(data or {}))
        resp = MagicMock()
        resp.raise_for_status.return_value = None
        resp.json.return_value = {"success": (data or {}).get("response") in self.valid_tokens}
        return resp


class RecordingSender(ResetLinkSender):
    """Records (email, token) pairs instead of sending mail."""

    def __init__(self) -> None:
        super().__init__("https://app.test/reset?token={token}&email={email}")
        self.sent: list[tuple[str, str]] = []
        self.fail = False

    def send(self, email: str, token: str) -> None:
        if self.fail:
            raise ResetDeliveryError("mail transport down")
        self.sent.append((email, token))


# ---------------------------------------------------------------------------
# Settings and stores
# ---------------------------------------------------------------------------


def make_settings(**overrides) -> Settings:
    values = {
        "debug": True,
        "secret_key": "s" * 48,
        "recaptcha_secret_key": "captcha-secret",
        "recaptcha_site_key": SITE_KEY,
        "captcha_exempt_attempts": 3,
        "identity_window_seconds": 900,
        "ip_max_attempts": 10,
        "ip_window_seconds": 3600,
        "token_ttl_seconds": 3600,
        "reset_throttle_seconds": 60,
    }
    values.update(overrides)
    return Settings(**values)


def shared_memory_url() -> str:
    return f"sqlite:///file:test_auth_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def engine() -> Generator[Engine, None, None]:
    eng = create_store_engine(shared_memory_url())
    yield eng
    eng.dispose()


@pytest.fixture
def user_store(engine: Engine) -> UserStore:
    return UserStore(engine)


@pytest.fixture
def users(user_store: UserStore) -> dict[str, int]:
    """One active and one disabled account. Returns email -> user id."""
    return {
        ACTIVE_EMAIL: user_store.create_user(
            User(email=ACTIVE_EMAIL, full_name="Active User", hashed_password=hash_password(ACTIVE_PASSWORD))
        ),
        DISABLED_EMAIL: user_store.create_user(
            User(
                email=DISABLED_EMAIL,
                full_name="Disabled User",
                hashed_password=hash_password(DISABLED_PASSWORD),
                is_active=False,
            )
        ),
    }


@pytest.fixture
def captcha_session() -> FakeCaptchaSession:
    return FakeCaptchaSession()


@pytest.fixture
def sender() -> RecordingSender:
    return RecordingSender()


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def service(
    settings: Settings,
    engine: Engine,
    clock: FakeClock,
    captcha_session: FakeCaptchaSession,
    sender: RecordingSender,
    users: dict[str, int],
) -> AuthSessionService:
    """Full session service over the test database.

    Counters use the SQL backend on the fake clock so window expiry can be
    tested without sleeping.
    """
    return build_service(
        settings,
        engine,
        counter_store=SqlCounterStore(engine, clock=clock),
        captcha_session=captcha_session,
        sender=sender,
    )


# ---------------------------------------------------------------------------
# API client
# ---------------------------------------------------------------------------


def _patch_lifespan(engine: Engine, service: AuthSessionService):
    """Return an async context manager that replaces the real lifespan.

    Wires the test service into app.state so routes see the isolated test
    database. The purge_task is a long-sleeping coroutine so shutdown can
    cancel a real asyncio.Task.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.engine = engine
        app.state.auth_service = service
        app.state.user_store = service.directory
        app.state.token_store = service.tokens
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


@pytest.fixture
def api_client(engine: Engine, service: AuthSessionService) -> Generator[TestClient, None, None]:
    """TestClient over the real app with the test service injected."""
    app.router.lifespan_context = _patch_lifespan(engine, service)
    with TestClient(app, raise_server_exceptions=True) as client:
        yield client
