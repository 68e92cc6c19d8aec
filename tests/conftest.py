"""
tests/conftest.py -- Shared test fixtures for tokenward unit and integration tests.

This module provides:
  - FakeClock: a settable clock injected into stores and the token codec
  - AuthHarness / harness: the full auth object graph over an isolated
    in-memory database, for service and store tests
  - file_harness: the same graph over a file-backed database, for tests
    that hit the store from several threads at once
  - _patch_lifespan(): lifespan replacement that calls configure_state() on a test engine
  - api_client: TestClient with an administrator bearer token

Databases: each harness and each API module gets its own named in-memory
SQLite (file:<name>?mode=memory&cache=shared). TestClient handlers run on
worker threads, and a plain :memory: URL would hand every new pool
connection an empty database.

Shared-cache memory databases use table-level locks, so genuinely parallel
writers can fail with "database table is locked". Concurrency tests use a
WAL-mode file database in tmp_path instead.

DEBUG is set before the first project import so get_settings() at import
time does not fail for lack of a SECRET_KEY.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Callable, Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

# Must precede the api/auth/core imports below; api.main calls get_settings() at import.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.engine import Engine

from api.limiter import limiter
from api.main import app, configure_state
from auth import permissions
from auth.blacklist import BlacklistStore
from auth.credentials import CredentialVerifier, hash_password
from auth.database import create_auth_engine, utcnow
from auth.models import AuthType, RequestContext, User
from auth.refresh_tokens import RefreshTokenStore
from auth.service import AuthService
from auth.sessions import SessionTracker
from auth.store import UserStore
from auth.tokens import TokenCodec
from core.config import Settings

TEST_SECRET = "test-secret-key-that-is-long-enough-for-hs256"
TEST_ISSUER = "tokenward"
TEST_AUDIENCE = "tokenward-api"

# bcrypt is slow on purpose; hash the shared test password once.
DEFAULT_PASSWORD = "correct-horse-battery"
_DEFAULT_HASH = hash_password(DEFAULT_PASSWORD)


def memory_db_url(name: str) -> str:
    return f"sqlite:///file:{name}?mode=memory&cache=shared&uri=true"


# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------


class FakeClock:
    """Callable clock. Starts at a fixed instant and only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


# ---------------------------------------------------------------------------
# In-process harness
# ---------------------------------------------------------------------------


@dataclass
class AuthHarness:
    engine: Engine
    clock: Callable[[], datetime]
    users: UserStore
    refresh_tokens: RefreshTokenStore
    blacklist: BlacklistStore
    sessions: SessionTracker
    codec: TokenCodec
    service: AuthService

    def add_user(
        self,
        username: str = "alice",
        email: str | None = None,
        password: str | None = DEFAULT_PASSWORD,
        mask: int = permissions.BASIC_USER,
        auth_type: AuthType = AuthType.PASSWORD,
        is_active: bool = True,
        external_identity: str | None = None,
    ) -> User:
        if password is None:
            hashed = None
        elif password == DEFAULT_PASSWORD:
            hashed = _DEFAULT_HASH
        else:
            hashed = hash_password(password)
        user_id = self.users.create_user(
            User(
                username=username,
                email=email or f"{username}@example.com",
                hashed_password=hashed,
                permissions=mask,
                auth_type=auth_type,
                is_active=is_active,
                external_identity=external_identity,
            )
        )
        return self.users.get_by_id(user_id)


def build_harness(
    engine: Engine,
    clock: Callable[[], datetime],
    max_refresh_tokens: int = 5,
) -> AuthHarness:
    users = UserStore(engine, clock=clock)
    refresh_store = RefreshTokenStore(engine, clock=clock)
    blacklist = BlacklistStore(engine, clock=clock)
    sessions = SessionTracker(engine, clock=clock)
    codec = TokenCodec(TEST_SECRET, TEST_ISSUER, TEST_AUDIENCE, clock=clock)
    service = AuthService(
        users,
        refresh_store,
        blacklist,
        sessions,
        codec,
        CredentialVerifier(users),
        refresh_token_lifetime=timedelta(days=7),
        max_refresh_tokens_per_user=max_refresh_tokens,
        clock=clock,
    )
    return AuthHarness(engine, clock, users, refresh_store, blacklist, sessions, codec, service)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def harness(clock: FakeClock) -> Generator[AuthHarness, None, None]:
    """Fresh auth graph over a uniquely named in-memory database."""
    engine = create_auth_engine(memory_db_url(f"test_auth_{uuid.uuid4().hex}"))
    yield build_harness(engine, clock)
    engine.dispose()


@pytest.fixture
def file_harness(tmp_path) -> Generator[AuthHarness, None, None]:
    """Auth graph over a WAL file database with the real clock, for threaded tests."""
    engine = create_auth_engine(f"sqlite:///{tmp_path / 'auth.db'}")
    yield build_harness(engine, utcnow)
    engine.dispose()


@pytest.fixture
def ctx() -> RequestContext:
    return RequestContext(ip_address="203.0.113.7", user_agent="pytest")


# ---------------------------------------------------------------------------
# API fixtures
# ---------------------------------------------------------------------------


def _test_settings(db_suffix: str) -> Settings:
    return Settings(
        debug=True,
        secret_key=TEST_SECRET,
        database_url=memory_db_url(f"test_api_{db_suffix}"),
    )


def _patch_lifespan(settings: Settings, engine: Engine):
    """Return an async context manager that replaces the real lifespan.

    Wires the test engine into app.state through the same configure_state()
    the real lifespan uses. The cleanup task is a long-sleeping coroutine so
    shutdown can cancel it; sweeps are exercised directly in test_cleanup.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        configure_state(app, settings, engine)
        app.state.cleanup_stop = asyncio.Event()
        app.state.cleanup_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.cleanup_task.cancel()

    return test_lifespan


@pytest.fixture(autouse=True)
def _reset_rate_limits():
    """Every test starts with empty slowapi counters."""
    limiter.reset()
    yield


@pytest.fixture(scope="module")
def api_client() -> Generator[tuple[TestClient, str, int], None, None]:
    """Yield (client, token, admin_id) for API integration tests.

    The TestClient uses the real FastAPI app with a patched lifespan so
    tests hit real route handlers but use an isolated in-memory database.
    The administrator is created before the client starts; its bearer token
    is minted through the app's own codec once the state is wired.
    """
    settings = _test_settings(uuid.uuid4().hex)
    engine = create_auth_engine(settings.database_url)

    user_store = UserStore(engine)
    admin_id = user_store.create_user(
        User(
            username="testadmin",
            email="testadmin@example.com",
            hashed_password=_DEFAULT_HASH,
            permissions=permissions.ADMINISTRATOR,
        )
    )

    app.router.lifespan_context = _patch_lifespan(settings, engine)

    with TestClient(app, raise_server_exceptions=True) as client:
        admin = user_store.get_by_id(admin_id)
        token = client.app.state.auth_service.codec.issue_access_token(admin, admin.token_version)
        yield client, token, admin_id

    engine.dispose()


def auth_header(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}
