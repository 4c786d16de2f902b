"""
tests/conftest.py -- Shared test fixtures for the church auth test suite.

This module provides:
  - user_store / session_store / rate_limiter / guard: isolated unit-level
    objects backed by a fresh in-memory SQLite database per test
  - make_user(): helper that inserts an account with a hashed password
  - _patch_lifespan(): wires test stores into app.state, bypassing real startup
  - api_env: module-scoped TestClient plus Admin / Pastor / Member sessions
  - api: function-scoped view of api_env with every rate-limit bucket emptied

Design: in-memory SQLite URLs use StaticPool inside UserStore, so the
TestClient worker threads and the test body all see the same database.

DEBUG and BCRYPT_ROUNDS must be set before any auth/core import:
get_settings() is cached at first call, DEBUG lets it auto-generate
SECRET_KEY, and a low bcrypt cost keeps the suite fast.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

# CRITICAL: set before any auth/core import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "4")

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app, build_guard
from auth.middleware import Guard
from auth.models import Role, User
from auth.ratelimit import RateLimiter
from auth.sessions import SessionStore
from auth.store import UserStore
from auth.tokens import hash_password

MEMORY_DB = "sqlite:///:memory:"

ADMIN_PASSWORD = "AdminPass123"
PASTOR_PASSWORD = "PastorPass123"
MEMBER_PASSWORD = "MemberPass123"


def make_user(
    store: UserStore,
    username: str,
    password: str = "Passw0rdOk",
    role: Role = Role.MEMBER,
    member_id: int | None = None,
    is_active: bool = True,
) -> int:
    """Insert an account and return its id."""
    return store.create_user(
        User(
            username=username,
            email=f"{username}@church.example.org",
            role=role,
            hashed_password=hash_password(password),
            member_id=member_id,
            is_active=is_active,
        )
    )


def bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


# ---------------------------------------------------------------------------
# Unit-level fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def user_store() -> Generator[UserStore, None, None]:
    store = UserStore(db_url=MEMORY_DB)
    yield store
    store.close()


@pytest.fixture
def session_store(user_store: UserStore) -> SessionStore:
    return SessionStore(user_store, default_ttl=3600)


@pytest.fixture
def rate_limiter() -> RateLimiter:
    return RateLimiter(max_attempts=5, window_seconds=900)


@pytest.fixture
def guard(session_store: SessionStore, rate_limiter: RateLimiter) -> Guard:
    """Guard with the default responder, which returns (status, body)."""
    return Guard(session_store, rate_limiter)


# ---------------------------------------------------------------------------
# API fixtures
# ---------------------------------------------------------------------------


def _patch_lifespan(user_store: UserStore, session_store: SessionStore, rate_limiter: RateLimiter, guard: Guard):
    """Return an async context manager that replaces the real lifespan.

    The sweep_task is a long-sleeping coroutine so shutdown has a real
    asyncio.Task to cancel, as in production.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.user_store = user_store
        app.state.session_store = session_store
        app.state.rate_limiter = rate_limiter
        app.state.guard = guard
        app.state.sweep_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.sweep_task.cancel()

    return test_lifespan


@dataclass
class ApiEnv:
    client: TestClient
    user_store: UserStore
    session_store: SessionStore
    rate_limiter: RateLimiter
    ids: dict[str, int] = field(default_factory=dict)
    tokens: dict[str, str] = field(default_factory=dict)

    def headers(self, who: str) -> dict[str, str]:
        return bearer(self.tokens[who])


@pytest.fixture(scope="module")
def api_env() -> Generator[ApiEnv, None, None]:
    """Yield an ApiEnv with admin, pastor and member (member_id=42) accounts.

    Each account has one open session whose token is in env.tokens. Tests
    that deactivate or lock an account create their own throwaway user.
    """
    user_store = UserStore(db_url=MEMORY_DB)
    session_store, rate_limiter, guard = build_guard(user_store)

    env = ApiEnv(client=None, user_store=user_store, session_store=session_store, rate_limiter=rate_limiter)
    env.ids["admin"] = make_user(user_store, "admin", ADMIN_PASSWORD, Role.ADMIN)
    env.ids["pastor"] = make_user(user_store, "pastor", PASTOR_PASSWORD, Role.PASTOR)
    env.ids["member"] = make_user(user_store, "member", MEMBER_PASSWORD, Role.MEMBER, member_id=42)
    for who, uid in env.ids.items():
        env.tokens[who] = session_store.create(uid).token

    app.router.lifespan_context = _patch_lifespan(user_store, session_store, rate_limiter, guard)

    with TestClient(app, raise_server_exceptions=True) as client:
        env.client = client
        yield env

    user_store.close()


@pytest.fixture
def api(api_env: ApiEnv) -> ApiEnv:
    """api_env with the per-username and per-address login buckets emptied."""
    api_env.rate_limiter.reset()
    limiter.reset()
    return api_env
