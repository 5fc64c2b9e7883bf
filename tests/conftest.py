"""
tests/conftest.py -- Shared test fixtures for the auth service.

This module provides:
  - FrozenClock / clock: a settable clock injected wherever expiry is computed
  - make_service(): builds an AuthService over an isolated SQLite file
  - _patch_lifespan(): wires a test AuthService into app.state, bypassing real startup
  - client: TestClient on a fresh database per test (cookie jar starts empty)
  - api_client: module-scoped TestClient for read-only endpoint checks

Design: every fixture gets its own SQLite file under pytest's tmp_path. File
databases behave the same from every TestClient worker thread and from the
threads the concurrency tests spawn, and WAL mode applies to them for real.

ENVIRONMENT must be set before any api/auth/core import so get_settings()
generates throwaway signing secrets instead of raising. BCRYPT_ROUNDS=4 keeps
hashing fast; the cost factor does not change behaviour.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path

# CRITICAL: Set before any auth/core import so get_settings() auto-generates
# secrets in development mode instead of raising ValueError.
os.environ.setdefault("ENVIRONMENT", "development")
os.environ.setdefault("BCRYPT_ROUNDS", "4")

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app
from auth.service import AuthService, create_auth_service
from auth.transport import CookiePolicy
from core.config import get_settings, utcnow

API = "/api/v1"
ALICE_EMAIL = "alice@example.com"
ALICE_PASSWORD = "Passw0rd1"


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


def make_service(db_path: Path, clock=utcnow) -> AuthService:
    settings = get_settings().model_copy(update={"database_url": f"sqlite:///{db_path}"})
    return create_auth_service(settings, clock=clock)


def _patch_lifespan(service: AuthService):
    """Return an async context manager that replaces the real lifespan.

    The purge_task is a long-sleeping coroutine so shutdown has a real
    asyncio.Task to cancel, as it does in production.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.auth_service = service
        app.state.cookie_policy = CookiePolicy.from_settings(get_settings())
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


@pytest.fixture(autouse=True)
def _reset_rate_limits() -> Generator[None, None, None]:
    """Every test starts with empty rate-limit counters."""
    limiter.reset()
    yield
    limiter.reset()


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def service(tmp_path: Path, clock: FrozenClock) -> Generator[AuthService, None, None]:
    """AuthService on a private SQLite file with a frozen clock."""
    svc = make_service(tmp_path / "auth.db", clock=clock)
    yield svc
    svc.credentials.engine.dispose()


@pytest.fixture
def client(tmp_path: Path) -> Generator[TestClient, None, None]:
    """TestClient over the real app and routes, with a fresh database and cookie jar."""
    svc = make_service(tmp_path / "api.db")
    app.router.lifespan_context = _patch_lifespan(svc)
    with TestClient(app, raise_server_exceptions=True) as c:
        yield c
    svc.credentials.engine.dispose()


@pytest.fixture(scope="module")
def api_client(tmp_path_factory: pytest.TempPathFactory) -> Generator[TestClient, None, None]:
    """One TestClient per test module for endpoints that do not mutate state."""
    svc = make_service(tmp_path_factory.mktemp("api") / "api.db")
    app.router.lifespan_context = _patch_lifespan(svc)
    with TestClient(app, raise_server_exceptions=True) as c:
        yield c
    svc.credentials.engine.dispose()
