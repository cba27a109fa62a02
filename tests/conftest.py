"""
tests/conftest.py — Shared Test Fixtures
=========================================
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import Engine, create_engine
from sqlalchemy.pool import StaticPool

from opsdash.config import DashboardConfig
from opsdash.database.engine import bootstrap_schema, configure_db_timeout
from opsdash.errors import InvalidFormat
from opsdash.services.identity import Identity
from opsdash.services.metrics_source import MetricsSource
from opsdash.services.session import SessionAuthority
from opsdash.services.user_store import UserStore

TEST_JWT_SECRET = "test-secret-for-pytest-only-" + "x" * 40  # > 32 chars


# Helper to run async tests without pytest-asyncio
def run_async(coro):
    """Run *coro* on a fresh event loop."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


class FakeClock:
    """Settable clock for token lifetime and timestamp tests."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2025, 1, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeVerifier:
    """Identity verifier that knows a fixed set of credentials."""

    def __init__(self) -> None:
        self.identities: dict[str, Identity] = {}
        self.calls: list[str] = []

    def register(self, credential: str, email: str, name: str = "", picture: str | None = None,
                 subject: str | None = None) -> Identity:
        identity = Identity(
            subject=subject or f"google-{email}",
            email=email.lower(),
            name=name or email.split("@")[0],
            picture=picture,
            email_verified=True,
        )
        self.identities[credential] = identity
        return identity

    async def verify(self, credential, claimed_identity=None) -> Identity:
        self.calls.append(credential)
        try:
            return self.identities[credential]
        except KeyError:
            raise InvalidFormat("Invalid Google token or failed to fetch user information") from None


class FakeMetricsSource(MetricsSource):
    """MetricsSource with a deterministic host read that counts samples."""

    def __init__(self, **kwargs) -> None:
        super().__init__(**kwargs)
        self.reads = 0

    def read_host(self) -> dict:
        self.reads += 1
        return {
            "cpu": 12.5,
            "memory": 40.0,
            "disk": 55.0,
            "network": 0.0,
            "uptime": 3600,
            "platform": "linux",
            "hostname": "test-host",
            "cpu_count": 4,
            "load_average": [0.1, 0.2, 0.3],
            "total_memory_gb": 16.0,
            "free_memory_gb": 8.0,
            "process_uptime": 10,
            "python_version": "3.12.0",
        }


@pytest.fixture
def db_engine() -> Engine:
    """In-memory SQLite engine with the schema bootstrapped.

    Uses StaticPool so all threads share the same in-memory database
    (required by ``asyncio.to_thread`` used in ``run_db``).
    """
    engine = create_engine(
        "sqlite://",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    bootstrap_schema(engine)
    yield engine
    engine.dispose()


@pytest.fixture(autouse=True)
def _reset_db_timeout():
    yield
    configure_db_timeout(None)


@pytest.fixture
def store(db_engine) -> UserStore:
    return UserStore(db_engine)


@pytest.fixture
def test_config() -> DashboardConfig:
    return DashboardConfig(jwt_secret=TEST_JWT_SECRET, tick_seconds=60.0)


@pytest.fixture
def sessions() -> SessionAuthority:
    return SessionAuthority(TEST_JWT_SECRET)


@pytest.fixture
def verifier() -> FakeVerifier:
    return FakeVerifier()


@pytest.fixture
def metrics() -> FakeMetricsSource:
    return FakeMetricsSource(history=10)


@pytest.fixture
def app(test_config, db_engine, verifier, metrics, sessions):
    from opsdash.api.main import create_app

    return create_app(
        test_config,
        engine=db_engine,
        verifier=verifier,
        metrics_source=metrics,
        sessions=sessions,
        start_ticker=False,
    )


@pytest.fixture
def client(app):
    """FastAPI TestClient with the lifespan running."""
    from fastapi.testclient import TestClient

    with TestClient(app, raise_server_exceptions=False) as c:
        yield c


@pytest.fixture
def make_token(sessions):
    """Factory: mint a session token for an arbitrary principal."""

    def _make(role: str = "user", subject_id: int = 1, email: str = "bob@x.com",
              name: str = "Bob") -> str:
        return sessions.mint(subject_id=subject_id, email=email, name=name,
                             picture=None, role=role)

    return _make


def auth(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}
