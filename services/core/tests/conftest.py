"""Pytest configuration and fixtures for Camp Signup Core tests.

This module provides fixtures for:
- Database: SQLite in-memory engine and session
- Time: a controllable clock shared by every service
- Providers: a static provider registry and a scripted adapter
- Services: the full service graph wired around the test session
- HTTP client: AsyncClient for FastAPI testing
"""

from collections.abc import AsyncGenerator, Generator
from datetime import datetime, timedelta
from typing import Any, Optional
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from sqlalchemy import StaticPool, create_engine, event
from sqlalchemy.orm import Session, sessionmaker

from signup_core.config import Settings
from signup_core.domain.models import Base
from signup_core.observability.metrics import get_collector
from signup_core.providers.base import (
    Finalized,
    PrecheckResult,
    ProviderAdapter,
    ProviderSessionCandidate,
    Reserved,
)


# -----------------------------------------------------------------------------
# Test Settings
# -----------------------------------------------------------------------------


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings with safe defaults."""
    from signup_core.infrastructure.crypto import CryptoService

    return Settings(
        mysql_url="sqlite+pysqlite:///:memory:",
        redis_url="redis://localhost:6379/15",  # Use DB 15 for tests
        celery_broker_url="memory://",
        celery_result_backend="cache+memory://",
        base_url="https://signup.test",
        encryption_key=CryptoService.generate_key(),
    )


@pytest.fixture(autouse=True)
def reset_metrics() -> Generator[None, None, None]:
    """Start every test with an empty process-wide metrics collector."""
    get_collector().reset()
    yield
    get_collector().reset()


# -----------------------------------------------------------------------------
# Clock
# -----------------------------------------------------------------------------


class FixedClock:
    """Naive-UTC clock that only moves when a test advances it."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(datetime(2024, 6, 1, 12, 0, 0))


# -----------------------------------------------------------------------------
# Synchronous Database Fixtures
# -----------------------------------------------------------------------------


@pytest.fixture
def sync_engine():
    """Create a synchronous SQLite in-memory engine for testing."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # Enable foreign key support for SQLite
    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_conn, connection_record):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    # SQLite only autoincrements INTEGER PRIMARY KEY columns
    from sqlalchemy.dialects import sqlite
    original_visit = sqlite.dialect.type_compiler_cls.visit_BIGINT
    sqlite.dialect.type_compiler_cls.visit_BIGINT = lambda self, type_, **kw: "INTEGER"

    Base.metadata.create_all(bind=engine)

    sqlite.dialect.type_compiler_cls.visit_BIGINT = original_visit

    yield engine

    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def sync_session_factory(sync_engine) -> sessionmaker[Session]:
    """Create a synchronous session factory."""
    return sessionmaker(
        bind=sync_engine,
        autocommit=False,
        autoflush=False,
    )


@pytest.fixture
def db_session(sync_session_factory) -> Generator[Session, None, None]:
    """Create a synchronous database session for testing."""
    session = sync_session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


# -----------------------------------------------------------------------------
# Provider Fixtures
# -----------------------------------------------------------------------------


JACKRABBIT_URL = "https://app.jackrabbitclass.com/regv2.asp?id=ORG42"


class ScriptedAdapter(ProviderAdapter):
    """Adapter whose stage results are set by the test.

    ``reserve_results`` is consumed in order, so a test can script a CAPTCHA
    followed by a successful reservation. Every call is recorded with the
    context it received.
    """

    def __init__(self, platform: str = "jackrabbit_class"):
        self._platform = platform
        self.precheck_result = PrecheckResult.passed()
        self.sessions: list[ProviderSessionCandidate] = [
            ProviderSessionCandidate(
                id="101",
                url=JACKRABBIT_URL,
                title="Robotics Camp - Week 2",
                start_at=datetime(2024, 6, 10, 9, 0),
                capacity=4,
            )
        ]
        self.reserve_results: list[Any] = []
        self.finalize_result: Any = None
        self.raise_on: Optional[str] = None
        self.calls: list[tuple[str, Any]] = []

    @property
    def platform(self) -> str:
        return self._platform

    def _maybe_raise(self, stage: str) -> None:
        if self.raise_on == stage:
            raise RuntimeError(f"scripted failure in {stage}")

    async def precheck(self, ctx):
        self.calls.append(("precheck", ctx))
        self._maybe_raise("precheck")
        return self.precheck_result

    async def find_sessions(self, ctx, intent=None):
        self.calls.append(("find_sessions", ctx))
        self._maybe_raise("find_sessions")
        return list(self.sessions)

    async def reserve(self, ctx, candidate):
        self.calls.append(("reserve", ctx))
        self._maybe_raise("reserve")
        if self.reserve_results:
            return self.reserve_results.pop(0)
        return Reserved(candidate.with_provider_id("ENR-1"))

    async def finalize_payment(self, ctx, candidate):
        self.calls.append(("finalize_payment", ctx))
        self._maybe_raise("finalize_payment")
        if self.finalize_result is not None:
            return self.finalize_result
        return Finalized(confirmation_id=f"PAY-{candidate.provider_id}")

    def stages(self) -> list[str]:
        return [stage for stage, _ in self.calls]


@pytest.fixture
def scripted_adapter() -> ScriptedAdapter:
    return ScriptedAdapter()


@pytest.fixture
def static_registry():
    """Registry over the built-in profiles, no database needed."""
    from signup_core.domain.services.provider_registry import DEFAULT_PROFILES, ProviderRegistry

    return ProviderRegistry(lambda: list(DEFAULT_PROFILES))


@pytest.fixture
def delivery():
    """Delivery backend that records every outbound notification."""
    from signup_core.infrastructure.delivery import LoggingDelivery

    return LoggingDelivery()


@pytest.fixture
def services(db_session, test_settings, clock, static_registry, scripted_adapter, delivery):
    """Full service graph around the test session, driving the scripted adapter."""
    from signup_core.bootstrap import build_services
    from signup_core.domain.services.trust_gate import TrustCache
    from signup_core.providers.catalog import AdapterCatalog

    return build_services(
        db_session,
        test_settings,
        registry=static_registry,
        trust_cache=TrustCache(clock=clock),
        delivery=delivery,
        catalog=AdapterCatalog([scripted_adapter]),
        clock=clock,
    )


@pytest.fixture
def partner_jackrabbit(db_session):
    """Mark Jackrabbit as an active partner so payment automation is allowed."""
    from signup_core.domain.models import ProviderPartnership

    partnership = ProviderPartnership(hostname="jackrabbitclass.com", status="active")
    db_session.add(partnership)
    db_session.flush()
    return partnership


# -----------------------------------------------------------------------------
# FastAPI Test Client Fixtures
# -----------------------------------------------------------------------------


@pytest.fixture
def mock_task_queue() -> MagicMock:
    """Celery client stand-in that records sent tasks."""
    queue = MagicMock()
    queue.send_task.return_value = MagicMock(id="task-123")
    return queue


@pytest.fixture
def test_app(test_settings, services, mock_task_queue) -> Generator[FastAPI, None, None]:
    """FastAPI application wired to the test service graph."""
    from signup_core.api.deps import get_services, get_task_queue
    from signup_core.main import app

    app.state.settings = test_settings
    app.dependency_overrides[get_services] = lambda: services
    app.dependency_overrides[get_task_queue] = lambda: mock_task_queue

    yield app

    app.dependency_overrides.clear()


@pytest.fixture
async def client(test_app) -> AsyncGenerator[AsyncClient, None]:
    """Create an async HTTP client for testing FastAPI endpoints."""
    async with AsyncClient(
        transport=ASGITransport(app=test_app),
        base_url="http://test",
    ) as ac:
        yield ac


# -----------------------------------------------------------------------------
# Mock Fixtures for External Services
# -----------------------------------------------------------------------------


@pytest.fixture
def mock_async_redis() -> AsyncMock:
    """Async Redis client with an in-memory counter behind incr/decr/get."""
    store: dict[str, int] = {}
    redis = AsyncMock()

    async def incr(key):
        store[key] = store.get(key, 0) + 1
        return store[key]

    async def decr(key):
        store[key] = store.get(key, 0) - 1
        return store[key]

    async def get(key):
        return str(store[key]).encode() if key in store else None

    redis.incr.side_effect = incr
    redis.decr.side_effect = decr
    redis.get.side_effect = get
    redis.expire.return_value = True
    redis.store = store
    return redis


def make_response(status_code: int = 200, json_data: Any = None, headers: Optional[dict] = None):
    """Build an httpx-like response; ``json()`` is synchronous as in httpx."""
    response = MagicMock()
    response.status_code = status_code
    response.json.return_value = json_data if json_data is not None else {}
    response.headers = headers or {}
    response.content = b"{}" if json_data is not None else b""
    return response


@pytest.fixture
def http_response():
    return make_response


@pytest.fixture
def mock_httpx_client() -> Generator[AsyncMock, None, None]:
    """Mock httpx.AsyncClient for testing external HTTP calls."""
    with patch("httpx.AsyncClient") as mock:
        mock_instance = AsyncMock()
        mock.return_value.__aenter__.return_value = mock_instance
        mock.return_value.__aexit__.return_value = None

        mock_instance.get.return_value = make_response()
        mock_instance.post.return_value = make_response()

        yield mock_instance
