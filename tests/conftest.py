"""
Pytest fixtures for ControlGate tests.
"""

import os

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

# Ensure test config is set before importing controlgate modules.
os.environ.setdefault("CONTROLGATE_ALLOW_INSECURE_DEV", "true")
os.environ.setdefault("CONTROLGATE_ENV", "development")
os.environ.setdefault("CONTROLGATE_DATABASE_URL", "sqlite+aiosqlite:///./controlgate_test.db")

from controlgate.config import Settings
from controlgate.db import base as db_base
from controlgate.db.base import Base, build_engine
import controlgate.db.tables  # noqa: F401
from controlgate.models import AgentLevel
from controlgate.observability.metrics import metrics
from controlgate.transport import FakeTransport


def _test_database_url(tmp_path) -> str:
    explicit = os.getenv("CONTROLGATE_TEST_DATABASE_URL")
    if explicit:
        if "test" not in explicit:
            raise RuntimeError(
                "Refusing to run ControlGate tests against a non-test database. "
                "Set CONTROLGATE_TEST_DATABASE_URL to a dedicated test database."
            )
        return explicit
    return f"sqlite+aiosqlite:///{tmp_path / 'controlgate_test.db'}"


@pytest.fixture
async def engine(tmp_path):
    """Fresh schema per test, wired into controlgate.db.base."""
    engine = build_engine(_test_database_url(tmp_path), echo=False)
    previous = db_base.engine
    db_base.configure_engine(engine)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()
    db_base.configure_engine(previous)


@pytest.fixture
def session_factory(engine):
    """Session factory for tests that need several concurrent sessions."""
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def session(session_factory):
    """Provide a database session per test."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture(autouse=True)
def reset_metrics():
    metrics.reset()
    yield


@pytest.fixture
def config():
    """Settings copy with fast retry timings."""
    return Settings(
        transport_retry_delay_seconds=0.0,
        rate_limit_fallback_models=["kimi-coding/kimi-for-coding"],
        _env_file=None,
    )


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def make_agent(session):
    """Create an agent with a usable session key."""
    from controlgate.db.repositories import AgentRepository

    async def _make(name: str, **values):
        values.setdefault("session_key", f"agent:{name.lower()}:main")
        values.setdefault("level", AgentLevel.SPC)
        agent = await AgentRepository(session).create(name=name, **values)
        await session.commit()
        return agent

    return _make


@pytest.fixture
async def client(session):
    """Async test client with overridden dependencies."""
    from controlgate.api.deps import get_db_session, verify_api_key
    from controlgate.main import app

    async def override_get_db_session():
        yield session

    async def override_verify_api_key():
        return "insecure_dev"

    app.dependency_overrides[get_db_session] = override_get_db_session
    app.dependency_overrides[verify_api_key] = override_verify_api_key

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()
