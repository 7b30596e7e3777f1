"""Database connection and session management."""

import time
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from controlgate.config import settings
from controlgate.observability.metrics import metrics


class Base(DeclarativeBase):
    """SQLAlchemy declarative base."""

    pass


def _engine_options(database_url: str) -> dict[str, Any]:
    """Pool options per backend; SQLite's pools take no sizing arguments."""
    if database_url.startswith("sqlite"):
        return {"connect_args": {"timeout": 30}}
    return {"pool_pre_ping": True, "pool_size": 20, "max_overflow": 10}


def build_engine(database_url: str | None = None, echo: bool | None = None) -> AsyncEngine:
    """Create an async engine with query metrics attached."""
    url = database_url or settings.database_url
    new_engine = create_async_engine(
        url,
        echo=settings.debug if echo is None else echo,
        **_engine_options(url),
    )
    _attach_query_metrics(new_engine)
    return new_engine


def _attach_query_metrics(target_engine: AsyncEngine) -> None:
    """Attach SQLAlchemy event listeners for query metrics."""
    sync_engine = target_engine.sync_engine
    if getattr(sync_engine, "_controlgate_metrics_attached", False):
        return

    @event.listens_for(sync_engine, "before_cursor_execute")
    def before_cursor_execute(conn, cursor, statement, parameters, context, executemany):
        conn.info["query_start_time"] = time.perf_counter()

    @event.listens_for(sync_engine, "after_cursor_execute")
    def after_cursor_execute(conn, cursor, statement, parameters, context, executemany):
        start_time = conn.info.pop("query_start_time", None)
        if start_time is None:
            return
        metrics.inc_counter("db.query.count")
        metrics.observe("db.query.duration_ms", (time.perf_counter() - start_time) * 1000.0)

    sync_engine._controlgate_metrics_attached = True


engine = build_engine()

async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


def configure_engine(new_engine: AsyncEngine) -> None:
    """Point the module-level engine and session factory at `new_engine`."""
    global engine, async_session_factory
    _attach_query_metrics(new_engine)
    engine = new_engine
    async_session_factory = async_sessionmaker(
        new_engine, class_=AsyncSession, expire_on_commit=False
    )


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the current session factory (honours :func:`configure_engine`)."""
    return async_session_factory


async def init_db() -> None:
    """Initialize database tables."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """Close database connections."""
    await engine.dispose()


@asynccontextmanager
async def unit_of_work(
    factory: async_sessionmaker[AsyncSession] | None = None,
) -> AsyncGenerator[AsyncSession, None]:
    """Session that commits on success and rolls back on error."""
    async with (factory or async_session_factory)() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


def get_session():
    """Get a database session."""
    return unit_of_work()
