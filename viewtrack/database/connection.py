"""
Database Connection Management

Async SQLAlchemy 2.0 engine and session factory, snapshot transactions for
rollup rebuilds, and the dialect-aware upsert used for counter and rollup
increments.
"""

import time
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Awaitable, Callable, Dict, Mapping, Optional, Sequence, TypeVar

import structlog
from sqlalchemy import text
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from viewtrack.config import get_settings
from viewtrack.database.models import Base

logger = structlog.get_logger(__name__)

T = TypeVar("T")

# Global engine and session factory
_engine: Optional[AsyncEngine] = None
_async_session_factory: Optional[async_sessionmaker[AsyncSession]] = None


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def init_database(url: Optional[str] = None, create_schema: bool = False) -> AsyncEngine:
    """
    Initialize the database engine.

    Args:
        url: Async database URL; defaults to the configured Postgres URL
        create_schema: Create missing tables (development and tests)

    Returns:
        AsyncEngine: The initialized database engine
    """
    global _engine, _async_session_factory

    if _engine is not None:
        logger.warning("Database already initialized")
        return _engine

    settings = get_settings()

    # asyncpg keeps its own pool
    _engine = create_async_engine(
        url or settings.database.async_url,
        echo=settings.database.echo,
        pool_pre_ping=True,
        poolclass=NullPool,
    )
    _async_session_factory = build_session_factory(_engine)

    try:
        async with _engine.begin() as conn:
            await conn.execute(text("SELECT 1"))
            if create_schema:
                await conn.run_sync(Base.metadata.create_all)
        logger.info(
            "Database connection established",
            dialect=_engine.dialect.name,
            schema_created=create_schema,
        )
    except Exception as e:
        logger.error("Failed to connect to database", error=str(e))
        raise

    return _engine


async def close_database() -> None:
    """Dispose of the engine and forget the session factory."""
    global _engine, _async_session_factory

    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _async_session_factory = None
        logger.info("Database connection pool closed")


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    if _async_session_factory is None:
        raise RuntimeError("Database not initialized. Call init_database() first.")
    return _async_session_factory


@asynccontextmanager
async def session_scope(
    factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """
    Transactional session from ``factory``.

    Commits on clean exit, rolls back and re-raises otherwise.

    Example:
        async with session_scope(factory) as db:
            db.add(row)
    """
    session = factory()
    try:
        yield session
        await session.commit()
    except Exception as e:
        logger.debug("Database session error, rolling back", error=str(e), error_type=type(e).__name__)
        await session.rollback()
        raise
    finally:
        await session.close()


@asynccontextmanager
async def snapshot_scope(
    factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """
    Transactional session whose statements all read one snapshot.

    On PostgreSQL the transaction runs at REPEATABLE READ, so a flag flip and
    the aggregate that follows it see the same rows. A concurrent writer
    touching those rows makes the transaction fail with a serialization
    error; see ``run_in_snapshot``. SQLite transactions are serializable
    already.
    """
    async with session_scope(factory) as session:
        if session.get_bind().dialect.name == "postgresql":
            await session.connection(execution_options={"isolation_level": "REPEATABLE READ"})
        yield session


SERIALIZATION_FAILURES = ("40001", "40P01")


def is_serialization_failure(error: DBAPIError) -> bool:
    orig = getattr(error, "orig", None)
    code = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    return code in SERIALIZATION_FAILURES


async def run_in_snapshot(
    factory: async_sessionmaker[AsyncSession],
    work: Callable[[AsyncSession], Awaitable[T]],
    *,
    name: str,
    attempts: int = 3,
) -> T:
    """
    Run ``work`` in a ``snapshot_scope``, rerunning it on serialization failures.

    Raises:
        DBAPIError: any other database error, or the last serialization failure
    """
    for attempt in range(1, attempts + 1):
        try:
            async with snapshot_scope(factory) as session:
                return await work(session)
        except DBAPIError as e:
            if attempt == attempts or not is_serialization_failure(e):
                raise
            logger.warning("Snapshot transaction conflicted, retrying", operation=name, attempt=attempt)
    raise RuntimeError("attempts must be >= 1")


def dialect_insert(session: AsyncSession, model):
    """Dialect-specific INSERT supporting ``on_conflict_do_update``."""
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return pg_insert(model)
    if dialect == "sqlite":
        return sqlite_insert(model)
    raise RuntimeError(f"Upserts are not supported on dialect {dialect!r}")


async def upsert_increment(
    session: AsyncSession,
    model,
    keys: Mapping[str, Any],
    increments: Mapping[str, int],
    index_elements: Optional[Sequence[str]] = None,
    extra_set: Optional[Dict[str, Any]] = None,
) -> None:
    """
    Insert a counter row or atomically add to the existing one.

    Args:
        session: Open session (the statement joins its transaction)
        model: Mapped class with a primary key over ``keys``
        keys: Primary key column values
        increments: Column deltas, used as initial values on insert
        index_elements: Conflict target; defaults to ``keys``
        extra_set: Columns overwritten on both insert and update
    """
    values = {**keys, **increments, **(extra_set or {})}
    stmt = dialect_insert(session, model).values(**values)
    table = model.__table__
    updates = {
        column: table.c[column] + stmt.excluded[column]
        for column in increments
    }
    for column in (extra_set or {}):
        updates[column] = stmt.excluded[column]
    stmt = stmt.on_conflict_do_update(
        index_elements=list(index_elements or keys.keys()),
        set_=updates,
    )
    await session.execute(stmt)


async def upsert_replace(
    session: AsyncSession,
    model,
    keys: Mapping[str, Any],
    values: Mapping[str, Any],
) -> None:
    """Insert a row or overwrite its non-key columns."""
    stmt = dialect_insert(session, model).values(**keys, **values)
    stmt = stmt.on_conflict_do_update(
        index_elements=list(keys.keys()),
        set_={column: stmt.excluded[column] for column in values},
    )
    await session.execute(stmt)


async def check_database_health(factory: Optional[async_sessionmaker[AsyncSession]] = None) -> dict:
    """
    Check database health status.

    Returns:
        dict: Health status with latency information
    """
    try:
        start = time.perf_counter()
        async with session_scope(factory or get_session_factory()) as db:
            await db.execute(text("SELECT 1"))
        latency_ms = (time.perf_counter() - start) * 1000

        return {
            "status": "healthy",
            "latency_ms": round(latency_ms, 2),
        }
    except Exception as e:
        return {
            "status": "unhealthy",
            "error": str(e),
        }
