"""
Database engine and session management.

Provides async SQLAlchemy engines and session factories for FastAPI,
plus the `atomic` helper that turns one core operation into one commit.
"""

import logging
from collections.abc import AsyncGenerator, AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from cardvault.config import settings
from cardvault.models.db import Base
from cardvault.models.failure import ConflictError

logger = logging.getLogger(__name__)

# serialization_failure, deadlock_detected
CONTENTION_SQLSTATES = frozenset({"40001", "40P01"})

# Create async engine
engine = create_async_engine(
    settings.database_url,
    echo=settings.debug,
    pool_pre_ping=True,
)

# Session factory
async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)

# Advisory reads may come from a replica; it can lag the primary.
read_engine = (
    create_async_engine(settings.read_database_url, echo=settings.debug, pool_pre_ping=True)
    if settings.read_database_url
    else engine
)

read_session_factory = async_sessionmaker(
    read_engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Request-scoped session on the primary database.

    Service operations commit their own `atomic` blocks; the trailing
    commit here only ends the read transaction a query left open.
    """
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def get_read_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Dependency for read-only, possibly stale queries.

    Never use this for anything that feeds a write decision.
    """
    async with read_session_factory() as session:
        yield session


def is_contention_error(error: DBAPIError) -> bool:
    """True when the database aborted a transaction because of concurrent writers."""
    code = getattr(error.orig, "sqlstate", None) or getattr(error.orig, "pgcode", None)
    if code in CONTENTION_SQLSTATES:
        return True
    return isinstance(error, OperationalError) and "database is locked" in str(error.orig)


@asynccontextmanager
async def atomic(session: AsyncSession) -> AsyncIterator[AsyncSession]:
    """
    Run a block as a single transactional unit.

    Commits when the block finishes. Any exception rolls back every write
    made in the block, so callers never observe a partial exchange.

    A deadlock, serialization failure or SQLite lock timeout is re-raised as
    ConflictError; the database already undid the transaction and the
    caller may retry it.
    """
    try:
        yield session
        await session.commit()
    except DBAPIError as e:
        await session.rollback()
        if is_contention_error(e):
            logger.warning("Transaction aborted by lock contention: %s", e.orig)
            raise ConflictError(
                "The operation collided with a concurrent change",
                detail=type(e.orig).__name__,
            ) from e
        raise
    except BaseException:
        await session.rollback()
        raise


async def init_db() -> None:
    """
    Create any missing tables on the primary database.

    Runs from the app lifespan. Existing tables are left untouched.
    """
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
