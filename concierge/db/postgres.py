"""Async SQLAlchemy engine and session factory.

All database operations use the SQLAlchemy 2.0 async session pattern.
The engine is built once in the FastAPI lifespan and stored on app.state;
services receive the session factory explicitly and open one short
transaction per operation.
Connection errors are caught and re-raised as DatabaseConnectionError
so the API layer receives a typed, structured error.
"""

from collections.abc import AsyncGenerator

import structlog
from fastapi import Request
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from concierge.core.exceptions import ConciergeError, DatabaseConnectionError

logger = structlog.get_logger(__name__)


class Base(DeclarativeBase):
    """Base class for all ORM models."""
    pass


def build_engine(url: str, **kwargs) -> AsyncEngine:
    """Create the async engine. Pool sizing only applies to server databases."""
    if url.startswith("sqlite"):
        return create_async_engine(url, echo=False, **kwargs)
    options = {"pool_size": 20, "max_overflow": 10, "pool_pre_ping": True}
    options.update(kwargs)
    return create_async_engine(url, echo=False, **options)


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


async def get_async_session(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency that yields an async database session.

    Commits on success, rolls back on exception, always closes.
    SQLAlchemy driver errors are caught and re-raised as DatabaseConnectionError.
    """
    factory: async_sessionmaker[AsyncSession] = request.app.state.session_factory
    try:
        async with factory() as session:
            try:
                yield session
                await session.commit()
            except SQLAlchemyError as e:
                await session.rollback()
                logger.error("database_session_error", error=str(e))
                raise DatabaseConnectionError(f"Database operation failed: {e}") from e
            except Exception:
                await session.rollback()
                raise
    except ConciergeError:
        raise
    except SQLAlchemyError as e:
        logger.error("database_connection_error", error=str(e))
        raise DatabaseConnectionError(f"Database connection failed: {e}") from e


async def create_all(engine: AsyncEngine) -> None:
    """Create every table (tests and local development; production uses Alembic)."""
    import concierge.models  # noqa: F401  (registers mappers)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_database(engine: AsyncEngine) -> None:
    """Gracefully dispose of the async engine connection pool."""
    logger.info("database_shutdown")
    await engine.dispose()
