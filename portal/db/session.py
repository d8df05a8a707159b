from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from sqlalchemy.engine import make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from portal.core.config import settings
from portal.core.exceptions import DatabaseError, PersistenceError
from portal.core.logging import get_structlog_logger
from portal.db.base import Base

logger = get_structlog_logger(__name__)

# Global engine instance, created on first use
engine: Optional[AsyncEngine] = None
AsyncSessionLocal: Optional[async_sessionmaker[AsyncSession]] = None


def create_database_engine() -> AsyncEngine:
    """Create and configure the async database engine."""
    global engine, AsyncSessionLocal

    if engine is not None:
        return engine

    url = make_url(settings.database_url)

    if url.get_backend_name() == "sqlite":
        engine = create_async_engine(settings.database_url, echo=settings.debug)
    elif settings.is_testing:
        # Use NullPool for tests to ensure clean state
        engine = create_async_engine(
            settings.database_url,
            poolclass=NullPool,
            echo=settings.debug,
        )
    else:
        engine = create_async_engine(
            settings.database_url,
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_max_overflow,
            pool_timeout=settings.database_pool_timeout,
            pool_recycle=settings.database_pool_recycle,
            pool_pre_ping=True,
            echo=settings.debug,
            connect_args={
                "command_timeout": 60,
                "server_settings": {"application_name": "dealer_portal"},
            },
        )

    AsyncSessionLocal = async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

    logger.info(
        "database.engine.created",
        backend=url.get_backend_name(),
        testing=settings.is_testing,
    )

    return engine


def get_sessionmaker() -> async_sessionmaker[AsyncSession]:
    if AsyncSessionLocal is None:
        create_database_engine()
    return AsyncSessionLocal


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Get database session for dependency injection."""
    session = get_sessionmaker()()

    try:
        yield session

    except SQLAlchemyError as e:
        logger.error("database.session_error", error=str(e))
        await session.rollback()
        raise DatabaseError(
            message="Database session error",
            details={"error": str(e)},
        ) from e

    finally:
        await session.close()


@asynccontextmanager
async def transaction_session() -> AsyncGenerator[AsyncSession, None]:
    """Context manager for a session that commits on success."""
    session = get_sessionmaker()()

    try:
        yield session
        await session.commit()

    except SQLAlchemyError as e:
        await session.rollback()
        logger.error("database.transaction_error", error=str(e))
        raise PersistenceError(details={"error": str(e)}) from e

    except BaseException:
        await session.rollback()
        raise

    finally:
        await session.close()


async def init_models() -> None:
    """Create missing tables when DATABASE_AUTO_CREATE is set."""
    import portal.models  # noqa: F401  register mappers

    async with create_database_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def dispose_engine() -> None:
    global engine, AsyncSessionLocal

    if engine is not None:
        await engine.dispose()
    engine = None
    AsyncSessionLocal = None

