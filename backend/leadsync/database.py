"""Database connection and session management."""

import logging
from contextlib import asynccontextmanager

from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base
from leadsync.config import settings
from leadsync.errors import StoreUnavailable

logger = logging.getLogger(__name__)

# Convert postgresql:// to postgresql+asyncpg://
database_url = settings.DATABASE_URL.replace(
    "postgresql://", "postgresql+asyncpg://"
)

# Base class for models
Base = declarative_base()


def create_engine_for(url: str, **kwargs):
    """Create an async engine; pool sizing only applies to server databases."""
    if url.startswith("sqlite"):
        return create_async_engine(url, **kwargs)
    return create_async_engine(
        url,
        echo=settings.LOG_LEVEL == "DEBUG",
        pool_pre_ping=True,
        pool_size=20,
        max_overflow=10,
        **kwargs
    )


def create_session_factory(bind) -> async_sessionmaker:
    """Session factory used by every store; one session per operation."""
    return async_sessionmaker(
        bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False
    )


# Create async engine
engine = create_engine_for(database_url)

# Create session factory
AsyncSessionLocal = create_session_factory(engine)


async def init_models(bind=None):
    """Create all tables (development / tests; production runs migrations)."""
    # Import models so they register with Base.metadata
    from leadsync import models  # noqa: F401

    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


@asynccontextmanager
async def storage_guard(store: str, operation: str):
    """Translate database outages into StoreUnavailable."""
    try:
        yield
    except (OperationalError, DBAPIError, OSError) as e:
        logger.error(f"❌ {store} store unavailable during {operation}: {e}")
        raise StoreUnavailable(f"{store} store unavailable ({operation}): {e}") from e
