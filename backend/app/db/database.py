"""Database connection utilities"""

from typing import AsyncGenerator

from fastapi import Request
from sqlalchemy.engine.url import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from app.utils.logging import get_logger
from app.core.exceptions import DatabaseError

logger = get_logger(__name__)

def build_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    """
    Create the async engine for the configured URL

    PostgreSQL gets a bounded pool with health checks; other dialects
    (SQLite in tests) keep SQLAlchemy's defaults.
    """
    url = make_url(database_url)
    # Log database configuration (excluding sensitive info)
    logger.info(f"Database: {url.get_backend_name()} host={url.host} db={url.database}")

    if url.get_backend_name() == "postgresql":
        return create_async_engine(
            database_url,
            pool_pre_ping=True,  # Enable connection health checks
            pool_size=5,
            max_overflow=10,
            echo=echo
        )
    return create_async_engine(database_url, echo=echo)

def build_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    """Create session factory"""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False
    )

async def get_db(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """
    Get a database session from the application's pool

    Yields:
        AsyncSession: Database session

    Raises:
        DatabaseError: If the application has no database configured
    """
    session_factory = getattr(request.app.state, "db_pool", None)
    if session_factory is None:
        logger.error("Database session factory not initialized")
        raise DatabaseError("Database is not initialized")

    async with session_factory() as session:
        yield session
