"""
Database initialization.
"""

import asyncio
import sys

from sqlalchemy.ext.asyncio import AsyncEngine

from app.utils.logging import get_logger
from app.db.database import build_engine
from app.db.models import Base
from app.db.utils import retry_database_operation

logger = get_logger(__name__)

async def init_db(engine: AsyncEngine) -> None:
    """Create every table known to the models, retrying while the database comes up"""
    async def _create_all():
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    try:
        await retry_database_operation(_create_all)
        logger.info("Database tables created successfully")
    except Exception as e:
        logger.error(f"Error initializing database: {str(e)}")
        raise

async def _main() -> None:
    from app.core.config import get_settings

    engine = build_engine(get_settings().database_url)
    try:
        await init_db(engine)
    finally:
        await engine.dispose()

if __name__ == "__main__":
    logger.info("Starting database initialization...")
    try:
        asyncio.run(_main())
        logger.info("Database initialization completed successfully")
    except Exception as e:
        logger.error(f"Database initialization failed: {str(e)}")
        sys.exit(1)
