#!/usr/bin/env python3
"""
Script to initialize the database using SQLAlchemy ORM.

This script will:
1. Create the database if it does not exist (PostgreSQL only)
2. Create all tables using SQLAlchemy models
"""

import asyncio
import sys
from pathlib import Path
import logging

import asyncpg
from sqlalchemy.engine.url import make_url

# Add the backend directory to Python path
backend_dir = Path(__file__).parent.parent
sys.path.append(str(backend_dir))

from app.core.config import get_settings
from app.db.database import build_engine
from app.db.init_db import init_db

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

async def create_database(database_url: str):
    """Create the database if it doesn't exist"""
    url = make_url(database_url)
    if url.get_backend_name() != "postgresql":
        logger.info(f"Skipping database creation for {url.get_backend_name()}")
        return

    # Connect to default database to create new database
    conn = await asyncpg.connect(
        host=url.host,
        port=url.port or 5432,
        user=url.username,
        password=url.password,
        database='postgres'
    )

    try:
        result = await conn.fetchrow(
            "SELECT 1 FROM pg_database WHERE datname = $1",
            url.database
        )

        if not result:
            await conn.execute(f'CREATE DATABASE "{url.database}"')
            logger.info(f"Created database: {url.database}")
        else:
            logger.info(f"Database {url.database} already exists")
    finally:
        await conn.close()

async def init_database():
    """Initialize the complete database"""
    settings = get_settings()
    await create_database(settings.database_url)

    engine = build_engine(settings.database_url)
    try:
        await init_db(engine)
    finally:
        await engine.dispose()
    logger.info("Database initialization completed successfully")

async def main():
    """Main entry point"""
    url = make_url(get_settings().database_url)
    try:
        # Ask for confirmation
        response = input(f"This will initialize the database '{url.database}' on {url.host}:{url.port}. Are you sure? (y/N): ")
        if response.lower() != 'y':
            logger.info("Operation cancelled")
            return

        await init_database()
    except Exception as e:
        logger.error(f"Error: {e}")
        sys.exit(1)

if __name__ == "__main__":
    asyncio.run(main())
