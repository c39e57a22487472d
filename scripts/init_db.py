import asyncio
import logging
import sys
import os

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

from core.config import settings
from core.database import create_engine
from core.logging import setup_logging
# Importing the package registers every model on Base.metadata
from models import Base

logger = logging.getLogger(__name__)


async def create_tables(database_url: str):
    engine = create_engine(database_url)
    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
    finally:
        await engine.dispose()


async def init_database():
    logger.info("Connecting to database...")
    logger.info("Creating state tables...")
    await create_tables(settings.DATABASE_URL)

    if settings.STORAGE_DATABASE_URL:
        logger.info("Creating storage tables...")
        await create_tables(settings.STORAGE_DATABASE_URL)

    logger.info("Tables created successfully.")


if __name__ == "__main__":
    setup_logging()
    asyncio.run(init_database())
