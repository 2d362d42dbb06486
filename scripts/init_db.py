import asyncio
import logging
import sys
import os

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

from core.database import engine, async_session_maker
from models.base import Base
# Import all models to ensure they are registered
import models  # noqa: F401
from sync.supervisor import RecoverySupervisor

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


async def init_database():
    logger.info("Connecting to database...")

    async with engine.begin() as conn:
        logger.info("Creating tables...")
        await conn.run_sync(Base.metadata.create_all)
        logger.info("Tables created successfully.")

    async with async_session_maker() as session:
        created = await RecoverySupervisor(session).ensure_task_configs()
        logger.info(f"Seeded {created} scheduled task configs.")

    await engine.dispose()

if __name__ == "__main__":
    asyncio.run(init_database())
