import asyncio
import logging

from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlmodel import SQLModel

import composer.core.logging_config  # noqa: F401  (centralized logging)
from composer.core.config import settings

logger = logging.getLogger(__name__)

# Import models to register them with SQLModel.metadata
import composer.models  # noqa: E402, F401

engine = create_async_engine(settings.DATABASE_URL, echo=False, future=True)
AsyncSessionLocal = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def init_db(db_engine=None, max_retries: int = 10, retry_interval: float = 2):
    db_engine = db_engine or engine

    for attempt in range(max_retries):
        try:
            async with db_engine.begin() as conn:
                await conn.run_sync(SQLModel.metadata.create_all)
            logger.info("Database initialized successfully.")
            return
        except Exception as e:
            logger.warning(f"Database connection failed (attempt {attempt + 1}/{max_retries}): {e}")
            await asyncio.sleep(retry_interval)

    logger.error("Could not connect to database after maximum retries.")
    raise ConnectionError("Database connection failed")
