"""
Async engine for the collection database.

Only imported when `collection_backend` is "database", so deployments that
sync elsewhere never need a database driver installed.
"""

import logging
from typing import Any

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from cardgrader.config import settings
from cardgrader.models.db import Base

logger = logging.getLogger(__name__)


def _engine_options(url: str) -> dict[str, Any]:
    # aiosqlite connections may be reused across tasks
    if url.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False}}
    return {"pool_pre_ping": True, "pool_size": 5}


engine: AsyncEngine = create_async_engine(
    settings.database_url,
    echo=settings.debug,
    **_engine_options(settings.database_url),
)

async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


async def init_db() -> None:
    """Create the collection table if it does not exist yet."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("COLLECTION_DATABASE_READY", extra={"backend": engine.url.get_backend_name()})


async def close_db() -> None:
    await engine.dispose()
