from contextlib import asynccontextmanager
from typing import AsyncIterator

import structlog
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlmodel import SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession

# table modules must be imported before create_all
from src.UAA.models import User  # noqa: F401
from src.models.integration_account import IntegrationAccount  # noqa: F401

logger = structlog.get_logger(__name__)


def build_engine(database_url: str, **kwargs) -> AsyncEngine:
    return create_async_engine(database_url, echo=False, **kwargs)


async def init_db(engine: AsyncEngine) -> None:
    try:
        async with engine.begin() as connection:
            await connection.run_sync(SQLModel.metadata.create_all)
    except Exception as e:
        logger.exception("db_init_failed", error=str(e))
        raise


def build_session_factory(engine: AsyncEngine):
    """Return a no-arg async context manager that yields a fresh AsyncSession per call."""

    @asynccontextmanager
    async def get_session() -> AsyncIterator[AsyncSession]:
        async with AsyncSession(engine, expire_on_commit=False) as session:
            yield session

    return get_session
