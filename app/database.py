import logging
from typing import Annotated, AsyncIterator

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine, async_sessionmaker
from sqlmodel import SQLModel

from app.config import settings

logger = logging.getLogger(__name__)


def build_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    # SQLite has no server side to drop idle connections
    options = {} if database_url.startswith("sqlite") else {"pool_pre_ping": True}
    return create_async_engine(database_url, echo=echo, future=True, **options)


engine = build_engine(settings.DATABASE_URL, echo=settings.SQL_ECHO)

# Instances stay readable after commit, the services build read models from them
AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False
)


async def get_db() -> AsyncIterator[AsyncSession]:
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()

SessionDep = Annotated[AsyncSession, Depends(get_db)]


async def create_db_and_tables(target: AsyncEngine = engine) -> None:
    # Register fleet and tracking tables on the metadata
    import app.models.fleet  # noqa: F401
    import app.models.tracking  # noqa: F401

    async with target.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    logger.info(f"Tables ready: {', '.join(sorted(SQLModel.metadata.tables))}")


async def dispose_engine(target: AsyncEngine = engine) -> None:
    await target.dispose()
    logger.info("Database connections closed")
