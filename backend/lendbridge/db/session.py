from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine

from lendbridge.db.base import Base


def make_engine(database_url: str, **kwargs) -> AsyncEngine:
    return create_async_engine(database_url, future=True, pool_pre_ping=True, **kwargs)


def make_sessionmaker(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(engine, expire_on_commit=False, autoflush=False)


async def create_all(engine: AsyncEngine) -> None:
    # Local runs and tests only; deployed databases are migrated with alembic.
    from lendbridge.models import exchange_rate, loan  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
