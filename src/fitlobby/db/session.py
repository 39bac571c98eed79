"""Database session management."""

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from fitlobby.db.models import Base


def create_engine(database_url: str) -> AsyncEngine:
    """Create the async engine for the local store."""
    return create_async_engine(database_url, echo=False)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create a session factory bound to ``engine``."""
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def init_models(engine: AsyncEngine) -> None:
    """Create missing tables.

    The local store has a single table, so it is created directly from the
    model metadata instead of through migrations.
    """
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
