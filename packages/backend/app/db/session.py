from collections.abc import AsyncIterator

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from app.core.settings import settings


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # Views are assembled from records after commit, so attributes must not expire.
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        autoflush=False,
        autocommit=False,
        expire_on_commit=False,
    )


engine = create_async_engine(settings.database_url, pool_pre_ping=True)
SessionLocal = build_session_factory(engine)


async def get_db_session() -> AsyncIterator[AsyncSession]:
    async with SessionLocal() as session:
        yield session
