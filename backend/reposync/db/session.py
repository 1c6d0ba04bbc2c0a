from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine, AsyncSession
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import NullPool
from typing import AsyncGenerator

from reposync.core.settings import get_settings

settings = get_settings()


def build_engine(database_url: str) -> AsyncEngine:
    return create_async_engine(
        database_url,
        echo=settings.APP_ENV == "development",
        future=True,
        pool_pre_ping=True,
        pool_recycle=3600,
        poolclass=NullPool if settings.APP_ENV == "test" else None,
    )


def build_session_factory(bind: AsyncEngine) -> sessionmaker:
    return sessionmaker(bind, class_=AsyncSession, expire_on_commit=False, autoflush=False)


# Create async engine
engine = build_engine(settings.DATABASE_URL)

# Create async session factory
async_session_factory = build_session_factory(engine)


# Dependency to get DB session
async def get_db() -> AsyncGenerator[AsyncSession, None]:
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def create_tables(bind: AsyncEngine = engine):
    from reposync.models import Base

    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def drop_tables(bind: AsyncEngine = engine):
    from reposync.models import Base

    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
