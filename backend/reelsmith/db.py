from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from .settings import get_settings

settings = get_settings()


class Base(DeclarativeBase):
    """Base declarative class for SQLAlchemy models."""


def create_session_factory(database_url: str | None = None) -> tuple[AsyncEngine, async_sessionmaker[AsyncSession]]:
    """Build a private engine + session factory.

    Celery tasks run each job in a fresh event loop via asyncio.run(), so they
    cannot share the module-level engine whose pool is bound to the API loop.
    """
    url = database_url or get_settings().async_database_url
    private_engine = create_async_engine(url, future=True, echo=False)
    return private_engine, async_sessionmaker(private_engine, class_=AsyncSession, expire_on_commit=False)


engine = create_async_engine(
    settings.async_database_url,
    future=True,
    echo=False,
)
AsyncSessionLocal = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def get_session() -> AsyncSession:
    async with AsyncSessionLocal() as session:
        yield session
