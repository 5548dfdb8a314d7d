"""Database setup with async SQLAlchemy."""

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from mailsync.config import settings


def make_engine(url: str, **kwargs) -> AsyncEngine:
    """Create an async engine; pool sizing only applies to server databases."""
    options = {"echo": False}
    if not url.startswith("sqlite"):
        options.update(pool_size=10, max_overflow=20)
    options.update(kwargs)
    return create_async_engine(url, **options)


def make_sessionmaker(bind: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(bind, class_=AsyncSession, expire_on_commit=False)


engine = make_engine(settings.database_url)


class Base(DeclarativeBase):
    pass
