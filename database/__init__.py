"""Database session/engine bootstrap for Vitrine."""

import os

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from database.models import Base

DATABASE_URL = os.getenv(
    "DATABASE_URL",
    "sqlite+aiosqlite:///vitrine.db",
)

_is_sqlite = DATABASE_URL.startswith("sqlite")

engine = create_async_engine(
    DATABASE_URL,
    echo=os.getenv("DB_ECHO", "").lower() in {"1", "true"},
    connect_args={"timeout": 30} if _is_sqlite else {},
)
async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def get_db() -> AsyncSession:
    """Provide DB session dependency for FastAPI."""
    async with async_session() as session:
        yield session


async def init_db():
    """Create tables."""
    async with engine.begin() as conn:
        if _is_sqlite:
            await conn.exec_driver_sql("PRAGMA journal_mode=WAL")
            await conn.exec_driver_sql("PRAGMA synchronous=NORMAL")

        await conn.run_sync(Base.metadata.create_all)
