"""
db/session.py — Database Connection & Session Management
=========================================================
Async SQLAlchemy engine for the cadastre (PostgreSQL in production,
SQLite via aiosqlite for development and tests).
Called by main.py on startup via init_db().

All routes use get_db() as a FastAPI dependency to get a DB session.
"""

from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase
from config import settings
import logging

logger = logging.getLogger("cadastre.db")

# Convert standard postgres:// URL to async postgresql+asyncpg://
DATABASE_URL = settings.DATABASE_URL.replace(
    "postgresql://", "postgresql+asyncpg://"
)


def build_engine(url: str, echo: bool = False):
    """Create an async engine; pool sizing only applies to server databases."""
    if url.startswith("sqlite"):
        return create_async_engine(url, echo=echo)
    return create_async_engine(
        url,
        pool_size=settings.DB_POOL_SIZE,
        max_overflow=settings.DB_MAX_OVERFLOW,
        echo=echo,
    )


# Create async engine
engine = build_engine(DATABASE_URL, echo=settings.DEBUG)   # logs all SQL in debug mode

# Session factory
AsyncSessionLocal = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


class Base(DeclarativeBase):
    """Base class all database models inherit from."""
    pass


async def init_db(bind=None):
    """Create all tables on startup if they don't exist."""
    import db.models  # noqa: import triggers table registration
    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables created / verified.")


async def get_db():
    """
    FastAPI dependency: yields a DB session per request.

    Usage in any route:
        from db.session import get_db
        from sqlalchemy.ext.asyncio import AsyncSession

        async def my_endpoint(db: AsyncSession = Depends(get_db)):
            ...
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()
