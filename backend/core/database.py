"""
core/database.py — async SQLAlchemy engine and session factory.

PostgreSQL goes through asyncpg; SQLite (local dev, tests) goes through
aiosqlite. In-memory SQLite uses a StaticPool so every session sees the
same database.
"""

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import StaticPool

from core.config import settings


def _build_db_url() -> str:
    """Normalise DATABASE_URL to an async dialect."""
    database_url = settings.database_url
    if database_url.startswith("postgres://"):
        database_url = database_url.replace("postgres://", "postgresql+asyncpg://", 1)
    elif database_url.startswith("postgresql://"):
        database_url = database_url.replace("postgresql://", "postgresql+asyncpg://", 1)
    elif database_url.startswith("sqlite://") and not database_url.startswith("sqlite+"):
        database_url = database_url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    # Strip any ?schema=public (Prisma-style) not supported by asyncpg
    if "?schema=" in database_url:
        database_url = database_url.split("?schema=")[0]
    return database_url


def _engine_kwargs(url: str) -> dict:
    if not url.startswith("sqlite"):
        return {"pool_pre_ping": True}
    kwargs: dict = {"connect_args": {"check_same_thread": False}}
    if make_url(url).database in (None, "", ":memory:"):
        kwargs["poolclass"] = StaticPool
    return kwargs


_DB_URL = _build_db_url()

engine = create_async_engine(_DB_URL, echo=False, **_engine_kwargs(_DB_URL))

# Async session factory
AsyncSessionLocal = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""
    pass


async def init_db():
    """Creates all tables defined in database_models."""
    async with engine.begin() as conn:
        from models.database_models import KnowledgeFile, DocumentChunk, SearchLog  # noqa
        await conn.run_sync(Base.metadata.create_all)
        return True


async def drop_db():
    """Drops all tables. Used by the test suite."""
    async with engine.begin() as conn:
        from models.database_models import KnowledgeFile, DocumentChunk, SearchLog  # noqa
        await conn.run_sync(Base.metadata.drop_all)
