"""
Database configuration and session management

Connection pooling is configured for Postgres only; SQLite URLs
(local runs, tests) use SQLAlchemy's defaults.
"""
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import declarative_base

from vinclub.core.config import settings

pool_config = {}

if settings.DATABASE_URL.startswith("sqlite"):
    pool_config = {}
elif settings.ENVIRONMENT == "production":
    pool_config = {
        "pool_size": settings.DB_POOL_SIZE,
        "max_overflow": settings.DB_MAX_OVERFLOW,
        "pool_recycle": settings.DB_POOL_RECYCLE,
        "pool_pre_ping": True,  # Verify connections before use
    }
else:
    pool_config = {
        "pool_size": 2,
        "max_overflow": 5,
        "pool_pre_ping": True,
    }

engine = create_async_engine(
    settings.DATABASE_URL,
    echo=settings.DEBUG,
    future=True,
    **pool_config,
)

AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)

Base = declarative_base()


async def get_db() -> AsyncSession:
    """Dependency for getting async database sessions"""
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


@asynccontextmanager
async def get_db_session(session_factory=None):
    """
    Context manager for database sessions outside FastAPI request context.

    Use this in background jobs and service-to-service calls.

    Usage:
        async with get_db_session() as db:
            result = await db.execute(...)
            await db.commit()
    """
    factory = session_factory or AsyncSessionLocal
    async with factory() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


async def init_db(bind=None) -> None:
    """
    Create any missing tables. Idempotent; existing tables are left as they are.
    """
    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
