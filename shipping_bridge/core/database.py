"""
Engine and sessions for the orders database.

Request handlers get a session from get_db. Code that runs outside a
request (carrier config provider, webhook failure queue, scripts) opens
one with get_db_session.
"""
from contextlib import asynccontextmanager
from typing import Any, Dict

from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import declarative_base

from shipping_bridge.core.config import settings


def _pool_options() -> Dict[str, Any]:
    if settings.ENVIRONMENT != "production":
        return {"pool_size": 2, "max_overflow": 5, "pool_pre_ping": True}
    return {
        "pool_size": settings.DB_POOL_SIZE,
        "max_overflow": settings.DB_MAX_OVERFLOW,
        "pool_recycle": settings.DB_POOL_RECYCLE,
        "pool_pre_ping": True,
    }


engine = create_async_engine(settings.DATABASE_URL, echo=settings.DEBUG, **_pool_options())

AsyncSessionLocal = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

Base = declarative_base()


async def get_db() -> AsyncSession:
    async with get_db_session() as session:
        yield session


@asynccontextmanager
async def get_db_session():
    """Session that commits on success and rolls back on any error."""
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def dispose_engine() -> None:
    """Close pooled connections on shutdown."""
    await engine.dispose()
