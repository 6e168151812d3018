"""
Database session management.

WHY: Every ledger operation runs in exactly one transaction per request:
the session commits when the route returns and rolls back on any error,
so a failed reservation never leaves a partial counter update behind.
"""

from typing import AsyncGenerator
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker

from quota_ledger.core.config import settings


# pool_pre_ping recycles stale connections; row locks taken by the
# allocation engine are held for the lifetime of one pooled connection.
engine = create_async_engine(
    settings.async_database_url,
    echo=settings.DEBUG,
    pool_pre_ping=True,
    pool_size=10,
    max_overflow=20,
)

# expire_on_commit=False keeps ORM objects readable after the
# orchestrator commits a failed-provisioning record mid-request.
AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False,
)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Dependency to get a request-scoped database session.

    Yields:
        AsyncSession: committed on success, rolled back on error
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
