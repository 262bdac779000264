"""
Database session management.

WHY: Async database sessions are required for FastAPI's async/await pattern.
One session per request gives every engine operation a single transaction:
the dependency commits on success and rolls back on any exception.
"""

from typing import AsyncGenerator
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker

from billing_core.core.config import settings


# WHY: pool_pre_ping recycles stale connections; echo is on only in
# development so statement logs never reach production log sinks.
engine = create_async_engine(
    settings.async_database_url,
    echo=settings.sql_echo,
    pool_pre_ping=True,
)

# expire_on_commit=False prevents lazy-loading issues after commit.
AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Dependency to get database session.

    Yields:
        AsyncSession: Database session for the request
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
