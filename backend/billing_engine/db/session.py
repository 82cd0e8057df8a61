"""
Database session management.

WHY: Async database sessions are required for FastAPI's async/await pattern.
Batch drivers (billing schedules, dunning) also need a session *factory*
rather than a single session, because every schedule or dunning event is
processed in its own transaction so that one failure never rolls back its
neighbours.
"""

from typing import AsyncGenerator
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker

from billing_engine.core.config import settings


# WHY: pool_pre_ping recycles stale connections. The pool must be large
# enough for BILLING_BATCH_CONCURRENCY workers plus API traffic.
engine = create_async_engine(
    settings.async_database_url,
    echo=settings.DEBUG,
    pool_pre_ping=True,
    pool_size=10,
    max_overflow=20,
)

# WHY: expire_on_commit=False prevents lazy-loading issues after commit.
AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False,
)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Dependency to get database session.

    WHY: FastAPI dependency injection ensures each request gets its own
    database session, with automatic cleanup via context manager.

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


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Session factory handed to the batch drivers."""
    return AsyncSessionLocal
