"""Database engine and session management with async SQLAlchemy.

Workers and the status API share the same engine. Delivery attempts run
concurrently, so each attempt opens its own session from ``AsyncSessionLocal``
rather than sharing the drain's session.
"""
from typing import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from webhook_delivery.config import settings

# Session factory type passed to components that open their own sessions
SessionFactory = async_sessionmaker[AsyncSession]


def build_session_factory(bind: AsyncEngine) -> SessionFactory:
    """Create a session factory with the options every component expects."""
    return async_sessionmaker(
        bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


engine = create_async_engine(
    str(settings.database_url),
    echo=settings.debug,
    pool_pre_ping=True,
    pool_size=settings.database_pool_size,
    max_overflow=10,
)

AsyncSessionLocal = build_session_factory(engine)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Dependency that provides a database session.

    Yields:
        AsyncSession: Database session for the request lifecycle
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


# Declarative base for all models
Base = declarative_base()
