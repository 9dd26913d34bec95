"""Async database engine and session management.

Builds the SQLAlchemy async engine for the relational store and provides
sessions both as a FastAPI dependency (request-scoped) and as a context
manager for maintenance scripts that run outside a request.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from account_trust.core.config import Settings, settings


def build_engine(config: Settings) -> AsyncEngine:
    """Create an async engine for the configured PostgreSQL database.

    Args:
        config: Application settings.

    Returns:
        AsyncEngine with pre-ping enabled so stale pooled connections are
        replaced instead of surfacing as request failures.
    """
    return create_async_engine(
        config.database_url,
        echo=config.environment == "development",
        pool_pre_ping=True,
    )


engine = build_engine(settings)

async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Dependency that provides a database session.

    Commits when the endpoint returns normally, rolls back on any exception.
    """
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


@asynccontextmanager
async def session_scope() -> AsyncGenerator[AsyncSession, None]:
    """Transactional session for code running outside a request.

    Used by maintenance scripts (ledger rebuild, expired-row purge).
    """
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
