"""Database connection and session management.

Transaction Guarantees:
- Every write goes through get_session_context and is atomic
- On any exception, the entire transaction is rolled back
- Sessions are properly closed afterwards

The notification engine does not share one session across its concurrent
dispatch tasks. It receives the session factory and opens a short
transaction per ledger lookup or write.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
import logging
import ssl

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from .config import get_settings

logger = logging.getLogger(__name__)
settings = get_settings()


def build_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    """Create an async engine, enabling SSL for cloud-hosted PostgreSQL."""
    connect_args = {}
    if database_url.startswith("postgresql") and (
        settings.environment == "production" or "supabase" in database_url
    ):
        ssl_context = ssl.create_default_context()
        ssl_context.check_hostname = False
        ssl_context.verify_mode = ssl.CERT_NONE
        connect_args["ssl"] = ssl_context
        # pgbouncer does not support prepared statements
        connect_args["statement_cache_size"] = 0
        logger.info("Using SSL for database connection with pgbouncer compatibility")

    if database_url.startswith("sqlite"):
        return create_async_engine(database_url, echo=echo, connect_args=connect_args)

    return create_async_engine(
        database_url,
        pool_size=10,
        max_overflow=20,
        echo=echo,
        pool_pre_ping=True,
        pool_recycle=300,
        pool_timeout=30,
        connect_args=connect_args,
    )


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


engine = build_engine(settings.database_url_async, echo=settings.database_echo)
async_session_factory = build_session_factory(engine)


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Dependency that provides the session factory for the notification engine."""
    return async_session_factory


@asynccontextmanager
async def get_session_context(
    factory: async_sessionmaker[AsyncSession] | None = None,
) -> AsyncGenerator[AsyncSession, None]:
    """Transactional session outside FastAPI: commit on success, roll back on error."""
    async with (factory or async_session_factory)() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


async def init_db(target: AsyncEngine | None = None) -> None:
    """Initialize database (create tables if needed)."""
    from ..models import Base

    async with (target or engine).begin() as conn:
        # In production, use migrations instead
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """Close database connections."""
    await engine.dispose()
