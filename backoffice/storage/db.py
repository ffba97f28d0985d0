# ==== DATABASE CONNECTION AND SESSION MANAGEMENT ==== #

"""
Database connection and session management for the back office core.

This module provides async SQLAlchemy connectivity over asyncpg, pooler
aware engine configuration and a session context manager that commits on
success and rolls back on any error.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator
from uuid import uuid4

import asyncpg
from sqlalchemy.ext.asyncio import (
    create_async_engine,
    async_sessionmaker,
    AsyncSession,
    AsyncEngine
)
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import NullPool

from backoffice.settings import settings
from backoffice.observability.metrics import db_sessions_active


# ==== SQLALCHEMY CONFIGURATION ==== #

# SQLAlchemy base for model definitions
Base = declarative_base()

# Global engine and session factory instances
engine: AsyncEngine | None = None
SessionLocal: async_sessionmaker[AsyncSession] | None = None


class _UniqueStmtConnection(asyncpg.Connection):
    """asyncpg Connection with UUID-based prepared-statement IDs."""

    def _get_unique_id(self, prefix: str) -> str:
        return f"__asyncpg_{prefix}_{uuid4().hex}__"


def _normalize_url(db_url: str) -> str:
    """Force the asyncpg driver and its SSL parameter spelling."""
    if not db_url.startswith("postgresql+asyncpg://"):
        db_url = db_url.replace("postgresql+psycopg://", "postgresql+asyncpg://")
        db_url = db_url.replace("postgresql://", "postgresql+asyncpg://")

    if "sslmode=require" in db_url:
        db_url = db_url.replace("sslmode=require", "ssl=require")

    return db_url


# ==== DATABASE INITIALIZATION ==== #

def init_database(db_url: str | None = None) -> None:
    """
    Initialize database engine and session factory.

    Args:
        db_url: Override for ``settings.DATABASE_URL`` (used by migrations
            and the CLI when pointed at a direct connection)
    """
    global engine, SessionLocal

    if engine is not None:
        return

    db_url = _normalize_url(db_url or settings.DATABASE_URL)

    # Check if this is a pooler connection
    is_pooler = "pooler" in db_url

    # PgBouncer compatibility - use unique statement names to avoid collisions
    connect_args = {
        "statement_cache_size": 0,
        "connection_class": _UniqueStmtConnection,
        "server_settings": {
            "application_name": settings.SERVICE_NAME,
            "timezone": "UTC"
        }
    }

    engine_kwargs = {}
    if is_pooler:
        # Avoid double pooling behind PgBouncer
        engine_kwargs["poolclass"] = NullPool

    # Counter and charge writes rely on row-level compare-and-swap, so the
    # isolation level stays READ COMMITTED even behind a pooler.
    engine = create_async_engine(
        db_url,
        echo=settings.APP_ENV == "dev" and settings.LOG_LEVEL == "DEBUG",
        isolation_level="READ COMMITTED",
        connect_args=connect_args,
        **engine_kwargs
    )

    SessionLocal = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False
    )


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Get database session with automatic cleanup.

    Yields:
        AsyncSession: Database session

    Raises:
        Exception: If database connection fails
    """
    if SessionLocal is None:
        init_database()

    async with SessionLocal() as session:
        try:
            db_sessions_active.inc()
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            db_sessions_active.dec()
            await session.close()


async def close_database() -> None:
    """Close database connections on shutdown."""
    global engine, SessionLocal
    if engine is not None:
        await engine.dispose()
        engine = None
        SessionLocal = None
