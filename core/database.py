"""
Database Management and Configuration.

This module is responsible for setting up and managing the asynchronous database
connection for the Challenge Engagement API. It uses SQLAlchemy with `asyncio`
support and SQLModel for data modeling.

Key Components:
- `engine`: The core SQLAlchemy async engine, configured from the
  `DATABASE_URL` setting. It supports both SQLite (for development) and
  PostgreSQL (for production).
- `async_session`: An asynchronous session factory. Every service opens one
  session per operation and wraps its writes in a single transaction, which
  is what gives each mutation its all-or-nothing behaviour.
- `create_db_and_tables`: A startup function that creates all tables from the
  SQLModel metadata, including the unique constraints the engagement rules
  rely on (one participation per user and challenge, one check-in per day,
  one pending friend request per pair, one like per user and comment).
- `get_database_info` / `health_check`: Diagnostics for the monitoring router.

Architectural Design:
- Asynchronous Operations: `aiosqlite` for SQLite and `asyncpg` for PostgreSQL.
- Factories for Tests: `build_engine` and `build_session_factory` let tests run
  against an isolated in-memory database.
"""

import logging
from typing import Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlalchemy.pool import AsyncAdaptedQueuePool, StaticPool
from sqlmodel import SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession

from core.config import get_settings

logger = logging.getLogger(__name__)

DATABASE_URL = get_settings().database_url


def build_engine(database_url: str) -> AsyncEngine:
    """Create an async engine configured for the given database type"""
    if database_url.startswith("sqlite"):
        if ":memory:" in database_url:
            # A single shared connection keeps the in-memory database alive
            return create_async_engine(
                database_url,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
                echo=False,
            )
        return create_async_engine(
            database_url,
            connect_args={"check_same_thread": False},
            echo=False,  # Set to True for SQL debugging
            poolclass=AsyncAdaptedQueuePool,
        )

    return create_async_engine(
        database_url,
        poolclass=AsyncAdaptedQueuePool,
        pool_size=5,
        max_overflow=10,
        pool_pre_ping=True,  # Validate connections before use
        echo=False,
    )


def build_session_factory(db_engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


engine = build_engine(DATABASE_URL)
async_session = build_session_factory(engine)


async def create_db_and_tables(db_engine: Optional[AsyncEngine] = None):
    """
    Initialize the database and create all tables.
    Called during application startup.
    """
    # Import registers the table metadata
    import core.models  # noqa: F401

    target = db_engine or engine
    try:
        async with target.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)
        logger.info("Engagement database tables created successfully")
    except Exception as e:
        logger.error(f"Failed to create engagement database tables: {e}")
        raise


async def get_database_info():
    """
    Get basic database information for health checks.
    """
    try:
        async with async_session() as session:
            result = await session.execute(text("SELECT 1"))
            result.scalar()
            connection_healthy = True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        connection_healthy = False

    return {
        "database_url": DATABASE_URL.split("@")[1]
        if "@" in DATABASE_URL
        else "masked",  # Hide credentials
        "connection_healthy": connection_healthy,
        "database_type": "postgresql" if "postgresql" in DATABASE_URL else "sqlite",
    }


async def health_check():
    """
    Perform a health check on the database, including table access.
    """
    try:
        async with async_session() as session:
            result = await session.execute(text("SELECT 1"))
            result.scalar()

            result = await session.execute(
                text("SELECT COUNT(*) FROM challenge_participants")
            )
            result.scalar()

        return {
            "status": "healthy",
            "database_type": "postgresql" if "postgresql" in DATABASE_URL else "sqlite",
            "tables_accessible": True,
        }
    except Exception as e:
        return {
            "status": "unhealthy",
            "error": str(e),
            "database_type": "postgresql" if "postgresql" in DATABASE_URL else "sqlite",
        }
