"""Database connection and session management."""

import logging
import os

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


def create_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    """Create the async engine used by the database-backed stores.

    Args:
        database_url: SQLAlchemy URL, e.g. ``sqlite+aiosqlite:///./multiauth.db``
        echo: Log emitted SQL

    Returns:
        Configured AsyncEngine
    """
    # Ensure database directory exists
    # Skip for in-memory databases or when directory creation fails (e.g., in tests)
    if "sqlite" in database_url and ":memory:" not in database_url:
        db_path = database_url.replace("sqlite+aiosqlite:///", "")
        db_dir = os.path.dirname(db_path)
        if db_dir and not os.path.exists(db_dir):
            try:
                os.makedirs(db_dir, exist_ok=True)
                logger.info(f"Created database directory: {db_dir}")
            except PermissionError:
                logger.debug(f"Skipping database directory creation (no permissions): {db_dir}")

    # For SQLite, add timeout to handle concurrent writes
    connect_args = {}
    if "sqlite" in database_url:
        connect_args = {
            "check_same_thread": False,
            "timeout": 30.0,  # 30 second timeout for database locks
        }

    return create_async_engine(
        database_url,
        echo=echo,
        connect_args=connect_args,
        pool_pre_ping=True,
    )


def create_session_maker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create the session factory the stores open short-lived sessions from."""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


async def init_db(engine: AsyncEngine) -> None:
    """Initialize database - create all tables."""
    # Register models on Base.metadata
    import multiauth.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    # Enable WAL mode for better concurrency with SQLite
    if engine.dialect.name == "sqlite" and ":memory:" not in str(engine.url):
        async with engine.connect() as conn:
            await conn.execute(text("PRAGMA journal_mode=WAL"))
            await conn.execute(text("PRAGMA synchronous=NORMAL"))
            await conn.execute(text("PRAGMA busy_timeout=30000"))
            await conn.commit()

    logger.info("Database initialized successfully")
