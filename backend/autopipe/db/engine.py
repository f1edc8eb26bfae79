"""
Database engine configuration for autopipe.

Provides async SQLAlchemy engine with SQLite WAL mode,
crash-safe PRAGMA configuration, and session management.
"""
from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from autopipe.config import settings


def configure_sqlite_pragmas(dbapi_conn, connection_record):
    """Per-connection PRAGMAs for the run store.

    WAL lets status readers run while a phase write commits, and FULL sync
    makes a committed transition durable. busy_timeout makes racing
    advance() writers queue for the write lock instead of failing fast.
    """
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA synchronous=FULL")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.execute("PRAGMA busy_timeout=5000")
    cursor.close()


def create_engine(database_url: str, **kwargs) -> AsyncEngine:
    """Create an async engine, registering SQLite PRAGMAs when applicable."""
    new_engine = create_async_engine(database_url, echo=False, **kwargs)
    if new_engine.dialect.name == "sqlite":
        # aiosqlite connections only fire pool events on the sync engine
        event.listens_for(new_engine.sync_engine, "connect")(configure_sqlite_pragmas)
    return new_engine


def create_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # expire_on_commit=False keeps loaded runs readable after commit
    return async_sessionmaker(bind, expire_on_commit=False, class_=AsyncSession)


# Create async engine
engine = create_engine(settings.storage.database_url)

# Create session factory
async_session = create_session_factory(engine)


async def shutdown():
    """Dispose of engine and close all connections."""
    await engine.dispose()
