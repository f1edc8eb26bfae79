"""
Database module for autopipe.

Provides async SQLAlchemy engine with SQLite WAL mode,
session management, and schema initialization.
"""
import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine

from autopipe.db.engine import async_session, engine, shutdown
from autopipe.db.models import Base, Run, RunArtifact, AuditLog, SchedulerLock, utcnow

logger = logging.getLogger(__name__)


async def init_database(bind: Optional[AsyncEngine] = None):
    """Initialize database schema on first run (idempotent)."""
    target = bind or engine
    async with target.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.debug("Schema ready on %s", target.url)


__all__ = [
    "Base",
    "Run",
    "RunArtifact",
    "AuditLog",
    "SchedulerLock",
    "utcnow",
    "engine",
    "async_session",
    "shutdown",
    "init_database",
]
