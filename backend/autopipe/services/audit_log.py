"""Best-effort audit trail of run lifecycle events.

Audit rows are written in their own short transaction after the operation
they describe has committed. A failed audit write is logged and dropped; it
never fails or rolls back the operation.
"""

import logging
import uuid
from typing import Any, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from autopipe.db.models import AuditLog

logger = logging.getLogger(__name__)

RUN_STARTED = "run.started"
RUN_ADVANCED = "run.advanced"
RUN_FAILED = "run.failed"
RUN_COMPLETED = "run.completed"
RUN_RETRIED = "run.retried"
RUN_CANCELED = "run.canceled"
RUN_ARCHIVED = "run.archived"


class AuditLogger:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def record(
        self,
        action: str,
        run_id: Optional[uuid.UUID],
        owner_ref: Optional[str],
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        try:
            async with self.session_factory() as session:
                session.add(
                    AuditLog(
                        run_id=run_id,
                        owner_ref=owner_ref,
                        action=action,
                        details=details or {},
                    )
                )
                await session.commit()
        except SQLAlchemyError as e:
            logger.warning("Audit write %s for run %s failed: %s", action, run_id, e)

    async def for_run(self, run_id: uuid.UUID) -> Sequence[AuditLog]:
        """Audit entries of one run, oldest first."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(AuditLog)
                .where(AuditLog.run_id == run_id)
                .order_by(AuditLog.created_at.asc(), AuditLog.id.asc())
            )
            return result.scalars().all()
