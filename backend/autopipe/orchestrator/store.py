"""Run store: creation and read access to persisted runs.

Every phase-changing write lives in orchestrator.locks; this module only
inserts new runs, reads them back, and maintains side tables (artifacts,
archive flag) that never participate in the phase CAS.
"""

import logging
import uuid
from datetime import datetime
from typing import Callable, Optional, Sequence

from sqlalchemy import select, update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from autopipe.db.models import Run, RunArtifact, utcnow
from autopipe.orchestrator.errors import ActiveRunExists
from autopipe.orchestrator.state import TERMINAL_PHASES

logger = logging.getLogger(__name__)


class RunStore:
    """Persisted run records, one session per call.

    Sessions are never shared across calls so the store is safe to use from
    concurrent tasks and from several worker processes at once.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.clock = clock

    async def create(
        self,
        owner_ref: str,
        config: dict,
        started_from: Optional[str] = None,
    ) -> Run:
        """Insert a new run in phase "init".

        Raises:
            ActiveRunExists: owner already has a non-terminal run (detected
                up front, or by the partial unique index on a race)
        """
        existing = await self.find_active(owner_ref)
        if existing is not None:
            raise ActiveRunExists(
                "Active run already exists",
                details={"run_id": str(existing.id), "phase": existing.phase},
            )

        now = self.clock()
        run = Run(
            owner_ref=owner_ref,
            phase="init",
            config=config,
            started_from=started_from,
            linked_job_refs={},
            created_at=now,
            updated_at=now,
        )
        async with self.session_factory() as session:
            session.add(run)
            try:
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                raise ActiveRunExists(
                    "Active run already exists for this owner",
                    details={"owner_ref": owner_ref},
                ) from e
        logger.info("Created run %s for owner %s", run.id, owner_ref)
        return run

    async def get(self, run_id: uuid.UUID) -> Optional[Run]:
        async with self.session_factory() as session:
            return await session.get(Run, run_id)

    async def find_active(self, owner_ref: str) -> Optional[Run]:
        """Return the owner's non-terminal run, if any."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(Run)
                .where(Run.owner_ref == owner_ref, Run.phase.not_in(TERMINAL_PHASES))
                .order_by(Run.created_at.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def list_for_owner(
        self, owner_ref: str, include_archived: bool = False
    ) -> Sequence[Run]:
        """List an owner's runs, newest first."""
        stmt = select(Run).where(Run.owner_ref == owner_ref)
        if not include_archived:
            stmt = stmt.where(Run.is_archived.is_(False))
        async with self.session_factory() as session:
            result = await session.execute(stmt.order_by(Run.created_at.desc()))
            return result.scalars().all()

    async def list_idle(self, idle_before: datetime, limit: int) -> Sequence[Run]:
        """Non-terminal runs not written since idle_before, oldest first."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(Run)
                .where(Run.phase.not_in(TERMINAL_PHASES), Run.updated_at < idle_before)
                .order_by(Run.updated_at.asc())
                .limit(limit)
            )
            return result.scalars().all()

    async def archive(self, run_id: uuid.UUID) -> bool:
        """Hide a terminal run from default listings. False if not terminal."""
        async with self.session_factory() as session:
            result = await session.execute(
                update(Run)
                .where(Run.id == run_id, Run.phase.in_(TERMINAL_PHASES))
                .values(is_archived=True)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            return result.rowcount == 1

    async def get_artifact(self, run_id: uuid.UUID, phase: str) -> Optional[RunArtifact]:
        async with self.session_factory() as session:
            return await session.get(RunArtifact, (run_id, phase))

    async def save_artifact(
        self,
        run_id: uuid.UUID,
        phase: str,
        url: str,
        expires_at: Optional[datetime],
    ) -> RunArtifact:
        """Upsert the stage's result reference. Touches run_artifacts only.

        A single INSERT ... ON CONFLICT so concurrent status readers that both
        refresh the URL cannot collide on the primary key; the last write wins.
        """
        values = {"url": url, "expires_at": expires_at, "refreshed_at": self.clock()}
        stmt = sqlite_insert(RunArtifact).values(run_id=run_id, phase=phase, **values)
        stmt = stmt.on_conflict_do_update(
            index_elements=[RunArtifact.run_id, RunArtifact.phase],
            set_=values,
        )
        async with self.session_factory() as session:
            await session.execute(stmt)
            await session.commit()
            return await session.get(RunArtifact, (run_id, phase))
