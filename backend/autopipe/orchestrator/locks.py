"""Lock manager: guarded writes on the run row and named scheduler locks.

Two primitives coordinate every writer, whether it is a polling client, a
background kickoff task or the sweeper in another process:

- Phase CAS. Each write carries ``WHERE phase = :expected``. Zero affected rows
  means another writer already moved the run; callers treat that as an
  idempotent outcome, never as an error.
- Lease. ``locked_until`` marks the run as exclusively claimed while a long
  sub-job is being kicked off. Leases expire on a fixed window and are then
  reclaimable by anyone; there is no heartbeat. ``lease_token`` identifies the
  holder so a late kickoff cannot release or overwrite a newer lease.

Nothing here reads then writes without a guard.
"""

import logging
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy import or_, select, update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from autopipe.db.models import Run, SchedulerLock, utcnow
from autopipe.orchestrator.state import (
    TERMINAL_PHASES,
    can_transition,
    stages_from,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Lease:
    """A time-boxed exclusive claim on a run."""

    token: str
    locked_at: datetime
    locked_until: datetime

    @classmethod
    def issue(cls, seconds: int, now: datetime) -> "Lease":
        return cls(
            token=secrets.token_hex(16),
            locked_at=now,
            locked_until=now + timedelta(seconds=seconds),
        )


@dataclass(frozen=True)
class RunError:
    """Error fields recorded on a transition to "failed"."""

    code: str
    message: str
    phase: str


def lease_held(run: Run, now: datetime) -> bool:
    """True while the run's lease window is still open."""
    return run.locked_until is not None and run.locked_until > now


class LockManager:
    """Guarded writers for the run row.

    Every method returns True only when its own write took effect.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        lease_seconds: int = 300,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.lease_seconds = lease_seconds
        self.clock = clock

    def issue_lease(self) -> Lease:
        return Lease.issue(self.lease_seconds, self.clock())

    async def _execute(self, stmt) -> bool:
        async with self.session_factory() as session:
            result = await session.execute(
                stmt.execution_options(synchronize_session=False)
            )
            await session.commit()
            return result.rowcount == 1

    @staticmethod
    def _lease_free(now: datetime):
        return or_(Run.locked_until.is_(None), Run.locked_until <= now)

    async def transition(
        self,
        run_id: uuid.UUID,
        expected: str,
        target: str,
        *,
        error: Optional[RunError] = None,
        lease: Optional[Lease] = None,
        require_lease_free: bool = True,
        lease_token: Optional[str] = None,
    ) -> bool:
        """Move a run from expected to target in one conditional UPDATE.

        Args:
            run_id: Run to move
            expected: Phase the caller observed; the write is conditioned on it
            target: New phase; must be an edge of the transition table
            error: Error fields, recorded when target is "failed"
            lease: Lease to take together with the move (next stage kickoff)
            require_lease_free: Also require no open lease held by others
            lease_token: Instead of a free lease, require this exact holder

        Returns:
            True if this call performed the transition, False if the edge is
            illegal or another writer got there first
        """
        if not can_transition(expected, target):
            logger.error("Rejected transition %s -> %s for run %s", expected, target, run_id)
            return False

        now = self.clock()
        values = {"phase": target, "updated_at": now}

        if target in TERMINAL_PHASES:
            values.update(locked_at=None, locked_until=None, lease_token=None)
        elif lease is not None:
            values.update(
                locked_at=lease.locked_at,
                locked_until=lease.locked_until,
                lease_token=lease.token,
            )
        else:
            values.update(locked_at=None, locked_until=None, lease_token=None)

        if target not in TERMINAL_PHASES:
            values["stage_retry_count"] = 0
        if target == "ready":
            values["completed_at"] = now
        if error is not None:
            values.update(
                error_code=error.code,
                error_message=error.message,
                error_phase=error.phase,
            )

        stmt = update(Run).where(Run.id == run_id, Run.phase == expected)
        if lease_token is not None:
            stmt = stmt.where(Run.lease_token == lease_token)
        elif require_lease_free:
            stmt = stmt.where(self._lease_free(now))

        won = await self._execute(stmt.values(**values))
        if won:
            logger.info("Run %s: %s -> %s", run_id, expected, target)
        return won

    async def acquire_lease(self, run_id: uuid.UUID, phase: str, lease: Lease) -> bool:
        """Claim the run for a kickoff in phase, if no live lease exists."""
        now = self.clock()
        return await self._execute(
            update(Run)
            .where(Run.id == run_id, Run.phase == phase, self._lease_free(now))
            .values(
                locked_at=lease.locked_at,
                locked_until=lease.locked_until,
                lease_token=lease.token,
                updated_at=now,
            )
        )

    async def release_lease(self, run_id: uuid.UUID, lease_token: str) -> bool:
        return await self._execute(
            update(Run)
            .where(Run.id == run_id, Run.lease_token == lease_token)
            .values(locked_at=None, locked_until=None, lease_token=None)
        )

    async def record_stage_retry(
        self,
        run_id: uuid.UUID,
        phase: str,
        observed_stage_retries: int,
        lease: Lease,
    ) -> bool:
        """Count a within-stage retry and take the lease for its re-kick.

        Guarded on the observed stage retry count so concurrent pollers that
        saw the same partial failure count it once.
        """
        now = self.clock()
        return await self._execute(
            update(Run)
            .where(
                Run.id == run_id,
                Run.phase == phase,
                Run.stage_retry_count == observed_stage_retries,
                self._lease_free(now),
            )
            .values(
                retry_count=Run.retry_count + 1,
                stage_retry_count=Run.stage_retry_count + 1,
                locked_at=lease.locked_at,
                locked_until=lease.locked_until,
                lease_token=lease.token,
                updated_at=now,
            )
        )

    async def attach_job(
        self,
        run_id: uuid.UUID,
        phase: str,
        job_ref: str,
        lease_token: str,
    ) -> bool:
        """Record the job backing phase and release the kickoff lease.

        Only the lease holder may attach, and only while the run is still in
        phase; a canceled or superseded kickoff gets False.
        """
        now = self.clock()
        async with self.session_factory() as session:
            result = await session.execute(
                select(Run.linked_job_refs).where(
                    Run.id == run_id, Run.phase == phase, Run.lease_token == lease_token
                )
            )
            current = result.scalar_one_or_none()
            if current is None:
                return False
            refs = dict(current)
            refs[phase] = job_ref
            result = await session.execute(
                update(Run)
                .where(Run.id == run_id, Run.phase == phase, Run.lease_token == lease_token)
                .values(
                    linked_job_refs=refs,
                    locked_at=None,
                    locked_until=None,
                    lease_token=None,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            return result.rowcount == 1

    async def rollback_for_retry(
        self,
        run_id: uuid.UUID,
        target: str,
        linked_job_refs: dict,
        observed_manual_retries: int,
    ) -> bool:
        """Re-enter a failed run at target, clearing error and lease fields.

        Job refs for target and every later stage are dropped so the next
        advance kicks those stages off again.

        Raises:
            sqlalchemy.exc.IntegrityError: the owner already has another
                active run, so this one cannot become active again
        """
        if not can_transition("failed", target):
            logger.error("Rejected rollback failed -> %s for run %s", target, run_id)
            return False
        dropped = set(stages_from(target))
        refs = {k: v for k, v in (linked_job_refs or {}).items() if k not in dropped}
        now = self.clock()
        return await self._execute(
            update(Run)
            .where(
                Run.id == run_id,
                Run.phase == "failed",
                Run.manual_retry_count == observed_manual_retries,
            )
            .values(
                phase=target,
                retry_count=Run.retry_count + 1,
                manual_retry_count=Run.manual_retry_count + 1,
                stage_retry_count=0,
                error_code=None,
                error_message=None,
                error_phase=None,
                locked_at=None,
                locked_until=None,
                lease_token=None,
                linked_job_refs=refs,
                updated_at=now,
            )
        )

    async def cancel(self, run_id: uuid.UUID) -> bool:
        """Move any non-terminal run to "canceled", ignoring leases."""
        now = self.clock()
        return await self._execute(
            update(Run)
            .where(Run.id == run_id, Run.phase.not_in(TERMINAL_PHASES))
            .values(
                phase="canceled",
                locked_at=None,
                locked_until=None,
                lease_token=None,
                updated_at=now,
            )
        )

    async def acquire_named(self, key: str, ttl_seconds: int) -> bool:
        """Take a named scheduler lock if it is free or expired."""
        now = self.clock()
        until = now + timedelta(seconds=ttl_seconds)
        stmt = sqlite_insert(SchedulerLock).values(key=key, locked_until=until, updated_at=now)
        stmt = stmt.on_conflict_do_update(
            index_elements=[SchedulerLock.key],
            set_={"locked_until": until, "updated_at": now},
            where=SchedulerLock.locked_until <= now,
        )
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount == 1

    async def release_named(self, key: str) -> None:
        now = self.clock()
        async with self.session_factory() as session:
            await session.execute(
                update(SchedulerLock)
                .where(SchedulerLock.key == key)
                .values(locked_until=now, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
