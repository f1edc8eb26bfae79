"""Advance driver: moves a run forward by at most one phase per call.

advance() is safe to call from any number of clients, background tasks and
worker processes at once. It never holds a database transaction while
talking to a collaborator; every decision it makes is re-checked by a guarded
write in orchestrator.locks, and losing that write is an ordinary outcome.

Long sub-jobs are started fire-and-forget: the write that enters a stage also
takes the run's lease, and a scheduled kickoff coroutine submits the job,
records its reference and releases the lease.
"""

import asyncio
import logging
import uuid
from datetime import datetime
from typing import Any, Callable, Coroutine, Literal, Optional, Sequence

from pydantic import BaseModel

from autopipe.collaborators.base import CollaboratorAdapter, CompletionReport, RunContext
from autopipe.db.models import Run
from autopipe.orchestrator.errors import RunNotFound
from autopipe.orchestrator.locks import Lease, LockManager, RunError, lease_held
from autopipe.orchestrator.state import (
    STAGE_ERROR_CODES,
    STAGE_PHASES,
    can_transition,
    is_terminal,
    next_phase,
)
from autopipe.orchestrator.store import RunStore
from autopipe.services import audit_log
from autopipe.services.audit_log import AuditLogger

logger = logging.getLogger(__name__)

KICKOFF_FAILED = "KICKOFF_FAILED"

AdvanceAction = Literal[
    "terminal",
    "locked",
    "kickoff",
    "waiting",
    "transitioned",
    "completed",
    "retrying",
    "failed",
    "already_advanced",
    "invalid_transition",
]

Scheduler = Callable[[Coroutine[Any, Any, None]], Any]

# Strong references to in-flight kickoffs so they are not garbage collected
_background_tasks: set[asyncio.Task] = set()


def default_scheduler(coro: Coroutine[Any, Any, None]) -> asyncio.Task:
    """Run coro as a detached task on the current event loop."""
    task = asyncio.create_task(coro)
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    return task


async def wait_for_background_tasks() -> None:
    """Wait for scheduled kickoffs and cancels to finish.

    Short-lived processes (the CLI) call this before their event loop closes,
    otherwise pending kickoffs would be cancelled mid-flight.
    """
    while _background_tasks:
        await asyncio.gather(*list(_background_tasks), return_exceptions=True)


class AdvanceResult(BaseModel):
    run_id: uuid.UUID
    previous_phase: str
    new_phase: str
    action: AdvanceAction
    idempotent: bool
    message: str = ""
    locked_until: Optional[datetime] = None


def run_context(run: Run, phase: str) -> RunContext:
    return RunContext(
        run_id=run.id,
        owner_ref=run.owner_ref,
        phase=phase,
        config=run.config or {},
        linked_job_refs=dict(run.linked_job_refs or {}),
    )


def _failure_message(run: Run, report: CompletionReport) -> str:
    if report.total_units <= 0:
        return report.detail or "Stage produced no units"
    if report.outcome == "partial":
        return (
            f"{report.unfinished_count} of {report.total_units} units failed "
            f"after {run.stage_retry_count} stage retries"
        )
    return report.detail or f"All {report.total_units} units failed"


class AdvanceDriver:
    """Drives runs through the phase table.

    Args:
        store: Run reads
        locks: Guarded writes
        adapters: Collaborator per stage phase
        stage_retry_limit: Partial-failure resubmissions allowed per stage
        scheduler: Starts kickoff coroutines without awaiting them
        audit: Lifecycle audit trail
    """

    def __init__(
        self,
        store: RunStore,
        locks: LockManager,
        adapters: dict[str, CollaboratorAdapter],
        *,
        stage_retry_limit: int = 3,
        scheduler: Scheduler = default_scheduler,
        audit: Optional[AuditLogger] = None,
    ):
        self.store = store
        self.locks = locks
        self.adapters = adapters
        self.stage_retry_limit = stage_retry_limit
        self.scheduler = scheduler
        self.audit = audit

    async def advance(self, run_id: uuid.UUID) -> AdvanceResult:
        """Progress a run by at most one phase.

        Raises:
            RunNotFound: no run with this id
        """
        run = await self.store.get(run_id)
        if run is None:
            raise RunNotFound(f"Run {run_id} not found", details={"run_id": str(run_id)})

        phase = run.phase
        if is_terminal(phase):
            return self._result(run, phase, "terminal", True, f"Run is {phase}")

        if lease_held(run, self.locks.clock()):
            return self._result(
                run, phase, "locked", True, "Stage kickoff in progress",
                locked_until=run.locked_until,
            )

        if phase == "init":
            return await self._transition_forward(run)

        job_ref = (run.linked_job_refs or {}).get(phase)
        if job_ref is None:
            return await self._kickoff_missing(run)

        report = await self.adapters[phase].is_complete(job_ref)
        outcome = report.outcome
        if outcome == "running":
            return self._result(run, phase, "waiting", True, report.detail or "Stage in progress")
        if outcome == "succeeded":
            return await self._transition_forward(run)
        if outcome == "partial" and run.stage_retry_count < self.stage_retry_limit:
            return await self._retry_stage(run, report)
        return await self._fail_stage(run, report)

    def _result(
        self,
        run: Run,
        new_phase: str,
        action: AdvanceAction,
        idempotent: bool,
        message: str = "",
        locked_until: Optional[datetime] = None,
    ) -> AdvanceResult:
        return AdvanceResult(
            run_id=run.id,
            previous_phase=run.phase,
            new_phase=new_phase,
            action=action,
            idempotent=idempotent,
            message=message,
            locked_until=locked_until,
        )

    async def _lost_race(self, run: Run) -> AdvanceResult:
        """Report a guarded write that matched no row.

        If the phase moved, another writer advanced the run; otherwise the
        run is held by someone else's lease.
        """
        current = await self.store.get(run.id)
        current_phase = current.phase if current is not None else run.phase
        if current_phase != run.phase:
            return self._result(
                run, current_phase, "already_advanced", True,
                f"Run already moved to {current_phase}",
            )
        return self._result(
            run, current_phase, "locked", True, "Run is held by another writer",
            locked_until=current.locked_until if current is not None else None,
        )

    async def _transition_forward(self, run: Run) -> AdvanceResult:
        phase = run.phase
        target = next_phase(phase)
        if target is None or not can_transition(phase, target):
            logger.error("No forward edge from %s for run %s", phase, run.id)
            return self._result(run, phase, "invalid_transition", True, f"No forward edge from {phase}")

        lease = self.locks.issue_lease() if target in STAGE_PHASES else None
        if not await self.locks.transition(run.id, phase, target, lease=lease):
            return await self._lost_race(run)

        if lease is not None:
            self._schedule_kickoff(run_context(run, target), lease)

        if target == "ready":
            await self._audit(audit_log.RUN_COMPLETED, run, {"from": phase})
            return self._result(run, target, "completed", False, "Run completed")
        await self._audit(audit_log.RUN_ADVANCED, run, {"from": phase, "to": target})
        return self._result(run, target, "transitioned", False, f"Advanced to {target}")

    async def _kickoff_missing(self, run: Run) -> AdvanceResult:
        """Start a stage whose job was never recorded.

        Happens after a retry rolled back into the stage, or when a kickoff
        died and its lease expired.
        """
        lease = self.locks.issue_lease()
        if not await self.locks.acquire_lease(run.id, run.phase, lease):
            return await self._lost_race(run)
        self._schedule_kickoff(run_context(run, run.phase), lease)
        return self._result(run, run.phase, "kickoff", False, f"Starting {run.phase}")

    async def _retry_stage(self, run: Run, report: CompletionReport) -> AdvanceResult:
        if not report.failed_units_complete:
            # A re-kick of only the named units would drop the rest for good
            logger.warning(
                "Run %s: %d %s units unfinished but %d identified, failing the stage",
                run.id, report.unfinished_count, run.phase, len(set(report.failed_units)),
            )
            return await self._fail_stage(
                run, report,
                f"{report.unfinished_count} of {report.total_units} units unfinished, "
                f"{len(set(report.failed_units))} identified for resubmission",
            )

        lease = self.locks.issue_lease()
        won = await self.locks.record_stage_retry(run.id, run.phase, run.stage_retry_count, lease)
        if not won:
            return await self._lost_race(run)
        attempt = run.stage_retry_count + 1
        logger.info(
            "Run %s: %d of %d %s units failed, resubmitting (stage retry %d/%d)",
            run.id, report.unfinished_count, report.total_units, run.phase,
            attempt, self.stage_retry_limit,
        )
        self._schedule_kickoff(run_context(run, run.phase), lease, report.failed_units)
        return self._result(
            run, run.phase, "retrying", False,
            f"Resubmitting {report.unfinished_count} failed units (attempt {attempt})",
        )

    async def _fail_stage(
        self, run: Run, report: CompletionReport, message: Optional[str] = None
    ) -> AdvanceResult:
        phase = run.phase
        if message is None:
            message = _failure_message(run, report)

        error = RunError(code=STAGE_ERROR_CODES.get(phase, "STAGE_FAILED"), message=message, phase=phase)
        if not await self.locks.transition(run.id, phase, "failed", error=error):
            return await self._lost_race(run)
        logger.warning("Run %s failed in %s: %s", run.id, phase, message)
        await self._audit(audit_log.RUN_FAILED, run, {"phase": phase, "error_code": error.code})
        return self._result(run, "failed", "failed", False, message)

    def _schedule_kickoff(
        self, ctx: RunContext, lease: Lease, units: Optional[Sequence[str]] = None
    ) -> None:
        self.scheduler(self.kickoff(ctx, lease, units))

    async def kickoff(
        self, ctx: RunContext, lease: Lease, units: Optional[Sequence[str]] = None
    ) -> None:
        """Submit the stage job and record it under the lease.

        Runs detached from the request that scheduled it, so failures are
        written to the run instead of raised.
        """
        adapter = self.adapters[ctx.phase]
        try:
            job_ref = await adapter.kickoff(ctx, units)
        except Exception as e:
            logger.error(
                "Kickoff of %s failed for run %s: %s", ctx.phase, ctx.run_id, e, exc_info=True
            )
            error = RunError(code=KICKOFF_FAILED, message=str(e) or type(e).__name__, phase=ctx.phase)
            won = await self.locks.transition(
                ctx.run_id, ctx.phase, "failed", error=error, lease_token=lease.token
            )
            if won:
                await self.audit_event(
                    audit_log.RUN_FAILED, ctx.run_id, ctx.owner_ref,
                    {"phase": ctx.phase, "error_code": KICKOFF_FAILED},
                )
            return

        if not await self.locks.attach_job(ctx.run_id, ctx.phase, job_ref, lease.token):
            logger.warning(
                "Run %s left %s during kickoff, canceling job %s",
                ctx.run_id, ctx.phase, job_ref,
            )
            await adapter.cancel(job_ref)

    async def _audit(self, action: str, run: Run, details: dict) -> None:
        await self.audit_event(action, run.id, run.owner_ref, details)

    async def audit_event(
        self, action: str, run_id: uuid.UUID, owner_ref: str, details: dict
    ) -> None:
        if self.audit is not None:
            await self.audit.record(action, run_id, owner_ref, details)
