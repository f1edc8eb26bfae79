"""Retry/rollback controller for failed runs.

Within-stage retries of partially failed batches are decided by the advance
driver. This module handles the explicit retry() operation: it moves a failed
run back to the phase it should resume from and leaves the actual re-kick to
the next advance() call.
"""

import logging
import uuid
from typing import Literal, Optional

from pydantic import BaseModel
from sqlalchemy.exc import IntegrityError

from autopipe.orchestrator.errors import RunNotFound
from autopipe.orchestrator.locks import LockManager
from autopipe.orchestrator.state import is_terminal, rollback_target
from autopipe.orchestrator.store import RunStore
from autopipe.services import audit_log
from autopipe.services.audit_log import AuditLogger

logger = logging.getLogger(__name__)

RetryAction = Literal["retried", "exhausted", "conflict", "already_retried", "phase_mismatch"]


class RetryResult(BaseModel):
    run_id: uuid.UUID
    previous_phase: str
    new_phase: str
    action: RetryAction
    idempotent: bool
    retry_count: int
    message: str = ""


class RetryController:
    """Explicit retries, bounded by max_manual_retries over a run's life."""

    def __init__(
        self,
        store: RunStore,
        locks: LockManager,
        *,
        max_manual_retries: int = 5,
        audit: Optional[AuditLogger] = None,
    ):
        self.store = store
        self.locks = locks
        self.max_manual_retries = max_manual_retries
        self.audit = audit

    async def retry(self, run_id: uuid.UUID) -> RetryResult:
        """Roll a failed run back to its re-entry phase.

        Raises:
            RunNotFound: no run with this id
        """
        run = await self.store.get(run_id)
        if run is None:
            raise RunNotFound(f"Run {run_id} not found", details={"run_id": str(run_id)})

        def result(action: RetryAction, new_phase: str, idempotent: bool, retry_count: int, message: str):
            return RetryResult(
                run_id=run.id,
                previous_phase=run.phase,
                new_phase=new_phase,
                action=action,
                idempotent=idempotent,
                retry_count=retry_count,
                message=message,
            )

        if run.phase != "failed":
            # An active run that has been retried before is the product of an
            # earlier retry() call; repeating it changes nothing
            if run.manual_retry_count > 0 and not is_terminal(run.phase):
                return result(
                    "already_retried", run.phase, True, run.retry_count,
                    f"Run already resumed at {run.phase}",
                )
            return result(
                "phase_mismatch", run.phase, True, run.retry_count,
                f"Only failed runs can be retried (phase is {run.phase})",
            )

        if run.manual_retry_count >= self.max_manual_retries:
            return result(
                "exhausted", run.phase, True, run.retry_count,
                f"Retry limit of {self.max_manual_retries} reached",
            )

        target = rollback_target(run.error_phase)
        try:
            won = await self.locks.rollback_for_retry(
                run.id, target, run.linked_job_refs or {}, run.manual_retry_count
            )
        except IntegrityError:
            logger.info("Retry of run %s refused: owner %s has another active run", run.id, run.owner_ref)
            return result(
                "conflict", run.phase, True, run.retry_count,
                "Another run is already active for this owner",
            )

        if not won:
            current = await self.store.get(run.id)
            current_phase = current.phase if current is not None else run.phase
            return result(
                "already_retried", current_phase, True,
                current.retry_count if current is not None else run.retry_count,
                f"Run already resumed at {current_phase}",
            )

        logger.info(
            "Run %s retried: failed in %s, resuming at %s (manual retry %d/%d)",
            run.id, run.error_phase, target, run.manual_retry_count + 1, self.max_manual_retries,
        )
        if self.audit is not None:
            await self.audit.record(
                audit_log.RUN_RETRIED, run.id, run.owner_ref,
                {"error_phase": run.error_phase, "error_code": run.error_code, "resume_at": target},
            )
        return result("retried", target, False, run.retry_count + 1, f"Resuming at {target}")
