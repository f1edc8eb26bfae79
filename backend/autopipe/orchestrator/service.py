"""Orchestrator facade: the external run operations in one object.

Usage:
    from autopipe.orchestrator.service import get_orchestrator

    orch = get_orchestrator()
    run = await orch.start("project-42", {"target_scene_count": 5}, started_from="api")
    result = await orch.advance(run.id)
    status = await orch.get_status(run.id)
"""

import logging
import uuid
from datetime import datetime
from typing import Any, Callable, Literal, Optional, Sequence, Union

from pydantic import BaseModel, ValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from autopipe.collaborators.base import CollaboratorAdapter
from autopipe.collaborators.registry import build_adapters, close_adapters
from autopipe.config import OrchestratorConfig, settings
from autopipe.db.models import Run, utcnow
from autopipe.orchestrator.driver import AdvanceDriver, AdvanceResult, Scheduler, default_scheduler
from autopipe.orchestrator.errors import InvalidPhase, RunConfigError, RunNotFound
from autopipe.orchestrator.locks import LockManager
from autopipe.orchestrator.retry import RetryController, RetryResult
from autopipe.orchestrator.state import is_terminal
from autopipe.orchestrator.status import RunStatus, StatusAggregator
from autopipe.orchestrator.store import RunStore
from autopipe.schemas.run_config import RunConfig
from autopipe.services import audit_log
from autopipe.services.audit_log import AuditLogger

logger = logging.getLogger(__name__)

CancelAction = Literal["canceled", "already_terminal"]


class CancelResult(BaseModel):
    run_id: uuid.UUID
    previous_phase: str
    new_phase: str
    action: CancelAction
    idempotent: bool


class Orchestrator:
    """Entry point for every run operation.

    Holds no per-run state; any number of instances, in any number of
    processes, can serve the same database.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        adapters: dict[str, CollaboratorAdapter],
        *,
        config: Optional[OrchestratorConfig] = None,
        scheduler: Scheduler = default_scheduler,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.config = config or settings.orchestrator
        self.adapters = adapters
        self.scheduler = scheduler
        self.store = RunStore(session_factory, clock)
        self.locks = LockManager(session_factory, self.config.lease_seconds, clock)
        self.audit = AuditLogger(session_factory)
        self.driver = AdvanceDriver(
            self.store,
            self.locks,
            adapters,
            stage_retry_limit=self.config.stage_retry_limit,
            scheduler=scheduler,
            audit=self.audit,
        )
        self.retries = RetryController(
            self.store,
            self.locks,
            max_manual_retries=self.config.max_manual_retries,
            audit=self.audit,
        )
        self.status = StatusAggregator(
            self.store,
            adapters,
            refresh_margin_seconds=self.config.artifact_refresh_margin_seconds,
            clock=clock,
        )

    async def find_active(self, owner_ref: str) -> Optional[Run]:
        return await self.store.find_active(owner_ref)

    async def start(
        self,
        owner_ref: str,
        config: Union[RunConfig, dict[str, Any], None] = None,
        started_from: str = "api",
    ) -> Run:
        """Create a run in "init" with a frozen config snapshot.

        Raises:
            RunConfigError: config failed validation
            ActiveRunExists: owner already has a non-terminal run
        """
        if not owner_ref:
            raise RunConfigError("owner_ref is required")
        if not isinstance(config, RunConfig):
            try:
                config = RunConfig.model_validate(config or {})
            except ValidationError as e:
                raise RunConfigError(
                    "Invalid run configuration",
                    details={"errors": e.errors(include_url=False, include_context=False)},
                ) from e

        run = await self.store.create(owner_ref, config.model_dump(mode="json"), started_from)
        await self.audit.record(
            audit_log.RUN_STARTED, run.id, owner_ref,
            {"started_from": started_from, "config": run.config},
        )
        return run

    async def get_status(self, run_id: uuid.UUID) -> RunStatus:
        return await self.status.get_status(run_id)

    async def advance(self, run_id: uuid.UUID) -> AdvanceResult:
        return await self.driver.advance(run_id)

    async def retry(self, run_id: uuid.UUID) -> RetryResult:
        return await self.retries.retry(run_id)

    async def cancel(self, run_id: uuid.UUID) -> CancelResult:
        """Cancel a non-terminal run; a no-op on terminal runs.

        The job backing the current stage is asked to stop in the background;
        cancel does not wait for it.

        Raises:
            RunNotFound: no run with this id
        """
        run = await self.store.get(run_id)
        if run is None:
            raise RunNotFound(f"Run {run_id} not found", details={"run_id": str(run_id)})

        if is_terminal(run.phase) or not await self.locks.cancel(run.id):
            current = await self.store.get(run.id) if not is_terminal(run.phase) else run
            return CancelResult(
                run_id=run.id,
                previous_phase=run.phase,
                new_phase=current.phase,
                action="already_terminal",
                idempotent=True,
            )

        logger.info("Run %s canceled in %s", run.id, run.phase)
        job_ref = (run.linked_job_refs or {}).get(run.phase)
        adapter = self.adapters.get(run.phase)
        if job_ref is not None and adapter is not None:
            self.scheduler(adapter.cancel(job_ref))
        await self.audit.record(audit_log.RUN_CANCELED, run.id, run.owner_ref, {"phase": run.phase})
        return CancelResult(
            run_id=run.id,
            previous_phase=run.phase,
            new_phase="canceled",
            action="canceled",
            idempotent=False,
        )

    async def list_runs(self, owner_ref: str, include_archived: bool = False) -> Sequence[Run]:
        return await self.store.list_for_owner(owner_ref, include_archived)

    async def archive(self, run_id: uuid.UUID) -> Run:
        """Hide a terminal run from default listings.

        Raises:
            RunNotFound: no run with this id
            InvalidPhase: run is still active
        """
        run = await self.store.get(run_id)
        if run is None:
            raise RunNotFound(f"Run {run_id} not found", details={"run_id": str(run_id)})
        if not await self.store.archive(run.id):
            raise InvalidPhase(
                "Only finished runs can be archived",
                details={"run_id": str(run.id), "phase": run.phase},
            )
        if not run.is_archived:
            await self.audit.record(audit_log.RUN_ARCHIVED, run.id, run.owner_ref, {"phase": run.phase})
        run.is_archived = True
        return run

    async def close(self) -> None:
        await close_adapters(self.adapters)


# ---------------------------------------------------------------------------
# Module-level lazy singleton
# ---------------------------------------------------------------------------

_orchestrator: Optional[Orchestrator] = None


def get_orchestrator() -> Orchestrator:
    """Return the process-wide orchestrator over the configured database."""
    global _orchestrator
    if _orchestrator is None:
        from autopipe.db import async_session

        _orchestrator = Orchestrator(async_session, build_adapters(settings))
    return _orchestrator


async def close_orchestrator() -> None:
    global _orchestrator
    if _orchestrator is not None:
        await _orchestrator.close()
        _orchestrator = None
