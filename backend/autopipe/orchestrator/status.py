"""Status aggregator: one read model of a run plus live stage progress.

Aggregation never writes the run row. The only write it may perform is
refreshing an expiring render URL in run_artifacts.
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Literal, Optional

from pydantic import BaseModel

from autopipe.collaborators.base import CollaboratorAdapter
from autopipe.db.models import Run, utcnow
from autopipe.orchestrator.errors import RunNotFound
from autopipe.orchestrator.state import STAGE_PHASES
from autopipe.orchestrator.store import RunStore

logger = logging.getLogger(__name__)

StageState = Literal["pending", "running", "done", "failed", "skipped"]


class ArtifactInfo(BaseModel):
    url: str
    expires_at: Optional[datetime] = None


class StageProgress(BaseModel):
    phase: str
    state: StageState
    job_ref: Optional[str] = None
    total_units: int = 0
    success_count: int = 0
    failed_count: int = 0
    detail: Optional[str] = None
    artifact: Optional[ArtifactInfo] = None


class RunErrorInfo(BaseModel):
    code: Optional[str] = None
    message: Optional[str] = None
    phase: Optional[str] = None


class RunStatus(BaseModel):
    run_id: uuid.UUID
    owner_ref: str
    phase: str
    config: dict[str, Any]
    started_from: Optional[str] = None
    error: Optional[RunErrorInfo] = None
    retry_count: int
    stage_retry_count: int
    manual_retry_count: int
    locked_until: Optional[datetime] = None
    is_archived: bool = False
    stages: list[StageProgress]
    created_at: datetime
    updated_at: datetime
    completed_at: Optional[datetime] = None


def _current_stage(run: Run) -> Optional[str]:
    """The stage the run is in, or stopped in."""
    if run.phase in STAGE_PHASES:
        return run.phase
    if run.phase == "failed":
        return run.error_phase if run.error_phase in STAGE_PHASES else None
    if run.phase == "canceled":
        refs = run.linked_job_refs or {}
        started = [p for p in STAGE_PHASES if p in refs]
        return started[-1] if started else None
    return None


class StatusAggregator:
    def __init__(
        self,
        store: RunStore,
        adapters: dict[str, CollaboratorAdapter],
        *,
        refresh_margin_seconds: int = 120,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.adapters = adapters
        self.refresh_margin = timedelta(seconds=refresh_margin_seconds)
        self.clock = clock

    async def get_status(self, run_id: uuid.UUID) -> RunStatus:
        """Aggregate a run with the live progress of each stage.

        Raises:
            RunNotFound: no run with this id
        """
        run = await self.store.get(run_id)
        if run is None:
            raise RunNotFound(f"Run {run_id} not found", details={"run_id": str(run_id)})

        stages = [await self._stage_progress(run, phase) for phase in STAGE_PHASES]
        error = None
        if run.phase == "failed":
            error = RunErrorInfo(code=run.error_code, message=run.error_message, phase=run.error_phase)

        return RunStatus(
            run_id=run.id,
            owner_ref=run.owner_ref,
            phase=run.phase,
            config=run.config or {},
            started_from=run.started_from,
            error=error,
            retry_count=run.retry_count,
            stage_retry_count=run.stage_retry_count,
            manual_retry_count=run.manual_retry_count,
            locked_until=run.locked_until,
            is_archived=run.is_archived,
            stages=stages,
            created_at=run.created_at,
            updated_at=run.updated_at,
            completed_at=run.completed_at,
        )

    async def _stage_progress(self, run: Run, phase: str) -> StageProgress:
        job_ref = (run.linked_job_refs or {}).get(phase)
        order = STAGE_PHASES.index(phase)

        if run.phase == "ready":
            return StageProgress(
                phase=phase,
                state="done",
                job_ref=job_ref,
                artifact=await self._artifact(run, phase, job_ref),
            )

        current = _current_stage(run)
        if current is None:
            state = "skipped" if run.phase == "canceled" else "pending"
            return StageProgress(phase=phase, state=state, job_ref=job_ref)

        current_order = STAGE_PHASES.index(current)
        if order < current_order:
            return StageProgress(phase=phase, state="done", job_ref=job_ref)
        if order > current_order:
            state = "pending" if run.phase in STAGE_PHASES else "skipped"
            return StageProgress(phase=phase, state=state)

        if run.phase == "canceled":
            return StageProgress(phase=phase, state="skipped", job_ref=job_ref)
        if job_ref is None:
            # Kickoff scheduled or awaiting the next advance
            state = "failed" if run.phase == "failed" else "pending"
            return StageProgress(phase=phase, state=state, detail=run.error_message if state == "failed" else None)

        snapshot = await self.adapters[phase].progress_snapshot(job_ref)
        if run.phase == "failed":
            state = "failed"
        elif snapshot.get("outcome") == "succeeded":
            state = "done"
        else:
            state = "running"
        return StageProgress(
            phase=phase,
            state=state,
            job_ref=job_ref,
            total_units=snapshot.get("total_units", 0),
            success_count=snapshot.get("success_count", 0),
            failed_count=snapshot.get("failed_count", 0),
            detail=run.error_message if state == "failed" else snapshot.get("detail"),
        )

    async def _artifact(self, run: Run, phase: str, job_ref: Optional[str]) -> Optional[ArtifactInfo]:
        """Return the stage's result reference, refreshing it near expiry."""
        artifact = await self.store.get_artifact(run.id, phase)
        adapter = self.adapters.get(phase)
        if job_ref is None or adapter is None:
            return ArtifactInfo(url=artifact.url, expires_at=artifact.expires_at) if artifact else None

        now = self.clock()
        stale = artifact is None or (
            artifact.expires_at is not None and artifact.expires_at - now <= self.refresh_margin
        )
        if stale:
            fresh = await adapter.fetch_artifact(job_ref)
            if fresh is not None:
                artifact = await self.store.save_artifact(run.id, phase, fresh.url, fresh.expires_at)
                logger.info("Refreshed %s artifact URL for run %s", phase, run.id)

        if artifact is None:
            return None
        return ArtifactInfo(url=artifact.url, expires_at=artifact.expires_at)
