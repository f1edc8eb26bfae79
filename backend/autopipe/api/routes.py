"""API route handlers and Pydantic request/response schemas."""

import logging
import uuid
from datetime import datetime
from typing import Any, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from autopipe.db.models import Run
from autopipe.orchestrator import errors
from autopipe.orchestrator.driver import AdvanceResult
from autopipe.orchestrator.retry import RetryResult
from autopipe.orchestrator.service import CancelResult, Orchestrator, get_orchestrator
from autopipe.orchestrator.status import RunStatus

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")


# ---------------------------------------------------------------------------
# Schemas
# ---------------------------------------------------------------------------

class StartRunRequest(BaseModel):
    owner_ref: str = Field(min_length=1, max_length=255)
    config: dict[str, Any] = Field(default_factory=dict)
    started_from: Literal["ui", "api", "cli"] = "api"


class ActiveRunResponse(BaseModel):
    run_id: uuid.UUID
    owner_ref: str
    phase: str


class RunSummary(BaseModel):
    run_id: uuid.UUID
    owner_ref: str
    phase: str
    config: dict[str, Any]
    started_from: Optional[str]
    retry_count: int
    error_code: Optional[str]
    error_phase: Optional[str]
    is_archived: bool
    created_at: datetime
    updated_at: datetime
    completed_at: Optional[datetime]
    status_url: str


def _summary(run: Run) -> RunSummary:
    return RunSummary(
        run_id=run.id,
        owner_ref=run.owner_ref,
        phase=run.phase,
        config=run.config or {},
        started_from=run.started_from,
        retry_count=run.retry_count,
        error_code=run.error_code,
        error_phase=run.error_phase,
        is_archived=run.is_archived,
        created_at=run.created_at,
        updated_at=run.updated_at,
        completed_at=run.completed_at,
        status_url=f"/api/runs/{run.id}/status",
    )


def _error(status_code: int, code: str, message: str, details: Optional[dict] = None) -> HTTPException:
    return HTTPException(
        status_code=status_code,
        detail={"code": code, "message": message, "details": details or {}},
    )


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

@router.get("/runs/active", response_model=ActiveRunResponse)
async def get_active_run(
    owner_ref: str = Query(min_length=1),
    orch: Orchestrator = Depends(get_orchestrator),
):
    """Return the owner's non-terminal run, 404 if there is none."""
    run = await orch.find_active(owner_ref)
    if run is None:
        raise _error(404, errors.NOT_FOUND, "No active run", {"owner_ref": owner_ref})
    return ActiveRunResponse(run_id=run.id, owner_ref=run.owner_ref, phase=run.phase)


@router.post("/runs", status_code=201, response_model=RunSummary)
async def start_run(request: StartRunRequest, orch: Orchestrator = Depends(get_orchestrator)):
    """Start a run. 409 CONFLICT if the owner already has an active one."""
    run = await orch.start(request.owner_ref, request.config, request.started_from)
    return _summary(run)


@router.get("/runs", response_model=list[RunSummary])
async def list_runs(
    owner_ref: str = Query(min_length=1),
    include_archived: bool = False,
    orch: Orchestrator = Depends(get_orchestrator),
):
    runs = await orch.list_runs(owner_ref, include_archived)
    return [_summary(run) for run in runs]


@router.get("/runs/{run_id}/status", response_model=RunStatus)
async def get_run_status(run_id: uuid.UUID, orch: Orchestrator = Depends(get_orchestrator)):
    return await orch.get_status(run_id)


@router.post("/runs/{run_id}/advance", response_model=AdvanceResult)
async def advance_run(run_id: uuid.UUID, orch: Orchestrator = Depends(get_orchestrator)):
    """Progress the run by at most one phase.

    Every outcome is returned with 200 except "locked", which is a 409
    CONFLICT carrying locked_until so clients can back off.
    """
    result = await orch.advance(run_id)
    if result.action == "locked":
        raise _error(
            409,
            errors.CONFLICT,
            result.message or "Run is locked",
            {
                "phase": result.new_phase,
                "locked_until": result.locked_until.isoformat() if result.locked_until else None,
            },
        )
    return result


@router.post("/runs/{run_id}/retry", response_model=RetryResult)
async def retry_run(run_id: uuid.UUID, orch: Orchestrator = Depends(get_orchestrator)):
    result = await orch.retry(run_id)
    details = {"phase": result.new_phase, "retry_count": result.retry_count}
    if result.action == "exhausted":
        raise _error(400, errors.RETRY_EXHAUSTED, result.message, details)
    if result.action == "phase_mismatch":
        raise _error(409, errors.INVALID_PHASE, result.message, details)
    if result.action == "conflict":
        raise _error(409, errors.CONFLICT, result.message, details)
    return result


@router.post("/runs/{run_id}/cancel", response_model=CancelResult)
async def cancel_run(run_id: uuid.UUID, orch: Orchestrator = Depends(get_orchestrator)):
    return await orch.cancel(run_id)


@router.post("/runs/{run_id}/archive", response_model=RunSummary)
async def archive_run(run_id: uuid.UUID, orch: Orchestrator = Depends(get_orchestrator)):
    run = await orch.archive(run_id)
    return _summary(run)
