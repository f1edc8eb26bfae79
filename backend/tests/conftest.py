"""Shared fixtures: a fresh SQLite run store per test and in-memory collaborators.

Kickoffs are captured by ManualScheduler instead of running as detached
tasks, so each test decides exactly when background work happens.
"""

import asyncio
import os
import tempfile
from datetime import timedelta
from pathlib import Path
from typing import Optional

# Keep the module-level engine away from the working directory
os.environ.setdefault(
    "AUTOPIPE_STORAGE__DATABASE_URL",
    f"sqlite+aiosqlite:///{Path(tempfile.gettempdir()) / 'autopipe-test-default.db'}",
)

import pytest
import pytest_asyncio
from sqlalchemy.pool import NullPool

from autopipe.collaborators.base import ArtifactRef, CollaboratorAdapter, CompletionReport, RunContext
from autopipe.config import OrchestratorConfig
from autopipe.db import init_database
from autopipe.db.engine import create_engine, create_session_factory
from autopipe.db.models import utcnow
from autopipe.orchestrator.service import Orchestrator
from autopipe.orchestrator.state import STAGE_PHASES


# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------

class FakeClock:
    """Naive-UTC clock that only moves when told to."""

    def __init__(self):
        self.now = utcnow()

    def __call__(self):
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class ManualScheduler:
    """Collects scheduled coroutines; run_all() awaits them in order."""

    def __init__(self):
        self.pending = []

    def __call__(self, coro):
        self.pending.append(coro)

    async def run_all(self) -> int:
        ran = 0
        while self.pending:
            await self.pending.pop(0)
            ran += 1
        return ran

    def discard(self) -> None:
        for coro in self.pending:
            coro.close()
        self.pending.clear()


class FakeAdapter(CollaboratorAdapter):
    """In-memory collaborator whose job reports are set by the test."""

    def __init__(self, phase: str, total_units: int = 5):
        self.phase = phase
        self.total_units = total_units
        self.reports: dict[str, CompletionReport] = {}
        self.kickoffs: list[tuple[RunContext, Optional[tuple]]] = []
        self.canceled: list[str] = []
        self.kickoff_error: Optional[Exception] = None
        self.artifact: Optional[ArtifactRef] = None
        self.artifact_fetches = 0
        self.artifact_delay = 0.0
        self.polls = 0
        self._seq = 0

    async def kickoff(self, ctx, units=None):
        if self.kickoff_error is not None:
            raise self.kickoff_error
        self._seq += 1
        job_ref = f"{self.phase}-job-{self._seq}"
        self.kickoffs.append((ctx, tuple(units) if units else None))
        self.reports[job_ref] = CompletionReport(done=False, total_units=self.total_units)
        return job_ref

    async def is_complete(self, job_ref):
        self.polls += 1
        return self.reports.get(job_ref, CompletionReport(done=False))

    async def cancel(self, job_ref):
        self.canceled.append(job_ref)

    async def fetch_artifact(self, job_ref):
        self.artifact_fetches += 1
        if self.artifact_delay:
            await asyncio.sleep(self.artifact_delay)
        return self.artifact

    @property
    def last_job(self) -> str:
        return f"{self.phase}-job-{self._seq}"

    def report(self, job_ref: Optional[str] = None, **fields) -> None:
        self.reports[job_ref or self.last_job] = CompletionReport(**fields)

    def succeed(self, job_ref: Optional[str] = None) -> None:
        self.report(
            job_ref, done=True, success_count=self.total_units, total_units=self.total_units
        )


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def db_engine(tmp_path):
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'runs.db'}", poolclass=NullPool)
    await init_database(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return create_session_factory(db_engine)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def scheduler():
    sched = ManualScheduler()
    yield sched
    sched.discard()


@pytest.fixture
def adapters():
    return {phase: FakeAdapter(phase) for phase in STAGE_PHASES}


@pytest.fixture
def orch_config():
    return OrchestratorConfig()


@pytest.fixture
def orch(session_factory, adapters, scheduler, clock, orch_config):
    return Orchestrator(
        session_factory,
        adapters,
        config=orch_config,
        scheduler=scheduler,
        clock=clock,
    )


@pytest.fixture
def drive(orch, adapters, scheduler):
    """Return a coroutine function that walks a run forward to a phase.

    Every stage job it passes through succeeds; the run stops with the
    target stage's job kicked off and still running.
    """

    async def _drive(run_id, target: str):
        for _ in range(len(STAGE_PHASES) * 3):
            run = await orch.store.get(run_id)
            if run.phase == target and (target == "ready" or run.lease_token is None):
                return run
            job_ref = (run.linked_job_refs or {}).get(run.phase)
            if run.phase != target and job_ref is not None:
                adapters[run.phase].succeed(job_ref)
            await orch.advance(run_id)
            await scheduler.run_all()
        raise AssertionError(f"run {run_id} never reached {target}")

    return _drive
