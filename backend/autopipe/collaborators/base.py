"""Abstract base class for stage collaborator adapters.

Every stage after ``init`` is backed by a job on an external service. The
orchestrator never talks to those services directly: it asks the stage's
adapter to kick a job off, and later asks whether the job is complete. The
answer is a CompletionReport, whose ``outcome`` is the single completion
predicate used by the advance driver and the status aggregator alike.
"""

import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Literal, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field

Outcome = Literal["running", "succeeded", "partial", "failed"]


class RunContext(BaseModel):
    """What a collaborator needs to start a stage job for a run."""

    model_config = ConfigDict(frozen=True)

    run_id: uuid.UUID
    owner_ref: str
    phase: str
    config: dict[str, Any]
    # Job refs of earlier stages, the inputs of this one
    linked_job_refs: dict[str, str] = Field(default_factory=dict)


class CompletionReport(BaseModel):
    """Snapshot of a stage job's progress."""

    model_config = ConfigDict(frozen=True)

    done: bool
    success_count: int = 0
    failed_count: int = 0
    total_units: int = 0
    # Ids of every unit that did not succeed, when the service can name them
    failed_units: tuple[str, ...] = ()
    detail: Optional[str] = None

    @property
    def outcome(self) -> Outcome:
        """Classify the report for the stage policy.

        A finished job with no units at all is a failure. Units that are
        neither succeeded nor failed in a finished job count as failed.
        """
        if not self.done:
            return "running"
        if self.total_units <= 0 or self.success_count <= 0:
            return "failed"
        if self.success_count >= self.total_units:
            return "succeeded"
        return "partial"

    @property
    def unfinished_count(self) -> int:
        return max(self.total_units - self.success_count, 0)

    @property
    def failed_units_complete(self) -> bool:
        """True when failed_units names exactly the units still to redo."""
        return len(set(self.failed_units)) == self.unfinished_count


class ArtifactRef(BaseModel):
    """Time-limited reference to a stage's result."""

    url: str
    expires_at: Optional[datetime] = None


class CollaboratorAdapter(ABC):
    """Abstract base class for stage collaborators.

    Adapters fold every external failure into their reports. Only kickoff()
    raises, and only once its own transient-error retries are spent.
    """

    phase: str

    @abstractmethod
    async def kickoff(
        self, ctx: RunContext, units: Optional[Sequence[str]] = None
    ) -> str:
        """Start the stage job for a run.

        Args:
            ctx: Run identity, frozen config and earlier stage job refs
            units: Unit ids to redo after a partial failure; None means the
                whole stage

        Returns:
            Opaque job reference to poll with is_complete()
        """
        ...

    @abstractmethod
    async def is_complete(self, job_ref: str) -> CompletionReport:
        """Report the job's progress. Never raises."""
        ...

    @abstractmethod
    async def cancel(self, job_ref: str) -> None:
        """Ask the service to stop the job. Best effort, never raises."""
        ...

    async def progress_snapshot(self, job_ref: str) -> dict[str, Any]:
        """Status payload shown to clients for a running stage."""
        report = await self.is_complete(job_ref)
        return {**report.model_dump(), "outcome": report.outcome}

    async def fetch_artifact(self, job_ref: str) -> Optional[ArtifactRef]:
        """Return a fresh result reference, for stages that produce one."""
        return None

    async def close(self) -> None:
        """Release any held connections."""
        return None
