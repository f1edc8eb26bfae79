"""SQLAlchemy 2.0 ORM models for the run store."""

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import String, Text, JSON, Integer, Boolean, ForeignKey, Index, text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from autopipe.orchestrator.state import TERMINAL_PHASES


def utcnow() -> datetime:
    """Naive UTC timestamp; SQLite stores datetimes without zone info."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


_ACTIVE_PREDICATE = "phase NOT IN ({})".format(
    ", ".join(f"'{p}'" for p in sorted(TERMINAL_PHASES))
)


class Base(DeclarativeBase):
    """Base class for all ORM models."""
    pass


class Run(Base):
    """One execution of the pipeline state machine.

    phase is written only through guarded UPDATEs in orchestrator.locks;
    config is frozen at creation and never rewritten.
    """
    __tablename__ = "runs"
    __table_args__ = (
        # One non-terminal run per owner; terminal runs are kept as history
        Index(
            "uq_runs_one_active_per_owner",
            "owner_ref",
            unique=True,
            sqlite_where=text(_ACTIVE_PREDICATE),
            postgresql_where=text(_ACTIVE_PREDICATE),
        ),
        Index("idx_runs_phase_updated", "phase", "updated_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    owner_ref: Mapped[str] = mapped_column(String(255), index=True)
    phase: Mapped[str] = mapped_column(String(50), default="init")
    config: Mapped[dict] = mapped_column(JSON)
    started_from: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)

    error_code: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_phase: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    stage_retry_count: Mapped[int] = mapped_column(Integer, default=0)
    manual_retry_count: Mapped[int] = mapped_column(Integer, default=0)

    linked_job_refs: Mapped[dict] = mapped_column(JSON, default=lambda: {})

    # Lease for long sub-job kickoff
    locked_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    locked_until: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    lease_token: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)

    is_archived: Mapped[bool] = mapped_column(Boolean, default=False)

    created_at: Mapped[datetime] = mapped_column(default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(default=utcnow, onupdate=utcnow)
    completed_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)


class RunArtifact(Base):
    """Time-limited result reference produced by a stage (render output URL).

    Written by the status read path when a URL nears expiry; kept out of the
    runs table so refreshes never contend with phase writes.
    """
    __tablename__ = "run_artifacts"

    run_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("runs.id"), primary_key=True)
    phase: Mapped[str] = mapped_column(String(50), primary_key=True)
    url: Mapped[str] = mapped_column(Text)
    expires_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    refreshed_at: Mapped[datetime] = mapped_column(default=utcnow)


class AuditLog(Base):
    """Append-only record of user-visible run lifecycle events."""
    __tablename__ = "audit_logs"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    run_id: Mapped[Optional[uuid.UUID]] = mapped_column(ForeignKey("runs.id"), nullable=True, index=True)
    owner_ref: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    action: Mapped[str] = mapped_column(String(50))
    details: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utcnow)


class SchedulerLock(Base):
    """Named time-boxed lock so only one worker runs a periodic job."""
    __tablename__ = "scheduler_locks"

    key: Mapped[str] = mapped_column(String(100), primary_key=True)
    locked_until: Mapped[datetime] = mapped_column(index=True)
    updated_at: Mapped[datetime] = mapped_column(default=utcnow, onupdate=utcnow)
