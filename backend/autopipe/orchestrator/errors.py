"""Exceptions raised by orchestrator operations.

Only lookups and run creation raise. Advance, retry and cancel report their
business outcomes (waiting, locked, lost race, exhausted, phase mismatch) as
typed results; infrastructure faults from the database propagate unchanged.
"""

from typing import Any, Optional

# Machine-readable codes shared with the HTTP error envelope
CONFLICT = "CONFLICT"
NOT_FOUND = "NOT_FOUND"
INVALID_REQUEST = "INVALID_REQUEST"
INVALID_PHASE = "INVALID_PHASE"
RETRY_EXHAUSTED = "RETRY_EXHAUSTED"
INTERNAL_ERROR = "INTERNAL_ERROR"


class OrchestratorError(Exception):
    """Base class carrying an error code and structured details."""

    code = INTERNAL_ERROR

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class RunNotFound(OrchestratorError):
    code = NOT_FOUND


class ActiveRunExists(OrchestratorError):
    """start() found a non-terminal run for the same owner."""

    code = CONFLICT


class RunConfigError(OrchestratorError):
    """Run configuration failed validation at creation time."""

    code = INVALID_REQUEST


class InvalidPhase(OrchestratorError):
    code = INVALID_PHASE
