"""State machine constants and transition logic for the run orchestrator.

Defines the ordered phase table that governs run execution. The table is the
only authority on legal transitions: the advance driver, the retry controller
and cancel all consult it before writing a new phase.
"""

from typing import Dict, FrozenSet, Optional, Tuple

# Run phases in execution order
PIPELINE_PHASES = {
    "init": "Run created, configuration frozen",
    "segmenting": "Splitting the source script into scenes",
    "generating_images": "Generating one image per scene (batch)",
    "generating_audio": "Generating narration per utterance (batch)",
    "rendering": "Rendering the final video on the external render service",
    "ready": "Run finished successfully",
    "failed": "Run stopped on an error; may be retried",
    "canceled": "Run canceled by user or operator",
}

# Forward order; a run may never skip one of these
STAGE_ORDER: Tuple[str, ...] = (
    "init",
    "segmenting",
    "generating_images",
    "generating_audio",
    "rendering",
    "ready",
)

# Phases backed by an external collaborator job
STAGE_PHASES: Tuple[str, ...] = STAGE_ORDER[1:-1]

TERMINAL_PHASES: FrozenSet[str] = frozenset({"ready", "failed", "canceled"})

ALLOWED_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    "init": frozenset({"segmenting", "canceled"}),
    "segmenting": frozenset({"generating_images", "failed", "canceled"}),
    "generating_images": frozenset({"generating_audio", "failed", "canceled"}),
    "generating_audio": frozenset({"rendering", "failed", "canceled"}),
    "rendering": frozenset({"ready", "failed", "canceled"}),
    "ready": frozenset(),
    # retry only
    "failed": frozenset({"segmenting", "generating_images", "generating_audio", "rendering"}),
    "canceled": frozenset(),
}

# Re-entry phase for a failed run, keyed by the phase that failed
RETRY_ROLLBACK_MAP: Dict[str, str] = {
    "segmenting": "segmenting",
    "generating_images": "generating_images",
    "generating_audio": "generating_images",
    "rendering": "generating_audio",
}

DEFAULT_ROLLBACK_PHASE = "segmenting"

# error_code recorded when a stage's collaborator reports failure
STAGE_ERROR_CODES: Dict[str, str] = {
    "segmenting": "SEGMENTATION_FAILED",
    "generating_images": "IMAGE_GENERATION_FAILED",
    "generating_audio": "AUDIO_GENERATION_FAILED",
    "rendering": "RENDER_FAILED",
}


def is_phase(phase: str) -> bool:
    return phase in PIPELINE_PHASES


def is_terminal(phase: str) -> bool:
    """Check if no further forward progress is possible from phase."""
    return phase in TERMINAL_PHASES


def can_transition(from_phase: str, to_phase: str) -> bool:
    """Check whether from_phase -> to_phase is an edge of the table."""
    return to_phase in ALLOWED_TRANSITIONS.get(from_phase, frozenset())


def next_phase(phase: str) -> Optional[str]:
    """Return the forward successor of phase, or None at the end of the order.

    Examples:
        >>> next_phase("init")
        'segmenting'
        >>> next_phase("rendering")
        'ready'
        >>> next_phase("failed") is None
        True
    """
    if phase not in STAGE_ORDER:
        return None
    idx = STAGE_ORDER.index(phase)
    if idx + 1 >= len(STAGE_ORDER):
        return None
    return STAGE_ORDER[idx + 1]


def stages_from(phase: str) -> Tuple[str, ...]:
    """Return phase and every collaborator stage after it, in order."""
    if phase not in STAGE_PHASES:
        return ()
    return STAGE_PHASES[STAGE_PHASES.index(phase):]


def rollback_target(error_phase: Optional[str]) -> str:
    """Determine which phase a failed run re-enters on retry.

    Args:
        error_phase: Phase recorded when the run failed (may be missing on
            legacy rows)

    Returns:
        Phase name to resume from; always a legal target from "failed"
    """
    if error_phase is None:
        return DEFAULT_ROLLBACK_PHASE
    return RETRY_ROLLBACK_MAP.get(error_phase, DEFAULT_ROLLBACK_PHASE)
