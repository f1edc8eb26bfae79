"""Stage collaborator abstraction layer.

Provides a uniform async completion oracle over the external job behind each
pipeline stage (segmentation, image batch, narration batch, render).

Usage:
    from autopipe.collaborators import build_adapters

    adapters = build_adapters()
    report = await adapters["generating_images"].is_complete(job_ref)
    if report.outcome == "partial":
        ...
"""

from autopipe.collaborators.base import (
    ArtifactRef,
    CollaboratorAdapter,
    CompletionReport,
    RunContext,
)
from autopipe.collaborators.registry import build_adapters, close_adapters

__all__ = [
    "ArtifactRef",
    "CollaboratorAdapter",
    "CompletionReport",
    "RunContext",
    "build_adapters",
    "close_adapters",
]
