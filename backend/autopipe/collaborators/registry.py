"""Stage registry for collaborator adapters.

Maps each collaborator-backed phase to the adapter that serves it, using the
service endpoints from settings.
"""

import logging
from typing import Optional

from autopipe.collaborators.base import CollaboratorAdapter
from autopipe.collaborators.http_job import HttpJobAdapter
from autopipe.collaborators.render import RenderJobAdapter
from autopipe.config import Settings, settings as default_settings

logger = logging.getLogger(__name__)


def build_adapters(settings: Optional[Settings] = None) -> dict[str, CollaboratorAdapter]:
    """Return one configured adapter per stage phase.

    Routing:
    - "segmenting"        -> HttpJobAdapter on collaborators.segmentation_url
    - "generating_images" -> HttpJobAdapter on collaborators.images_url
    - "generating_audio"  -> HttpJobAdapter on collaborators.narration_url
    - "rendering"         -> RenderJobAdapter on collaborators.render_url
    """
    cfg = (settings or default_settings).collaborators
    common = dict(
        api_key=cfg.api_key,
        timeout_seconds=cfg.timeout_seconds,
        stale_after_seconds=cfg.stale_job_seconds,
        retry_attempts=cfg.http_retry_attempts,
    )
    adapters: dict[str, CollaboratorAdapter] = {
        "segmenting": HttpJobAdapter("segmenting", cfg.segmentation_url, **common),
        "generating_images": HttpJobAdapter("generating_images", cfg.images_url, **common),
        "generating_audio": HttpJobAdapter("generating_audio", cfg.narration_url, **common),
        "rendering": RenderJobAdapter("rendering", cfg.render_url, **common),
    }
    for phase, adapter in adapters.items():
        logger.debug("Routing %s to %s", phase, type(adapter).__name__)
    return adapters


async def close_adapters(adapters: dict[str, CollaboratorAdapter]) -> None:
    for adapter in adapters.values():
        await adapter.close()
