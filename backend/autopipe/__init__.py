"""autopipe - persisted orchestrator for multi-stage content generation.

A run moves through segmentation, image, narration and render stages. Each
stage is delegated to an external job service; this package only sequences
them, records progress in the run store, and answers polling clients.

Call configure_logging() from process entry points (API server, CLI).
"""

import logging

__version__ = "0.1.0"


def configure_logging(level: int = logging.INFO) -> None:
    """Install the process-wide log format used by the server and CLI."""
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    # SQLAlchemy echoes every statement at INFO when its logger inherits root
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
