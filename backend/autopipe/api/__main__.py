"""Serve the run API: python -m autopipe.api"""

import uvicorn

from autopipe.config import settings


def main() -> None:
    uvicorn.run(
        "autopipe.api.app:app",
        host=settings.server.host,
        port=settings.server.port,
        log_level="info",
    )


if __name__ == "__main__":
    main()
