"""FastAPI application setup with lifespan and exception handlers."""

from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from autopipe import __version__, configure_logging
from autopipe.db import init_database, shutdown
from autopipe.orchestrator import errors
from autopipe.orchestrator.errors import OrchestratorError
from autopipe.orchestrator.service import close_orchestrator
from autopipe.api.routes import router

logger = logging.getLogger(__name__)

# HTTP status per orchestrator error code
_STATUS_BY_CODE = {
    errors.NOT_FOUND: 404,
    errors.CONFLICT: 409,
    errors.INVALID_PHASE: 409,
    errors.INVALID_REQUEST: 422,
    errors.RETRY_EXHAUSTED: 400,
}


def _envelope(code: str, message: str, details=None) -> dict:
    return {"error": {"code": code, "message": message, "details": details or {}}}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager.

    Startup:
        - Initialize database schema

    Shutdown:
        - Close collaborator HTTP clients
        - Close database connections
    """
    configure_logging()
    logger.info("Starting autopipe API...")
    await init_database()
    logger.info("API startup complete")

    yield

    logger.info("Shutting down autopipe API...")
    await close_orchestrator()
    await shutdown()
    logger.info("API shutdown complete")


app = FastAPI(
    title="autopipe API",
    version=__version__,
    lifespan=lifespan,
)

# CORS for the UI dev server
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173"],
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(router)


@app.exception_handler(OrchestratorError)
async def orchestrator_exception_handler(request: Request, exc: OrchestratorError):
    return JSONResponse(
        status_code=_STATUS_BY_CODE.get(exc.code, 500),
        content=_envelope(exc.code, exc.message, exc.details),
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    if isinstance(exc.detail, dict) and "code" in exc.detail:
        content = {"error": {"details": {}, **exc.detail}}
    else:
        content = _envelope(f"HTTP_{exc.status_code}", str(exc.detail))
    return JSONResponse(status_code=exc.status_code, content=content, headers=exc.headers)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=422,
        content=_envelope(
            errors.INVALID_REQUEST,
            "Request validation failed",
            {"errors": [{"loc": list(e["loc"]), "msg": e["msg"]} for e in exc.errors()]},
        ),
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception):
    """Catch-all exception handler to prevent stack traces in API responses."""
    logger.error(
        "Unhandled exception in %s %s: %s: %s",
        request.method, request.url.path, type(exc).__name__, exc,
    )
    return JSONResponse(
        status_code=500,
        content=_envelope(errors.INTERNAL_ERROR, "Internal server error"),
    )
