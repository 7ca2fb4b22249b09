"""FastAPI application entry point."""

import logging

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s", datefmt="%H:%M:%S")

# Apply the same format to Uvicorn's loggers so they also show timestamps.
for _uvicorn_logger in ("uvicorn", "uvicorn.error", "uvicorn.access"):
    _log = logging.getLogger(_uvicorn_logger)
    _log.handlers.clear()
    _handler = logging.StreamHandler()
    _handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s", datefmt="%H:%M:%S"))
    _log.addHandler(_handler)
    _log.propagate = False

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from chunkbatch.db import create_tables, get_session_factory
from chunkbatch.schemas.errors import ErrorResponse
from chunkbatch.services.errors import (
    ChunkAlreadyQueued,
    DailyLimitExceeded,
    InvalidTransition,
    NotFoundError,
    PipelineError,
    ProviderRejected,
    ProviderUnavailable,
    ValidationError,
)

logger = logging.getLogger(__name__)

app = FastAPI(title="ChunkBatch")

app.add_middleware(ProxyHeadersMiddleware, trusted_hosts=["*"])

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Tightened in production by the fronting proxy.
    allow_methods=["*"],
    allow_headers=["*"],
)

# Most specific first: DailyLimitExceeded is a ValidationError.
_STATUS_BY_ERROR: tuple[tuple[type[PipelineError], int], ...] = (
    (DailyLimitExceeded, 429),
    (ValidationError, 400),
    (NotFoundError, 404),
    (InvalidTransition, 409),
    (ChunkAlreadyQueued, 409),
    (ProviderUnavailable, 503),
    (ProviderRejected, 502),
)


@app.on_event("startup")
def startup() -> None:
    create_tables()
    from chunkbatch.services.reconciler import poll_enabled, resume_active_jobs

    if not poll_enabled():
        return
    db = get_session_factory()()
    try:
        resume_active_jobs(db)
    finally:
        db.close()


@app.exception_handler(PipelineError)
async def _pipeline_exception_handler(request: Request, exc: PipelineError) -> JSONResponse:
    status_code = next((code for cls, code in _STATUS_BY_ERROR if isinstance(exc, cls)), 500)
    if status_code >= 500:
        logger.warning("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=exc.code, detail=str(exc), chunk_ids=exc.chunk_ids).model_dump(mode="json"),
    )


@app.exception_handler(Exception)
async def _global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("%s %s: unhandled error", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(error="internal_error", detail=str(exc)).model_dump(mode="json"),
    )


# Import and register routers after app is defined to avoid circular imports.
from chunkbatch.api import batch, chunks, projects  # noqa: E402

app.include_router(projects.router, prefix="/projects", tags=["projects"])
app.include_router(chunks.router, tags=["chunks"])
app.include_router(batch.router, prefix="/batch", tags=["batch"])
