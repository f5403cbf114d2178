"""
FastAPI application.

Mounts the job, batch, publishing and provider webhook routers under
/api/v1 and maps pipeline errors to HTTP responses.
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from modules.media_transform.utils import check_ffmpeg_available
from shared.config import settings
from shared.database import db
from shared.errors import NotFoundError, PipelineError, ValidationError
from shared.logging import get_logger
from shared.redis_client import redis_client
from api_gateway.routes import batches, jobs, publishing, webhooks

logger = get_logger(__name__)

API_PREFIX = "/api/v1"


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting pipeline API", extra={"environment": settings.environment})
    if not check_ffmpeg_available():
        # The API itself never runs ffmpeg; workers on this host would fail
        logger.warning("ffmpeg not found on PATH")
    yield
    logger.info("Shutting down pipeline API")
    await redis_client.client.aclose()


app = FastAPI(
    title="Pipeline Job Engine",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(jobs.router, prefix=API_PREFIX, tags=["jobs"])
app.include_router(batches.router, prefix=API_PREFIX, tags=["batches"])
app.include_router(publishing.router, prefix=API_PREFIX, tags=["publishing"])
app.include_router(webhooks.router, prefix=API_PREFIX, tags=["provider"])


def _error_body(exc: PipelineError) -> dict:
    body = {"error": exc.message}
    if exc.code:
        body["code"] = exc.code
    if exc.job_id:
        body["job_id"] = str(exc.job_id)
    return body


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    logger.info("Rejected request", extra={"path": request.url.path, "error": exc.message})
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=_error_body(exc))


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content=_error_body(exc))


@app.exception_handler(PipelineError)
async def pipeline_error_handler(request: Request, exc: PipelineError):
    logger.error(
        f"Pipeline error in {request.method} {request.url.path}",
        exc_info=exc,
        extra={"error": exc.message}
    )
    return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=_error_body(exc))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception):
    """Catch-all so stack traces never reach API responses."""
    logger.error(f"Unhandled exception in {request.method} {request.url.path}", exc_info=exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": "Internal server error", "detail": str(exc)},
    )


@app.get("/health")
async def health():
    """Liveness plus database and Redis reachability."""
    database_ok = await db.health_check()
    redis_ok = await redis_client.health_check()
    return {
        "status": "ok" if database_ok and redis_ok else "degraded",
        "database": database_ok,
        "redis": redis_ok,
        "environment": settings.environment,
    }
