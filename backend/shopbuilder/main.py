"""Shopify AI App Builder backend: FastAPI application entry point."""

import signal
import uuid
from contextlib import asynccontextmanager

# configure_structlog must run before the other app imports
# (structlog caches the processor chain on first use).
from shopbuilder.core.logging import configure_structlog
from shopbuilder.core.config import get_settings as _get_settings_early

_early_settings = _get_settings_early()
configure_structlog(
    log_level="DEBUG" if _early_settings.debug else "INFO",
    json_logs=not _early_settings.debug,
)

import structlog

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from shopbuilder.api.routes import api_router
from shopbuilder.api.routes.health import root_router
from shopbuilder.core.config import get_settings
from shopbuilder.core.exceptions import (
    AccessDeniedError,
    AppBuilderError,
    LLMError,
    NotFoundError,
    StorageUnavailableError,
    UpstreamError,
    ValidationError,
)
from shopbuilder.db import close_redis, get_redis_or_none, init_redis
from shopbuilder.jobs.orchestrator import JobOrchestrator
from shopbuilder.jobs.runtime import JobRuntime
from shopbuilder.jobs.store import JobStore
from shopbuilder.middleware.correlation import get_correlation_id, setup_correlation_middleware
from shopbuilder.sandbox.e2b_runtime import E2BSandboxRuntime
from shopbuilder.services.generation_service import CodeGenerationPipeline
from shopbuilder.services.llm import AnthropicCompletionClient
from shopbuilder.services.project_store import ProjectStore

logger = structlog.get_logger(__name__)

# LLM status codes passed through to the client unchanged
_LLM_PASSTHROUGH_STATUS = {400, 401, 429}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown events."""
    # SIGTERM flips this so the health check returns 503 while draining
    app.state.shutting_down = False

    def handle_sigterm(signum, frame):
        app.state.shutting_down = True
        logger.info("sigterm_received", action="health_check_503_draining_connections")

    signal.signal(signal.SIGTERM, handle_sigterm)

    settings = get_settings()
    logger.info("startup_begin", app_name=settings.app_name, debug=settings.debug)

    # Non-fatal: without Redis the job store runs on the in-process map
    redis_ready = await init_redis()
    logger.info("redis_initialized", durable_job_store=redis_ready)

    runtime = JobRuntime()
    job_store = JobStore(
        runtime,
        get_redis_or_none(),
        retention_seconds=settings.job_retention_seconds,
        durable_retry_seconds=settings.job_store_retry_seconds,
    )
    project_store = ProjectStore(settings.projects_bucket, region=settings.aws_region)
    if not project_store.enabled:
        logger.warning("projects_bucket_not_configured", effect="projects are not persisted")

    orchestrator = JobOrchestrator(
        store=job_store,
        runtime=runtime,
        sandbox_runtime_factory=E2BSandboxRuntime,
        project_store=project_store,
        settings=settings,
    )
    orchestrator.start_sweeper()

    app.state.job_store = job_store
    app.state.project_store = project_store
    app.state.orchestrator = orchestrator
    app.state.pipeline = CodeGenerationPipeline(
        llm=AnthropicCompletionClient(settings=settings),
        project_store=project_store,
        sandbox_runtime_factory=E2BSandboxRuntime,
        settings=settings,
    )

    yield

    logger.info("shutdown_begin")
    await orchestrator.shutdown()
    await close_redis()
    logger.info("shutdown_complete")


def _status_for(exc: AppBuilderError) -> int:
    if isinstance(exc, ValidationError):
        return 400
    if isinstance(exc, NotFoundError):
        return 404
    if isinstance(exc, AccessDeniedError):
        return 403
    if isinstance(exc, LLMError) and exc.status_code in _LLM_PASSTHROUGH_STATUS:
        return exc.status_code
    if isinstance(exc, UpstreamError):
        return 502
    if isinstance(exc, StorageUnavailableError):
        return 503
    return 500


async def app_error_handler(request: Request, exc: AppBuilderError) -> JSONResponse:
    """Map domain errors to HTTP status codes with debug_id tracking."""
    status_code = _status_for(exc)
    debug_id = str(uuid.uuid4())

    log = logger.warning if status_code < 500 else logger.error
    log(
        "app_error",
        status_code=status_code,
        debug_id=debug_id,
        correlation_id=get_correlation_id(),
        path=request.url.path,
        method=request.method,
        user_id=getattr(request.state, "user_id", None),
        error=str(exc),
        error_type=type(exc).__name__,
    )

    detail = str(exc) if status_code < 500 or isinstance(exc, UpstreamError) else "Internal server error"
    return JSONResponse(status_code=status_code, content={"detail": detail, "debug_id": debug_id})


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """HTTPException with debug_id tracking; sanitized response to the client."""
    debug_id = str(uuid.uuid4())

    logger.error(
        "http_exception",
        status_code=exc.status_code,
        debug_id=debug_id,
        correlation_id=get_correlation_id(),
        path=request.url.path,
        method=request.method,
        user_id=getattr(request.state, "user_id", None),
        detail=exc.detail,
    )

    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "debug_id": debug_id},
        headers=getattr(exc, "headers", None),
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Unhandled errors: full traceback in the log, generic 500 to the client."""
    debug_id = str(uuid.uuid4())

    logger.error(
        "unhandled_exception",
        debug_id=debug_id,
        correlation_id=get_correlation_id(),
        path=request.url.path,
        method=request.method,
        user_id=getattr(request.state, "user_id", None),
        error=str(exc),
        error_type=type(exc).__name__,
        exc_info=True,
    )

    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error", "debug_id": debug_id},
    )


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title=settings.app_name,
        description="Generate Shopify apps from prompts and scaffold them with the Shopify CLI",
        version="0.1.0",
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Correlation ID middleware (runs first on incoming requests)
    setup_correlation_middleware(app)

    app.exception_handler(AppBuilderError)(app_error_handler)
    app.exception_handler(HTTPException)(http_exception_handler)
    app.exception_handler(Exception)(generic_exception_handler)

    app.include_router(root_router, tags=["health"])
    app.include_router(api_router, prefix="/api")

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "shopbuilder.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
    )
