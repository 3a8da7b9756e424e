import time
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from routers.router import router
from core.lifespan import Services, lifespan
from core.config import settings
from core.exceptions import MediaPipelineError
from core.logger import logger
from core.rate_limiter import limiter


async def media_pipeline_error_handler(request: Request, exc: MediaPipelineError) -> JSONResponse:
    if exc.http_status >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.code}: {exc.message}")
    else:
        logger.info(f"{request.method} {request.url.path} rejected: {exc.code}: {exc.message}")
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


def create_app(services: Optional[Services] = None) -> FastAPI:
    """Build the app; `services` replaces the graph the lifespan would build."""
    # CORS configuration
    if settings.ENABLE_CORS:
        origins = [origin for origin in (settings.FRONTEND_ENDPOINT, settings.BACKEND_ENDPOINT) if origin]
    else:
        origins = ["*"]

    app = FastAPI(
        title=settings.PROJECT_NAME,
        description="""
    Media ingestion and analysis coordination service.

    ## Ingestion

    **POST /api/v1/media** - base64 payload or storage reference
    **POST /api/v1/media/upload** - multipart upload

    ### Response:
    - `mediaId`: persisted media record
    - `status`: `queued`, `failed` or `manual-required`
    - `jobId`: deterministic analysis job id, when published

    ## Worker

    **GET /api/v1/media/{id}/payload** - normalized payload
    **POST /api/v1/media/{id}/claim** - claim a queued job
    **POST /api/v1/processing-complete** - completion callback

    ## Observers

    **GET /api/v1/projects/{id}/processing** - in-flight snapshot
    **GET /api/v1/projects/{id}/events** - server-sent events
    """,
        version="1.0.0",
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc"
    )
    if services is not None:
        app.state.services = services

    # Configure rate limiting
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_exception_handler(MediaPipelineError, media_pipeline_error_handler)

    # Request/Response logging middleware
    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        start_time = time.time()
        response = await call_next(request)
        duration = time.time() - start_time

        log_data = {
            "method": request.method,
            "path": request.url.path,
            "status_code": response.status_code,
            "duration_ms": int(duration * 1000),
            "client": request.client.host if request.client else "unknown"
        }

        # Only log non-health-check requests
        if not request.url.path.endswith("/health"):
            logger.info(f"Request: {log_data}")

        return response

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    # Include routers
    app.include_router(router)

    # Root endpoint
    @app.get("/", tags=["Root"])
    async def root():
        return {
            "service": settings.PROJECT_NAME,
            "version": "1.0.0",
            "status": "running",
            "documentation": "/docs"
        }

    return app


app = create_app()
