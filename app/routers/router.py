# routers/router.py
"""
FastAPI Router for Media Ingestion and Processing Status
"""

import asyncio
import base64
import binascii
import json
from typing import Optional

from fastapi import (
    APIRouter,
    Depends,
    File,
    Form,
    HTTPException,
    Request,
    Response,
    UploadFile,
    status
)
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import StreamingResponse

from core.config import settings
from core.exceptions import MediaNotFound, MediaPipelineError
from core.lifespan import Services
from core.logger import logger
from core.rate_limiter import limit_param, limiter, worker_limit_param
from schemas.request_models import (
    CompletionCallback,
    HealthResponse,
    IngestRequest,
    IngestResponse,
    MediaView,
    ProcessingItemView,
    ProcessingSnapshot,
)


# ============================================================================
# ROUTER CONFIGURATION
# ============================================================================

router = APIRouter(
    prefix=settings.API_PREFIX,
    tags=["Media Pipeline"],
    responses={
        404: {"description": "Media or project not found"},
        429: {"description": "Too Many Requests"},
        500: {"description": "Internal Server Error"}
    }
)


def get_services(request: Request) -> Services:
    return request.app.state.services


# ============================================================================
# HEALTH CHECK ENDPOINTS
# ============================================================================

@router.get(
    "/health",
    response_model=HealthResponse,
    status_code=status.HTTP_200_OK,
    summary="Service Health Check",
    description="Validates record store, storage, queue and Redis connectivity"
)
@limiter.limit(limit_param)
def check_health(request: Request, services: Services = Depends(get_services)) -> HealthResponse:
    """
    Checks:
    - Record store connectivity
    - Raw uploads bucket
    - SQS availability (if enabled)
    - Redis (if dispatch dedupe is enabled)
    """
    health_status = HealthResponse(
        status="healthy",
        message="Media ingestion pipeline is operational"
    )

    try:
        with services.engine.connect() as connection:
            connection.exec_driver_sql("SELECT 1")
        health_status.database_status = "connected"
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        health_status.database_status = f"error: {str(e)[:100]}"
        health_status.status = "degraded"

    try:
        services.resolver.check_bucket(settings.RAW_UPLOADS_BUCKET)
        health_status.s3_status = "connected"
    except Exception as e:
        logger.error(f"S3 health check failed: {e}")
        health_status.s3_status = f"error: {str(e)[:100]}"
        health_status.status = "degraded"

    if settings.SQS_ENABLE_PUBLISH:
        try:
            services.publisher.check_queue()
            health_status.sqs_status = "connected"
        except Exception as e:
            logger.error(f"SQS health check failed: {e}")
            health_status.sqs_status = f"error: {str(e)[:100]}"
            health_status.status = "degraded"
    else:
        health_status.sqs_status = "disabled"

    if services.redis is None:
        health_status.redis_status = "disabled"
    else:
        try:
            services.redis.ping()
            health_status.redis_status = "connected"
        except Exception as e:
            logger.error(f"Redis health check failed: {e}")
            health_status.redis_status = f"error: {str(e)[:100]}"
            health_status.status = "degraded"

    return health_status


# ============================================================================
# INGESTION ENDPOINTS
# ============================================================================

@router.post(
    "/media",
    response_model=IngestResponse,
    status_code=status.HTTP_200_OK,
    summary="Ingest Media",
    description="Accept an image or video as base64 payload or storage reference"
)
@limiter.limit(limit_param)
def ingest_media(
    request: Request,
    body: IngestRequest,
    services: Services = Depends(get_services)
) -> IngestResponse:
    """
    Runs the upload through normalization, persistence and dispatch.

    The response status is always definitive:
    - queued: recorded and handed to the analysis queue
    - failed: recorded, but rejected or not dispatched
    - manual-required: recorded, format could not be converted
    """
    data: Optional[bytes] = None
    if body.payload is not None:
        try:
            data = base64.b64decode(body.payload, validate=True)
        except (binascii.Error, ValueError):
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="payload is not valid base64"
            )

    try:
        return services.ingestion.ingest(
            project_id=body.projectId,
            file_name=body.fileName,
            mime_type=body.mimeType,
            data=data,
            storage_ref=body.storageRef,
            idempotency_key=body.idempotencyKey,
            source=body.source,
        )
    except MediaPipelineError:
        raise
    except Exception as e:
        logger.exception(f"Ingestion failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to ingest media: {str(e)}"
        )


@router.post(
    "/media/upload",
    response_model=IngestResponse,
    status_code=status.HTTP_200_OK,
    summary="Ingest Media (multipart)",
    description="Multipart form upload of a single image or video"
)
@limiter.limit(limit_param)
def upload_media(
    request: Request,
    projectId: str = Form(...),
    file: UploadFile = File(...),
    idempotencyKey: Optional[str] = Form(None),
    source: Optional[str] = Form("customer-upload"),
    services: Services = Depends(get_services)
) -> IngestResponse:
    data = file.file.read()
    file_name = file.filename or "upload"
    logger.info(f"Multipart upload {file_name} ({len(data)} bytes, {file.content_type or 'no content type'})")

    try:
        return services.ingestion.ingest(
            project_id=projectId,
            file_name=file_name,
            mime_type=file.content_type,
            data=data,
            idempotency_key=idempotencyKey,
            source=source,
        )
    except MediaPipelineError:
        raise
    except Exception as e:
        logger.exception(f"Ingestion failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to ingest media: {str(e)}"
        )


@router.post(
    "/media/{media_id}/redispatch",
    response_model=IngestResponse,
    status_code=status.HTTP_200_OK,
    summary="Re-dispatch Media",
    description="Create the next attempt of a failed or manual-required record and dispatch it"
)
@limiter.limit(limit_param)
def redispatch_media(
    request: Request,
    media_id: str,
    services: Services = Depends(get_services)
) -> IngestResponse:
    return services.ingestion.redispatch(media_id)


# ============================================================================
# RECORD ENDPOINTS
# ============================================================================

@router.get(
    "/media/{media_id}",
    response_model=MediaView,
    summary="Get Media Record"
)
@limiter.limit(limit_param)
def get_media(request: Request, media_id: str, services: Services = Depends(get_services)) -> MediaView:
    return MediaView.from_record(services.status_store.get(media_id))


@router.get(
    "/media/{media_id}/payload",
    summary="Get Normalized Payload",
    description="Normalized bytes the analysis worker fetches (normalizedPayloadRef)",
    response_class=Response
)
@limiter.limit(worker_limit_param)
def get_media_payload(request: Request, media_id: str, services: Services = Depends(get_services)) -> Response:
    payload = services.status_store.get_payload(media_id)
    if payload is None:
        raise MediaNotFound(f"No normalized payload stored for media {media_id}")
    return Response(content=payload.data, media_type=payload.mime_type)


# ============================================================================
# WORKER ENDPOINTS
# ============================================================================

@router.post(
    "/media/{media_id}/claim",
    response_model=MediaView,
    summary="Claim Job",
    description="Worker claims a queued record (queued -> processing)"
)
@limiter.limit(worker_limit_param)
def claim_media(request: Request, media_id: str, services: Services = Depends(get_services)) -> MediaView:
    return MediaView.from_record(services.status_store.mark_processing(media_id))


@router.post(
    "/processing-complete",
    response_model=MediaView,
    summary="Processing Complete Callback",
    description="Worker reports the outcome of an analysis job"
)
@limiter.limit(worker_limit_param)
def processing_complete(
    request: Request,
    body: CompletionCallback,
    services: Services = Depends(get_services)
) -> MediaView:
    logger.info(f"Completion callback for media {body.mediaId}: {body.outcome.value}")
    record = services.status_store.apply_callback(body)
    return MediaView.from_record(record)


# ============================================================================
# PROJECT PROCESSING ENDPOINTS
# ============================================================================

@router.get(
    "/projects/{project_id}/processing",
    response_model=ProcessingSnapshot,
    summary="In-flight Processing Items",
    description="Current queued and processing items, read from the record store"
)
@limiter.limit(limit_param)
def project_processing(
    request: Request,
    project_id: str,
    services: Services = Depends(get_services)
) -> ProcessingSnapshot:
    items = services.status_store.in_flight_items(project_id)
    return ProcessingSnapshot(
        projectId=project_id,
        processingItems=[ProcessingItemView(**item) for item in items],
    )


@router.get(
    "/projects/{project_id}/events",
    summary="Processing Event Stream",
    description="Server-sent events: snapshot, processing-added, processing-completed"
)
async def project_events(request: Request, project_id: str, services: Services = Depends(get_services)):
    loop = asyncio.get_running_loop()
    stream = await run_in_threadpool(services.notifier.open_stream, project_id, loop)

    async def event_source():
        try:
            async for event in stream.events():
                if await request.is_disconnected():
                    break
                if event is None:
                    yield ": keepalive\n\n"
                    continue
                yield f"event: {event['type']}\ndata: {json.dumps(event)}\n\n"
        finally:
            stream.close()

    return StreamingResponse(
        event_source(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
