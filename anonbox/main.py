import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional, Union

import uvicorn
from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles

from anonbox.config import Settings, get_settings, settings
from anonbox.enrichment import EnrichmentPipeline, build_abandoned_record, build_message_record
from anonbox.geolocation import IpGeolocator
from anonbox.logging_utils import RequestLoggingMiddleware, log_submission_data, setup_logging
from anonbox.metrics import get_metrics, get_metrics_content_type, record_submission_outcome
from anonbox.notifications import EmailSender, Notifier
from anonbox.schemas import (
    AbandonedMessageCreate,
    AbandonedMessageRecord,
    DeleteResponse,
    ErrorResponse,
    HealthResponse,
    MessageCreate,
    MessageRecord,
    SkippedResponse,
)
from anonbox.storage import ABANDONED, MESSAGES, MessageStore, StorageError, build_store
from anonbox.utils import Clock, utc_now


# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)

router = APIRouter()


# =============================================================================
# Dependencies
# =============================================================================

def get_store(request: Request) -> MessageStore:
    return request.app.state.store


def get_pipeline(request: Request) -> EnrichmentPipeline:
    return request.app.state.pipeline


def get_notifier(request: Request) -> Notifier:
    return request.app.state.notifier


def get_clock(request: Request) -> Clock:
    return request.app.state.clock


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def client_host(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def newest_first(records: list[dict]) -> list[dict]:
    return sorted(records, key=lambda record: str(record.get("timestamp", "")), reverse=True)


# =============================================================================
# Health Check Routes
# =============================================================================

@router.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """
    Liveness probe - always returns 200 once the app is running.
    """
    return HealthResponse(status="ok")


@router.get("/health/ready", response_model=HealthResponse, response_model_exclude_none=True)
async def health_ready(response: Response, store: MessageStore = Depends(get_store)) -> HealthResponse:
    """
    Readiness probe - returns 200 only if the message store is reachable,
    503 (Service Unavailable) otherwise.
    """
    if not store.ping():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(status="not_ready", reason="Message store not reachable")
    return HealthResponse(status="ready")


# =============================================================================
# Message Routes
# =============================================================================

@router.get(
    "/messages",
    responses={200: {"model": list[MessageRecord]}},
)
async def list_messages(store: MessageStore = Depends(get_store)) -> list[dict]:
    """
    List stored messages, newest first.

    A store failure is logged and answered with an empty list.
    """
    try:
        records = store.list_all(MESSAGES)
    except StorageError as e:
        logger.error(f"GET /messages: store unavailable, returning empty list: {e}")
        return []

    logger.info(f"GET /messages: returned {len(records)} messages")
    return newest_first(records)


@router.post(
    "/message",
    status_code=status.HTTP_201_CREATED,
    response_model=MessageRecord,
    response_model_exclude_none=True,
    responses={
        400: {"model": ErrorResponse, "description": "Empty message"},
        500: {"model": ErrorResponse, "description": "Store failure"},
    },
)
async def create_message(
    request: Request,
    payload: Optional[MessageCreate] = None,
    store: MessageStore = Depends(get_store),
    pipeline: EnrichmentPipeline = Depends(get_pipeline),
    notifier: Notifier = Depends(get_notifier),
    clock: Clock = Depends(get_clock),
) -> MessageRecord:
    """
    Store an anonymous message with best-effort sender metadata.

    - Rejects empty or whitespace-only messages with 400 before any enrichment
    - Enriches with IP, location, coordinates, device, source, language, phone
    - Appends to the store (500 on failure)
    - Schedules an email notification without waiting for it
    """
    payload = payload or MessageCreate()
    text = (payload.message or "").strip()

    if not text:
        logger.warning("Rejected empty message")
        record_submission_outcome("message", "rejected")
        log_submission_data(request, kind="message", result="rejected")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Message content is required"
        )

    enrichment = await pipeline.enrich(request.headers, client_host(request), payload.coordinates)
    record = build_message_record(text, enrichment, payload, clock)

    try:
        store.append(MESSAGES, record.model_dump(by_alias=True, exclude_none=True))
    except StorageError as e:
        logger.error(f"Failed to store message {record.id}: {e}")
        record_submission_outcome("message", "error")
        log_submission_data(request, kind="message", result="error")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to save message"
        )

    logger.info(f"Message stored: id={record.id}, location={record.location}, source={record.source}")
    record_submission_outcome("message", "created")
    log_submission_data(request, kind="message", result="created", record=record)

    notifier.submit(record)
    return record


@router.delete(
    "/message/{message_id}",
    response_model=DeleteResponse,
    responses={500: {"model": ErrorResponse, "description": "Store failure"}},
)
async def delete_message(message_id: str, store: MessageStore = Depends(get_store)) -> DeleteResponse:
    """
    Delete every message with this id. Succeeds whether or not the id existed;
    an id that is not an integer matches nothing.
    """
    try:
        record_id = int(message_id)
    except ValueError:
        logger.info(f"DELETE /message/{message_id}: not an integer id, nothing to delete")
        return DeleteResponse(success=True)

    try:
        removed = store.delete_by_id(MESSAGES, record_id)
    except StorageError as e:
        logger.error(f"Failed to delete message {message_id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to delete message"
        )

    logger.info(f"DELETE /message/{record_id}: removed {removed}")
    return DeleteResponse(success=True)


# =============================================================================
# Abandoned Draft Routes
# =============================================================================

@router.post(
    "/abandoned-message",
    status_code=status.HTTP_201_CREATED,
    response_model=Union[AbandonedMessageRecord, SkippedResponse],
    response_model_exclude_none=True,
    responses={
        200: {"model": SkippedResponse, "description": "Draft too short, not stored"},
        500: {"model": ErrorResponse, "description": "Store failure"},
    },
)
async def create_abandoned_message(
    request: Request,
    response: Response,
    payload: Optional[AbandonedMessageCreate] = None,
    store: MessageStore = Depends(get_store),
    pipeline: EnrichmentPipeline = Depends(get_pipeline),
    notifier: Notifier = Depends(get_notifier),
    clock: Clock = Depends(get_clock),
    app_settings: Settings = Depends(get_app_settings),
) -> Union[AbandonedMessageRecord, SkippedResponse]:
    """
    Store a draft the visitor typed but never sent.

    Drafts shorter than ABANDONED_MIN_LENGTH are acknowledged with 200 and
    dropped; everything else is enriched and stored like a message.
    """
    payload = payload or AbandonedMessageCreate()
    text = (payload.partial_message or "").strip()

    if len(text) < app_settings.ABANDONED_MIN_LENGTH:
        logger.info(f"Skipped abandoned draft of {len(text)} characters")
        record_submission_outcome("abandoned", "skipped")
        log_submission_data(request, kind="abandoned", result="skipped")
        response.status_code = status.HTTP_200_OK
        return SkippedResponse()

    enrichment = await pipeline.enrich(request.headers, client_host(request), payload.coordinates)
    record = build_abandoned_record(text, enrichment, payload, clock)

    try:
        store.append(ABANDONED, record.model_dump(by_alias=True, exclude_none=True))
    except StorageError as e:
        logger.error(f"Failed to store abandoned draft {record.id}: {e}")
        record_submission_outcome("abandoned", "error")
        log_submission_data(request, kind="abandoned", result="error")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to save abandoned message"
        )

    logger.info(f"Abandoned draft stored: id={record.id}, reason={record.reason}")
    record_submission_outcome("abandoned", "created")
    log_submission_data(request, kind="abandoned", result="created", record=record)

    notifier.submit(record)
    return record


@router.get(
    "/abandoned-messages",
    responses={200: {"model": list[AbandonedMessageRecord]}},
)
async def list_abandoned_messages(store: MessageStore = Depends(get_store)) -> list[dict]:
    """
    List stored abandoned drafts, newest first (empty list on store failure).
    """
    try:
        records = store.list_all(ABANDONED)
    except StorageError as e:
        logger.error(f"GET /abandoned-messages: store unavailable, returning empty list: {e}")
        return []

    logger.info(f"GET /abandoned-messages: returned {len(records)} drafts")
    return newest_first(records)


# =============================================================================
# Metrics Route
# =============================================================================

@router.get("/metrics")
async def metrics() -> Response:
    """
    Expose Prometheus-style metrics.
    """
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )


# =============================================================================
# Application
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    - Startup: prepare the message store
    - Shutdown: flush pending notifications, close HTTP clients and the store
    """
    app.state.store.init()
    yield
    await app.state.notifier.aclose()
    if app.state.pipeline.geolocator is not None:
        await app.state.pipeline.geolocator.aclose()
    app.state.store.close()


def create_app(
    app_settings: Optional[Settings] = None,
    store: Optional[MessageStore] = None,
    pipeline: Optional[EnrichmentPipeline] = None,
    notifier: Optional[Notifier] = None,
    clock: Clock = utc_now,
) -> FastAPI:
    """
    Build the FastAPI application.

    Collaborators not passed in are built from settings, so tests can swap
    any of them for fakes.
    """
    app_settings = app_settings or get_settings()

    app = FastAPI(
        title="anonbox",
        description="Anonymous message collection with best-effort sender metadata",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.state.settings = app_settings
    app.state.clock = clock
    app.state.store = store or build_store(app_settings)
    app.state.pipeline = pipeline or EnrichmentPipeline(IpGeolocator.from_settings(app_settings))
    app.state.notifier = notifier or Notifier(EmailSender.from_settings(app_settings), clock=clock)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=app_settings.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestLoggingMiddleware)

    app.include_router(router)

    # Mounted last so the API routes above take precedence
    static_dir = Path(app_settings.STATIC_DIR)
    if static_dir.is_dir():
        app.mount("/", StaticFiles(directory=static_dir, html=True), name="static")
        logger.info(f"Serving frontend from {static_dir}")

    return app


app = create_app(settings)


def run() -> None:
    """Console entry point: serve the app with uvicorn on HOST:PORT."""
    uvicorn.run(app, host=settings.HOST, port=settings.PORT, log_config=None)


if __name__ == "__main__":
    run()
