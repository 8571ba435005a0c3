"""
Event ingestion API endpoints.

Main endpoint: POST /ingest
"""

import uuid
from datetime import datetime, timezone
from typing import Any, List

import structlog
from fastapi import APIRouter, Depends, Request

from ..core.exceptions import EventSinkException, ValidationError
from ..core.pipeline import IngestionPipeline
from ..core.ratelimit import enforce_rate_limit
from ..models.event import ErrorResponse, IngestResponse

logger = structlog.get_logger(__name__)

router = APIRouter()


async def get_ingestion_pipeline(request: Request) -> IngestionPipeline:
    """Dependency to get the ingestion pipeline from app state."""
    return request.app.state.pipeline


async def read_event_array(request: Request) -> List[Any]:
    """Decode the request body, which must be a JSON array of events."""
    try:
        payload = await request.json()
    except ValueError:
        raise ValidationError("Request body must be valid JSON") from None

    if not isinstance(payload, list):
        raise ValidationError(
            "Request body must be a JSON array of events",
            details={"received_type": type(payload).__name__},
        )
    return payload


@router.post(
    "/ingest",
    response_model=IngestResponse,
    status_code=202,
    responses={
        400: {"model": ErrorResponse, "description": "No valid events or malformed body"},
        429: {"model": ErrorResponse, "description": "Rate limit exceeded"},
        503: {"model": ErrorResponse, "description": "Queue closed or full"},
        500: {"model": ErrorResponse, "description": "Internal server error"},
    },
    summary="Ingest a batch of events",
    description="""
    Ingest a batch of log/error events for asynchronous persistence.

    **Processing Pipeline:**
    1. Per-client rate limiting (before the body is read)
    2. Per-event schema validation (invalid events are dropped, not the batch)
    3. Email redaction in message and context
    4. Enqueue as one batch (waits for space under backpressure)
    5. Acknowledgment (202 response)
    6. Background transactional insert, duplicates by id skipped

    **Request Requirements:**
    - Body is a JSON array of event objects (camelCase keys)
    - Required fields: level, message, timestamp, service
    """,
)
async def ingest_events(
    request: Request,
    client_key: str = Depends(enforce_rate_limit),
    pipeline: IngestionPipeline = Depends(get_ingestion_pipeline),
) -> IngestResponse:
    """Validate, redact and queue a batch of events for persistence."""
    request_id = str(uuid.uuid4())
    start_time = datetime.now(timezone.utc)

    try:
        raw_entries = await read_event_array(request)

        logger.info(
            "Received batch of log entries",
            request_id=request_id,
            client_key=client_key,
            entries_count=len(raw_entries),
        )

        result = await pipeline.submit(
            raw_entries,
            client_key=client_key,
            request_id=request_id,
        )

        logger.info(
            "Log ingestion completed successfully",
            request_id=request_id,
            client_key=client_key,
            entries_processed=result.entries_processed,
            entries_rejected=result.entries_rejected,
            processing_time_ms=(datetime.now(timezone.utc) - start_time).total_seconds() * 1000,
        )

        return IngestResponse(
            status="success",
            message=f"Received and queued {result.entries_processed} log entries for processing",
            entries_accepted=result.entries_processed,
            entries_rejected=result.entries_rejected,
            request_id=request_id,
        )

    except EventSinkException as e:
        logger.warning(
            "Log ingestion rejected",
            request_id=request_id,
            client_key=client_key,
            error=str(e),
            error_code=e.error_code,
            status_code=e.status_code,
        )
        raise
