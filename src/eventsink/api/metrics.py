"""
Prometheus scrape endpoint backed by the per-app registry.
"""

import structlog
from fastapi import APIRouter, Request, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

logger = structlog.get_logger(__name__)

router = APIRouter()


@router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="""
    Text exposition of the ingestion, queue and persistence metrics.

    **Key Metrics:**
    - eventsink_events_accepted_total - Events queued for persistence
    - eventsink_events_rejected_total{reason} - Events dropped by validation
    - eventsink_requests_rate_limited_total - Requests rejected with 429
    - eventsink_queue_depth_batches - Batches waiting for the persister
    - eventsink_batches_persisted_total / eventsink_batches_failed_total
    - eventsink_persist_duration_seconds - Batch transaction latency
    """,
)
async def get_metrics(request: Request) -> Response:
    """Refresh the gauges, then render the app registry."""
    metrics_collector = getattr(request.app.state, "metrics", None)

    if not metrics_collector:
        logger.warning("Metrics collector not initialized")
        return Response(
            content="# Metrics collector not initialized\n",
            media_type=CONTENT_TYPE_LATEST,
        )

    metrics_collector.update_system_metrics()
    queue = getattr(request.app.state, "queue", None)
    if queue is not None:
        metrics_collector.update_queue_depth(queue.qsize())

    metrics_data = generate_latest(metrics_collector.registry)
    logger.debug("Metrics scraped successfully", size_bytes=len(metrics_data))

    return Response(
        content=metrics_data,
        media_type=CONTENT_TYPE_LATEST,
    )
