"""
Ingestion pipeline.

Orchestrates the request side of ingestion:
1. Rate limiting (handled before the body is read, see ratelimit.py)
2. Per-event validation and redaction
3. Batch assembly
4. Enqueue for background persistence
5. Response generation
"""

import time
from collections import Counter
from dataclasses import dataclass
from typing import Any, List, Optional

import structlog

from ..models.event import Event, EventBatch
from .exceptions import QueueClosedError, QueueTimeoutError, ValidationError
from .metrics import MetricsCollector
from .queue import IngestionQueue
from .sanitizer import EventSanitizer

logger = structlog.get_logger(__name__)


@dataclass
class ProcessingResult:
    """Result of processing a batch of raw events."""
    entries_processed: int
    entries_rejected: int
    processing_time_ms: float


class IngestionPipeline:
    """
    Request-side processing for an inbound batch.

    Invalid events are dropped individually; the rest are queued together as
    one EventBatch. Nothing is queued when no event survives validation.
    """

    def __init__(
        self,
        sanitizer: EventSanitizer,
        queue: IngestionQueue,
        metrics: Optional[MetricsCollector] = None,
        batch_events_max: int = 10_000,
        enqueue_timeout: Optional[float] = None,
    ) -> None:
        self.sanitizer = sanitizer
        self.queue = queue
        self.metrics = metrics
        self.batch_events_max = batch_events_max
        self.enqueue_timeout = enqueue_timeout

    async def submit(
        self,
        raw_entries: List[Any],
        client_key: str = "unknown",
        request_id: str = "",
    ) -> ProcessingResult:
        """
        Sanitize raw events and queue the survivors as one batch.

        Raises:
            ValidationError: batch too large, or no valid events
            QueueClosedError: shutdown in progress
            QueueTimeoutError: queue stayed full past the enqueue timeout
        """
        start = time.monotonic()

        if len(raw_entries) > self.batch_events_max:
            raise ValidationError(
                f"Batch exceeds {self.batch_events_max} events",
                details={"entries": len(raw_entries), "max_entries": self.batch_events_max},
            )

        accepted: List[Event] = []
        rejections: Counter[str] = Counter()

        for index, raw_event in enumerate(raw_entries):
            result = self.sanitizer.process(raw_event)
            if result.event is not None:
                accepted.append(result.event)
                continue

            reason = result.reason.value if result.reason else "invalid"
            rejections[reason] += 1
            logger.warning(
                "Event validation failed",
                request_id=request_id,
                index=index,
                reason=reason,
                detail=result.detail,
            )

        rejected_count = sum(rejections.values())
        if self.metrics:
            self.metrics.record_ingestion(
                received_count=len(raw_entries),
                accepted_count=len(accepted),
            )
            for reason, count in rejections.items():
                self.metrics.record_rejected(reason, count)

        if not accepted:
            logger.warning(
                "No valid log entries in the received batch after validation",
                request_id=request_id,
                entries_received=len(raw_entries),
            )
            raise ValidationError(
                "No valid log entries found in batch",
                details={"entries_received": len(raw_entries), "entries_rejected": rejected_count},
            )

        batch = EventBatch(
            events=accepted,
            request_id=request_id,
            client_key=client_key,
            accepted_at=time.time(),
        )

        try:
            await self.queue.enqueue(batch, timeout=self.enqueue_timeout)
        except QueueClosedError:
            logger.error("Failed to queue batch: queue closed", request_id=request_id)
            if self.metrics:
                self.metrics.record_enqueue_failure("closed")
            raise
        except QueueTimeoutError:
            if self.metrics:
                self.metrics.record_enqueue_failure("timeout")
            raise

        if self.metrics:
            self.metrics.update_queue_depth(self.queue.qsize())

        logger.info(
            "Queued batch for persistence",
            request_id=request_id,
            client_key=client_key,
            entries_accepted=len(accepted),
            entries_rejected=rejected_count,
        )

        return ProcessingResult(
            entries_processed=len(accepted),
            entries_rejected=rejected_count,
            processing_time_ms=(time.monotonic() - start) * 1000,
        )
