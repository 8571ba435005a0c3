"""
Background service that drains the ingestion queue into the event store.

Features:
- Single consumer task, one transaction per batch
- Idempotent inserts (duplicate ids are skipped)
- Optional retry with backoff and a JSON lines dead-letter file
- Clean exit once the queue is closed and drained
"""

import asyncio
import json
import time
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

import structlog
from aiofiles import open as aio_open

from ..models.event import EventBatch
from .metrics import MetricsCollector
from .queue import IngestionQueue
from .storage import EventStore

logger = structlog.get_logger(__name__)


@dataclass
class PersisterStats:
    """Running totals for the persister."""
    batches_persisted: int = 0
    batches_failed: int = 0
    rows_inserted: int = 0
    rows_duplicate: int = 0


class BatchPersister:
    """
    Background task persisting queued batches.

    By default each batch gets exactly one attempt: a failed batch is logged
    and abandoned, and the request that produced it is never told (it was
    acknowledged at enqueue time). `max_retries` and `dead_letter_path`
    strengthen that without blocking the request path.
    """

    def __init__(
        self,
        queue: IngestionQueue,
        store: EventStore,
        metrics: Optional[MetricsCollector] = None,
        max_retries: int = 0,
        backoff_seconds: Optional[List[float]] = None,
        dead_letter_path: Optional[Path] = None,
    ) -> None:
        self.queue = queue
        self.store = store
        self.metrics = metrics
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds or [1.0]
        self.dead_letter_path = dead_letter_path
        self.stats = PersisterStats()
        self._task: Optional[asyncio.Task[None]] = None
        self._close_task: Optional[asyncio.Task[None]] = None

        logger.info(
            "Batch persister initialized",
            max_retries=max_retries,
            dead_letter_path=str(dead_letter_path) if dead_letter_path else None,
        )

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start the persister loop."""
        if self.running:
            return

        self._task = asyncio.create_task(self.run())
        self._task.add_done_callback(self._on_task_done)
        logger.info("Batch persister started")

    def _on_task_done(self, task: "asyncio.Task[None]") -> None:
        """Log a crashed loop and close the queue behind it."""
        if task.cancelled() or task.exception() is None:
            return

        exc = task.exception()
        logger.error(
            "Batch persister loop crashed",
            error=str(exc),
            error_type=type(exc).__name__,
            buffered_batches=self.queue.qsize(),
            exc_info=exc,
        )
        self._close_task = task.get_loop().create_task(self.queue.close())

    async def stop(self, timeout: Optional[float] = None) -> None:
        """
        Close the queue and wait for buffered batches to be persisted.

        The loop is cancelled if draining takes longer than timeout.
        """
        await self.queue.close()

        if self._task is None:
            return

        try:
            await asyncio.wait_for(asyncio.shield(self._task), timeout)
        except asyncio.TimeoutError:
            logger.error(
                "Batch persister did not drain in time, cancelling",
                timeout_seconds=timeout,
                buffered_batches=self.queue.qsize(),
            )
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        except Exception as e:
            # Already logged by the done callback
            logger.debug("Batch persister loop had failed before stop", error=str(e))

        self._task = None
        logger.info(
            "Batch persister stopped",
            batches_persisted=self.stats.batches_persisted,
            batches_failed=self.stats.batches_failed,
        )

    async def run(self) -> None:
        """Main dequeue loop; returns when the queue is closed and empty."""
        while True:
            batch = await self.queue.dequeue()
            if batch is None:
                logger.info("Batch persister shutting down: queue closed and drained")
                return

            if self.metrics:
                self.metrics.update_queue_depth(self.queue.qsize())

            await self.persist(batch)

    async def persist(self, batch: EventBatch) -> bool:
        """
        Persist one batch, retrying per configuration.

        Returns True if the batch was committed.
        """
        attempts = self.max_retries + 1

        for attempt in range(attempts):
            started = time.monotonic()
            try:
                inserted = await self.store.insert_batch(batch.events)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(
                    "Failed to persist batch",
                    request_id=batch.request_id,
                    batch_size=len(batch),
                    attempt=attempt + 1,
                    max_attempts=attempts,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                if attempt < self.max_retries:
                    if self.metrics:
                        self.metrics.record_batch_retry()
                    backoff = self.backoff_seconds[min(attempt, len(self.backoff_seconds) - 1)]
                    await asyncio.sleep(backoff)
                continue

            duration = time.monotonic() - started
            duplicates = len(batch) - inserted
            self.stats.batches_persisted += 1
            self.stats.rows_inserted += inserted
            self.stats.rows_duplicate += duplicates
            if self.metrics:
                self.metrics.record_batch_persisted(inserted, len(batch), duration)

            logger.info(
                "Persisted batch",
                request_id=batch.request_id,
                batch_size=len(batch),
                rows_inserted=inserted,
                duplicates_skipped=duplicates,
                duration_ms=round(duration * 1000, 2),
            )
            return True

        self.stats.batches_failed += 1
        if self.metrics:
            self.metrics.record_batch_failed()

        logger.error(
            "Abandoned batch after failed persistence",
            request_id=batch.request_id,
            client_key=batch.client_key,
            batch_size=len(batch),
            event_ids=batch.ids,
        )

        if self.dead_letter_path is not None:
            await self._write_dead_letter(batch, self.dead_letter_path)
        return False

    async def _write_dead_letter(self, batch: EventBatch, path: Path) -> None:
        """Append the batch as one JSON line for later replay."""
        record = {
            "request_id": batch.request_id,
            "client_key": batch.client_key,
            "failed_at": time.time(),
            "events": [event.model_dump(mode="json", by_alias=True) for event in batch.events],
        }
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            async with aio_open(path, "a") as f:
                await f.write(json.dumps(record) + "\n")
        except OSError as e:
            logger.error(
                "Failed to write dead letter",
                request_id=batch.request_id,
                dead_letter_path=str(path),
                error=str(e),
            )
            return

        logger.warning(
            "Wrote failed batch to dead letter file",
            request_id=batch.request_id,
            dead_letter_path=str(path),
        )
