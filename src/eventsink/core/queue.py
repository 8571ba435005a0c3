"""
Bounded hand-off queue between request handlers and the batch persister.

Carries whole event batches, never individual events. Producers suspend while
the queue is full (backpressure); nothing is dropped silently.
"""

import asyncio
from collections import deque
from enum import Enum
from typing import Deque, Optional

import structlog

from ..models.event import EventBatch
from .exceptions import QueueClosedError, QueueTimeoutError

logger = structlog.get_logger(__name__)


class QueueState(str, Enum):
    """
    Queue lifecycle.

    RUNNING accepts batches. close() moves to DRAINING: producers are refused
    and the consumer keeps receiving what is buffered. The consumer's first
    dequeue on an empty DRAINING queue moves it to STOPPED.
    """

    RUNNING = "running"
    DRAINING = "draining"
    STOPPED = "stopped"


class IngestionQueue:
    """
    FIFO channel of EventBatch objects with a fixed capacity.

    Batches are delivered in the order their enqueue calls complete. A
    cancelled or timed-out enqueue leaves the queue untouched: the batch is
    appended in a single step only once space is available.
    """

    def __init__(self, maxsize: int = 1000) -> None:
        if maxsize < 1:
            raise ValueError("maxsize must be at least 1")
        self.maxsize = maxsize
        self._items: Deque[EventBatch] = deque()
        self._condition = asyncio.Condition()
        self._state = QueueState.RUNNING

    @property
    def state(self) -> QueueState:
        return self._state

    @property
    def accepting(self) -> bool:
        return self._state is QueueState.RUNNING

    def qsize(self) -> int:
        return len(self._items)

    def full(self) -> bool:
        return len(self._items) >= self.maxsize

    async def enqueue(self, batch: EventBatch, timeout: Optional[float] = None) -> None:
        """
        Hand a batch to the consumer, waiting for space if the queue is full.

        Raises:
            QueueClosedError: the queue is draining or stopped
            QueueTimeoutError: no space became available within timeout
        """
        async with self._condition:
            try:
                await asyncio.wait_for(
                    self._condition.wait_for(lambda: not self.accepting or not self.full()),
                    timeout,
                )
            except asyncio.TimeoutError:
                logger.warning(
                    "Enqueue timed out under backpressure",
                    request_id=batch.request_id,
                    queue_size=len(self._items),
                    timeout_seconds=timeout,
                )
                raise QueueTimeoutError(timeout=timeout) from None

            if not self.accepting:
                raise QueueClosedError()

            self._items.append(batch)
            self._condition.notify_all()

    async def dequeue(self) -> Optional[EventBatch]:
        """
        Take the oldest batch, waiting until one is available.

        Returns None once the queue has been closed and fully drained.
        """
        async with self._condition:
            await self._condition.wait_for(lambda: bool(self._items) or not self.accepting)

            if self._items:
                batch = self._items.popleft()
                self._condition.notify_all()
                return batch

            if self._state is not QueueState.STOPPED:
                self._state = QueueState.STOPPED
                logger.info("Ingestion queue drained and stopped")
            return None

    async def close(self) -> None:
        """Stop accepting batches; blocked producers fail with QueueClosedError."""
        async with self._condition:
            if self._state is not QueueState.RUNNING:
                return
            self._state = QueueState.DRAINING
            self._condition.notify_all()

        logger.info("Ingestion queue closed", buffered_batches=len(self._items))
