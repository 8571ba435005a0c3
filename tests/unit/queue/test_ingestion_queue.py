"""
Tests for the bounded ingestion queue.
"""

import asyncio

import pytest

from eventsink.core.exceptions import QueueClosedError, QueueTimeoutError
from eventsink.core.queue import IngestionQueue, QueueState
from eventsink.models.event import Event, EventBatch, LogLevel


def _batch(request_id: str, size: int = 1) -> EventBatch:
    events = [
        Event(
            id=f"{request_id}-{index}",
            level=LogLevel.INFO,
            message="queued",
            timestamp="2025-09-22T10:30:00.000Z",
            service="test-service",
        )
        for index in range(size)
    ]
    return EventBatch(events=events, request_id=request_id)


class TestIngestionQueue:
    """Test FIFO hand-off, backpressure and shutdown."""

    @pytest.mark.asyncio
    async def test_fifo_order(self) -> None:
        queue = IngestionQueue(maxsize=5)
        for request_id in ("r1", "r2", "r3"):
            await queue.enqueue(_batch(request_id))

        assert queue.qsize() == 3
        assert [(await queue.dequeue()).request_id for _ in range(3)] == ["r1", "r2", "r3"]

    @pytest.mark.asyncio
    async def test_batches_are_not_split(self) -> None:
        queue = IngestionQueue(maxsize=1)
        await queue.enqueue(_batch("r1", size=25))

        batch = await queue.dequeue()
        assert len(batch) == 25
        assert batch.ids[0] == "r1-0"

    @pytest.mark.asyncio
    async def test_full_queue_times_out_without_enqueueing(self) -> None:
        """Test backpressure: a producer that gives up leaves no partial state."""

        queue = IngestionQueue(maxsize=1)
        await queue.enqueue(_batch("r1"))
        assert queue.full()

        with pytest.raises(QueueTimeoutError) as exc_info:
            await queue.enqueue(_batch("r2"), timeout=0.05)

        assert exc_info.value.status_code == 503
        assert queue.qsize() == 1
        assert (await queue.dequeue()).request_id == "r1"

    @pytest.mark.asyncio
    async def test_blocked_producer_resumes_when_space_frees(self) -> None:
        queue = IngestionQueue(maxsize=1)
        await queue.enqueue(_batch("r1"))

        producer = asyncio.create_task(queue.enqueue(_batch("r2")))
        await asyncio.sleep(0.01)
        assert not producer.done()

        assert (await queue.dequeue()).request_id == "r1"
        await asyncio.wait_for(producer, timeout=1)
        assert (await queue.dequeue()).request_id == "r2"

    @pytest.mark.asyncio
    async def test_close_wakes_blocked_producers(self) -> None:
        queue = IngestionQueue(maxsize=1)
        await queue.enqueue(_batch("r1"))

        producer = asyncio.create_task(queue.enqueue(_batch("r2")))
        await asyncio.sleep(0.01)
        await queue.close()

        with pytest.raises(QueueClosedError):
            await asyncio.wait_for(producer, timeout=1)
        assert queue.qsize() == 1

    @pytest.mark.asyncio
    async def test_closed_queue_rejects_new_batches(self) -> None:
        queue = IngestionQueue(maxsize=5)
        await queue.close()

        assert queue.state is QueueState.DRAINING
        with pytest.raises(QueueClosedError):
            await queue.enqueue(_batch("r1"))

    @pytest.mark.asyncio
    async def test_drain_after_close(self) -> None:
        """Test buffered batches are still delivered after close, then None."""

        queue = IngestionQueue(maxsize=5)
        await queue.enqueue(_batch("r1"))
        await queue.enqueue(_batch("r2"))
        await queue.close()

        assert (await queue.dequeue()).request_id == "r1"
        assert (await queue.dequeue()).request_id == "r2"
        assert queue.state is QueueState.DRAINING

        assert await queue.dequeue() is None
        assert queue.state is QueueState.STOPPED
        assert await queue.dequeue() is None

    @pytest.mark.asyncio
    async def test_close_wakes_waiting_consumer(self) -> None:
        queue = IngestionQueue(maxsize=5)
        consumer = asyncio.create_task(queue.dequeue())
        await asyncio.sleep(0.01)

        await queue.close()
        assert await asyncio.wait_for(consumer, timeout=1) is None

    def test_invalid_capacity(self) -> None:
        with pytest.raises(ValueError):
            IngestionQueue(maxsize=0)

    def test_empty_batch_is_not_constructible(self) -> None:
        with pytest.raises(ValueError):
            EventBatch(events=[], request_id="r1")
