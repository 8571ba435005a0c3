"""
Pytest configuration and shared fixtures.

Contains common test fixtures and setup for all test modules.
"""

import asyncio
from pathlib import Path
from typing import Any, AsyncGenerator, Callable, Dict, Generator, List

import pytest
import pytest_asyncio
from fastapi import FastAPI
from fastapi.testclient import TestClient

from eventsink.config import (
    DatabaseSettings,
    PersisterSettings,
    QueueSettings,
    RateLimitSettings,
    SanitizerSettings,
    Settings,
)
from eventsink.core.storage import EventStore, create_engine_from_settings
from eventsink.main import create_app


class FakeClock:
    """Manually advanced monotonic clock for rate limiter tests."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def database_url(tmp_path: Path) -> str:
    """SQLite database file unique to each test."""
    return f"sqlite+aiosqlite:///{tmp_path / 'events.db'}"


@pytest.fixture
def test_settings(database_url: str, tmp_path: Path) -> Settings:
    """Test configuration: small buckets, SQLite storage, fast shutdown."""
    return Settings(
        debug=True,
        log_level="DEBUG",
        rate_limit=RateLimitSettings(
            capacity=5,
            refill_interval_seconds=10.0,
            trust_forwarded_headers=True,
        ),
        sanitizer=SanitizerSettings(deep_redaction=False, batch_events_max=100),
        queue=QueueSettings(capacity=10, enqueue_timeout_seconds=1.0),
        database=DatabaseSettings(url=database_url),
        persister=PersisterSettings(
            dead_letter_path=tmp_path / "dead_letter.jsonl",
            shutdown_timeout_seconds=10.0,
        ),
    )


@pytest.fixture
def test_app(test_settings: Settings) -> FastAPI:
    return create_app(test_settings)


@pytest.fixture
def test_client(test_app: FastAPI) -> Generator[TestClient, None, None]:
    """FastAPI test client; the lifespan (persister, sweeper, schema) runs inside."""
    with TestClient(test_app) as client:
        yield client


@pytest_asyncio.fixture
async def event_store(database_url: str) -> AsyncGenerator[EventStore, None]:
    """Initialized event store on a fresh SQLite file."""
    store = EventStore(create_engine_from_settings(DatabaseSettings(url=database_url)))
    await store.initialize()
    yield store
    await store.dispose()


@pytest.fixture
def count_stored_rows(database_url: str) -> Callable[[], int]:
    """Count persisted rows from synchronous test code."""
    async def _count() -> int:
        store = EventStore(create_engine_from_settings(DatabaseSettings(url=database_url)))
        try:
            return await store.count()
        finally:
            await store.dispose()

    def count() -> int:
        return asyncio.run(_count())

    return count


@pytest.fixture
def fetch_stored_rows(database_url: str) -> Callable[[List[str]], List[Dict[str, Any]]]:
    """Read persisted rows by id from synchronous test code."""
    async def _fetch(ids: List[str]) -> List[Dict[str, Any]]:
        store = EventStore(create_engine_from_settings(DatabaseSettings(url=database_url)))
        try:
            return await store.fetch_by_ids(ids)
        finally:
            await store.dispose()

    def fetch(ids: List[str]) -> List[Dict[str, Any]]:
        return asyncio.run(_fetch(ids))

    return fetch


@pytest.fixture
def valid_event() -> Dict[str, Any]:
    """Sample valid event for testing."""
    return {
        "id": "evt-0001",
        "level": "info",
        "message": "User signed in",
        "timestamp": "2025-09-22T10:30:00.000Z",
        "service": "web-frontend",
        "context": {"page": "/login", "attempt": 1},
        "globalContext": {"release": "1.4.2"},
    }


@pytest.fixture
def error_event() -> Dict[str, Any]:
    """Fully populated error event with nested payloads."""
    return {
        "id": "evt-err-0001",
        "level": "error",
        "message": "Request to /api/orders failed for jane.doe@example.com",
        "timestamp": "2025-09-22T10:31:12.345Z",
        "service": "web-frontend",
        "context": {"orderId": "A-17", "contact": "jane.doe@example.com"},
        "globalContext": {"release": "1.4.2"},
        "userContext": {"plan": "pro"},
        "user": {"id": "u-42", "username": "jane", "email": "jane.doe@example.com"},
        "device": {
            "osName": "macOS",
            "osVersion": "14.1",
            "screenWidth": 1920,
            "screenHeight": 1080,
            "devicePixelRatio": 2.0,
            "userAgent": "Mozilla/5.0",
            "userAgentClientHints": {
                "brands": [{"brand": "Chromium", "version": "120"}],
                "mobile": False,
                "platform": "macOS",
            },
            "hardwareConcurrency": 8,
        },
        "breadcrumbs": [
            {
                "timestamp": "2025-09-22T10:31:10.000Z",
                "type": "click",
                "message": "Clicked checkout",
                "data": {"button": "checkout"},
            },
            {
                "timestamp": "2025-09-22T10:31:11.000Z",
                "type": "xhr",
                "message": "POST /api/orders",
            },
        ],
        "errorName": "HttpError",
        "stack": "HttpError: 500\n    at submitOrder (orders.js:10:5)",
        "reason": {"code": "E_UPSTREAM"},
        "requestMethod": "POST",
        "requestUrl": "https://shop.example.com/api/orders",
        "statusCode": 500,
        "statusText": "Internal Server Error",
        "durationMs": 312,
        "responseSize": 128,
        "errorMessage": "Upstream failed",
    }


@pytest.fixture
def invalid_event() -> Dict[str, Any]:
    """Invalid event for validation testing."""
    return {
        "level": "verbose",
        "message": "",
        "timestamp": "2025-09-22T10:30:00.000Z",
    }


@pytest.fixture
def make_events() -> Callable[..., List[Dict[str, Any]]]:
    """Factory for minimal valid events with predictable ids."""
    def factory(count: int, prefix: str = "evt") -> List[Dict[str, Any]]:
        return [
            {
                "id": f"{prefix}-{index:04d}",
                "level": "info",
                "message": f"message {index}",
                "timestamp": "2025-09-22T10:30:00.000Z",
                "service": "test-service",
            }
            for index in range(count)
        ]

    return factory
