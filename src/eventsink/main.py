"""
EventSink application factory.

Wires settings, logging, the ingestion components and the HTTP routes into a
FastAPI app. Background work (persister, bucket sweeper) lives in the lifespan.
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict, Optional

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from . import __version__
from .api import healthz_router, ingest_router, metrics_router
from .config import Settings, get_settings
from .core.exceptions import EventSinkException, RateLimitError
from .core.metrics import MetricsCollector
from .core.persister import BatchPersister
from .core.pipeline import IngestionPipeline
from .core.queue import IngestionQueue
from .core.ratelimit import BucketSweeper, RateLimiter
from .core.sanitizer import EventSanitizer
from .core.storage import EventStore


def configure_logging(log_level: str = "INFO", log_format: str = "console") -> None:
    """Route structlog through stdlib logging, rendering as console text or JSON lines."""
    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, log_level.upper()),
    )

    logging.getLogger("watchfiles").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

    renderer = (
        structlog.processors.JSONRenderer()
        if log_format == "json"
        else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def create_lifespan_handler(settings: Settings) -> Any:
    """Create a lifespan handler with access to settings."""
    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """
        FastAPI lifespan context manager.

        Builds the ingestion components and runs the background persister and
        bucket sweeper for the lifetime of the app.
        """
        logger = structlog.get_logger(__name__)
        logger.info("Starting EventSink service", version=app.version)

        metrics_collector = MetricsCollector()
        app.state.metrics = metrics_collector

        store = EventStore.from_settings(settings.database)
        app.state.store = store
        if settings.database.create_schema:
            await store.initialize()

        queue = IngestionQueue(maxsize=settings.queue.capacity)
        app.state.queue = queue

        rate_limiter = RateLimiter(
            capacity=settings.rate_limit.capacity,
            refill_interval_seconds=settings.rate_limit.refill_interval_seconds,
            max_buckets=settings.rate_limit.max_buckets,
            retry_after_mode=settings.rate_limit.retry_after_mode,
            enabled=settings.rate_limit.enabled,
        )
        app.state.rate_limiter = rate_limiter

        app.state.pipeline = IngestionPipeline(
            sanitizer=EventSanitizer(deep_redaction=settings.sanitizer.deep_redaction),
            queue=queue,
            metrics=metrics_collector,
            batch_events_max=settings.sanitizer.batch_events_max,
            enqueue_timeout=settings.queue.enqueue_timeout_seconds,
        )

        persister = BatchPersister(
            queue=queue,
            store=store,
            metrics=metrics_collector,
            max_retries=settings.persister.max_retries,
            backoff_seconds=settings.persister.backoff_seconds,
            dead_letter_path=settings.persister.dead_letter_path,
        )
        app.state.persister = persister
        await persister.start()

        sweeper = BucketSweeper(
            rate_limiter,
            interval_seconds=settings.rate_limit.sweep_interval_seconds,
            idle_seconds=settings.rate_limit.idle_seconds,
        )
        app.state.sweeper = sweeper
        await sweeper.start()

        try:
            logger.info("EventSink service started successfully")
            yield
        finally:
            logger.info("Shutting down EventSink service")

            # Stop accepting batches, then drain what is buffered
            await sweeper.stop()
            await persister.stop(timeout=settings.persister.shutdown_timeout_seconds)
            await store.dispose()

            logger.info("EventSink service shutdown complete")

    return lifespan


async def eventsink_exception_handler(request: Request, exc: EventSinkException) -> JSONResponse:
    """Handle custom EventSink exceptions."""
    logger = structlog.get_logger(__name__)
    log = logger.warning if exc.status_code < 500 else logger.error
    log(
        "EventSink exception occurred",
        error=str(exc),
        status_code=exc.status_code,
        path=request.url.path,
        method=request.method,
    )

    headers = None
    if isinstance(exc, RateLimitError) and "retry_after" in exc.details:
        headers = {"Retry-After": str(exc.details["retry_after"])}

    return JSONResponse(
        status_code=exc.status_code,
        content={
            "status": exc.status,
            "error": exc.error_code,
            "message": str(exc),
            "details": exc.details,
        },
        headers=headers,
    )


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unexpected exceptions."""
    logger = structlog.get_logger(__name__)
    logger.error(
        "Unexpected exception occurred",
        error=str(exc),
        error_type=type(exc).__name__,
        path=request.url.path,
        method=request.method,
        exc_info=True,
    )

    return JSONResponse(
        status_code=500,
        content={
            "status": "error",
            "error": "internal_server_error",
            "message": "An unexpected error occurred",
        },
    )


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """
    Build the EventSink app.

    Tests pass their own settings; uvicorn imports the module-level `app`,
    which uses the cached settings from the environment and config.yaml.
    """
    if settings is None:
        settings = get_settings()

    configure_logging(settings.log_level, settings.log_format)

    app = FastAPI(
        title="EventSink",
        description="Log and error event ingestion into a relational store",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=create_lifespan_handler(settings),
    )
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure appropriately for production
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    app.add_exception_handler(EventSinkException, eventsink_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)

    app.include_router(ingest_router, tags=["ingest"])
    app.include_router(metrics_router, tags=["metrics"])
    app.include_router(healthz_router, tags=["health"])

    @app.get("/", include_in_schema=False)
    async def root() -> Dict[str, str]:
        """Root endpoint with service information."""
        return {
            "service": "EventSink",
            "version": app.version,
            "description": "Log and error event ingestion into a relational store",
            "docs": "/docs",
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "eventsink.main:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
        reload=settings.debug,
    )
