"""
Relational event store.

Owns the `logs` table DDL and the event → row mapping. Built on the SQLAlchemy
2.0 async engine: asyncpg for PostgreSQL, aiosqlite for local and test runs.
Structured payloads are stored as JSON (JSONB on PostgreSQL).
"""

from typing import Any, Dict, Iterable, List, Sequence

import structlog
from sqlalchemy import (
    BigInteger,
    Column,
    Index,
    Integer,
    JSON,
    MetaData,
    String,
    Table,
    Text,
    func,
    select,
)
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine

from ..config import DatabaseSettings
from ..models.event import Event
from .exceptions import StorageError

logger = structlog.get_logger(__name__)

metadata = MetaData()

_JSONType = JSON(none_as_null=True).with_variant(postgresql.JSONB(none_as_null=True), "postgresql")

logs_table = Table(
    "logs",
    metadata,
    Column("id", Text, primary_key=True, nullable=False),
    Column("level", String(10), nullable=False),
    Column("message", Text, nullable=False),
    Column("timestamp", Text, nullable=False),
    Column("service", String(255), nullable=False),
    Column("context", _JSONType),
    Column("global_context", _JSONType, nullable=False),
    Column("user_context", _JSONType),
    Column("user_id", Text),
    Column("user_username", String(255)),
    Column("user_email", String(255)),
    Column("device", _JSONType),
    Column("breadcrumbs", _JSONType),
    Column("error_name", String(255)),
    Column("stack", Text),
    Column("reason", _JSONType),
    Column("request_method", String(10)),
    Column("request_url", Text),
    Column("status_code", Integer),
    Column("status_text", String(255)),
    Column("duration_ms", BigInteger),
    Column("response_size", BigInteger),
    Column("error_message", Text),
    Index("idx_logs_level", "level"),
    Index("idx_logs_timestamp", "timestamp"),
    Index("idx_logs_service", "service"),
)


def event_to_row(event: Event) -> Dict[str, Any]:
    """Map an event onto `logs` columns; nested models become JSON blobs."""
    user = event.user
    return {
        "id": event.id,
        "level": event.level.value,
        "message": event.message,
        "timestamp": event.timestamp,
        "service": event.service,
        "context": event.context,
        "global_context": event.global_context,
        "user_context": event.user_context,
        "user_id": user.id if user else None,
        "user_username": user.username if user else None,
        "user_email": user.email if user else None,
        "device": event.device.model_dump(mode="json", by_alias=True) if event.device else None,
        "breadcrumbs": (
            [b.model_dump(mode="json", by_alias=True) for b in event.breadcrumbs]
            if event.breadcrumbs is not None
            else None
        ),
        "error_name": event.error_name,
        "stack": event.stack,
        "reason": event.reason,
        "request_method": event.request_method,
        "request_url": event.request_url,
        "status_code": event.status_code,
        "status_text": event.status_text,
        "duration_ms": event.duration_ms,
        "response_size": event.response_size,
        "error_message": event.error_message,
    }


def create_engine_from_settings(settings: DatabaseSettings) -> AsyncEngine:
    """Create the async engine; pool sizing only applies to server databases."""
    url = make_url(settings.url)
    kwargs: Dict[str, Any] = {"echo": settings.echo}
    if url.get_backend_name() != "sqlite":
        kwargs.update(
            pool_size=settings.pool_size,
            max_overflow=settings.max_overflow,
            pool_timeout=settings.pool_timeout_seconds,
            pool_pre_ping=True,
        )
    return create_async_engine(url, **kwargs)


class EventStore:
    """
    Storage gateway for persisted events.

    Writes are idempotent by event id: re-inserting an existing id is a silent
    no-op (`ON CONFLICT (id) DO NOTHING`), never an error.
    """

    def __init__(self, engine: AsyncEngine) -> None:
        self.engine = engine
        self._dialect = engine.dialect.name
        if self._dialect not in ("postgresql", "sqlite"):
            raise ValueError(f"Unsupported database dialect: {self._dialect}")
        logger.info("Event store initialized", dialect=self._dialect)

    @classmethod
    def from_settings(cls, settings: DatabaseSettings) -> "EventStore":
        return cls(create_engine_from_settings(settings))

    async def initialize(self) -> None:
        """Create the `logs` table and its indexes if they do not exist."""
        logger.info("Initializing database schema")
        async with self.engine.begin() as conn:
            await conn.run_sync(metadata.create_all)
        logger.info("Database schema initialized", table=logs_table.name)

    async def insert_batch(self, events: Sequence[Event]) -> int:
        """
        Insert events in order inside a single transaction.

        Any failure other than an id conflict rolls back the whole batch and
        propagates as StorageError. Returns the number of rows actually inserted.
        """
        inserted = 0
        try:
            async with self.engine.begin() as conn:
                for event in events:
                    inserted += await self._insert_one(conn, event)
        except SQLAlchemyError as e:
            raise StorageError(
                f"Failed to insert batch: {e}",
                details={"batch_size": len(events)},
            ) from e
        return inserted

    async def _insert_one(self, conn: AsyncConnection, event: Event) -> int:
        insert = postgresql.insert if self._dialect == "postgresql" else sqlite.insert
        stmt = (
            insert(logs_table)
            .values(**event_to_row(event))
            .on_conflict_do_nothing(index_elements=[logs_table.c.id])
        )
        result = await conn.execute(stmt)
        return max(result.rowcount or 0, 0)

    async def fetch_by_ids(self, ids: Iterable[str]) -> List[Dict[str, Any]]:
        """Return stored rows for the given ids, ordered by id."""
        id_list = list(ids)
        if not id_list:
            return []
        async with self.engine.connect() as conn:
            result = await conn.execute(
                select(logs_table).where(logs_table.c.id.in_(id_list)).order_by(logs_table.c.id)
            )
            return [dict(row._mapping) for row in result]

    async def count(self) -> int:
        async with self.engine.connect() as conn:
            result = await conn.execute(select(func.count()).select_from(logs_table))
            return int(result.scalar_one())

    async def dispose(self) -> None:
        await self.engine.dispose()
        logger.info("Event store disposed")
