"""
Event data models and validation.

- Wire form is a JSON object with camelCase keys
- Required fields: level, message (non-empty), timestamp, service
- Unknown keys are ignored; structured payloads are stored as opaque JSON
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class LogLevel(str, Enum):
    """Allowed event severities."""

    TRACE = "trace"
    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"
    FATAL = "fatal"
    CRITICAL = "critical"


class BreadcrumbType(str, Enum):
    """Allowed breadcrumb kinds."""

    CLICK = "click"
    NAVIGATION = "navigation"
    XHR = "xhr"
    CONSOLE = "console"
    CUSTOM = "custom"
    ERROR = "error"


class _WireModel(BaseModel):
    """Base for models exchanged in camelCase JSON."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


class UserInfo(_WireModel):
    """Identity of the user who triggered the event."""

    id: Optional[str] = None
    username: Optional[str] = None
    email: Optional[str] = None


class Brand(_WireModel):
    brand: str
    version: str


class UserAgentClientHints(_WireModel):
    brands: List[Brand]
    mobile: bool
    platform: str


class DeviceInfo(_WireModel):
    """Client device descriptor, stored as a single JSON blob."""

    os_name: Optional[str] = None
    os_version: Optional[str] = None
    brand: Optional[str] = None
    model: Optional[str] = None
    family: Optional[str] = None
    screen_width: Optional[int] = Field(default=None, ge=0)
    screen_height: Optional[int] = Field(default=None, ge=0)
    device_pixel_ratio: Optional[float] = None
    user_agent: Optional[str] = None
    user_agent_client_hints: Optional[UserAgentClientHints] = None
    connection_type: Optional[str] = None
    effective_connection_type: Optional[str] = None
    rtt: Optional[int] = Field(default=None, ge=0)
    downlink: Optional[float] = None
    save_data: Optional[bool] = None
    hardware_concurrency: Optional[int] = Field(default=None, ge=0)
    device_memory: Optional[float] = None
    js_heap_size_limit: Optional[int] = Field(default=None, ge=0)
    total_js_heap_size: Optional[int] = Field(default=None, ge=0)
    used_js_heap_size: Optional[int] = Field(default=None, ge=0)


class Breadcrumb(_WireModel):
    """A single step in the trail leading up to the event."""

    timestamp: str
    breadcrumb_type: BreadcrumbType = Field(alias="type")
    message: str
    data: Optional[Any] = None


class Event(_WireModel):
    """
    Individual log/error event.

    The `id` is the natural key used for deduplication at storage; the
    sanitizer assigns one when the client did not.
    """

    id: Optional[str] = Field(default=None, description="Client-supplied unique id")
    level: LogLevel = Field(description="Severity (trace, debug, info, warn, error, fatal, critical)")
    message: str = Field(min_length=1, description="Log message content")
    timestamp: str = Field(description="Caller-supplied timestamp, stored verbatim")
    service: str = Field(description="Originating service name")

    context: Optional[Dict[str, Any]] = None
    global_context: Dict[str, Any] = Field(default_factory=dict)
    user_context: Optional[Dict[str, Any]] = None

    user: Optional[UserInfo] = None
    device: Optional[DeviceInfo] = None
    breadcrumbs: Optional[List[Breadcrumb]] = None

    error_name: Optional[str] = None
    stack: Optional[str] = None
    reason: Optional[Any] = None

    request_method: Optional[str] = None
    request_url: Optional[str] = None
    status_code: Optional[int] = Field(default=None, ge=0, le=65535)
    status_text: Optional[str] = None
    duration_ms: Optional[int] = Field(default=None, ge=0)
    response_size: Optional[int] = Field(default=None, ge=0)
    error_message: Optional[str] = None

    @field_validator("global_context", mode="before")
    def default_global_context(cls, v: Any) -> Any:
        """An explicit null global context is stored as an empty map."""
        return {} if v is None else v


@dataclass
class EventBatch:
    """
    Ordered, non-empty group of sanitized events accepted by one request.

    The batch is the unit handed to the ingestion queue and the unit of
    persistence (one transaction per batch).
    """

    events: List[Event]
    request_id: str
    client_key: str = "unknown"
    accepted_at: float = field(default=0.0)

    def __post_init__(self) -> None:
        if not self.events:
            raise ValueError("EventBatch must contain at least one event")

    def __len__(self) -> int:
        return len(self.events)

    def __iter__(self) -> Iterator[Event]:
        return iter(self.events)

    @property
    def ids(self) -> List[str]:
        return [event.id or "" for event in self.events]


class IngestResponse(BaseModel):
    """
    Response from the ingestion endpoint.

    202 Accepted response acknowledging the events queued.
    """

    status: str = Field(default="success", description="Status tag (success)")
    message: str = Field(description="Response message")
    entries_accepted: int = Field(description="Number of events queued for persistence")
    entries_rejected: int = Field(description="Number of events dropped by validation")
    request_id: str = Field(description="Unique request identifier")


class ErrorResponse(BaseModel):
    """
    Standard error response model.
    """

    status: str = Field(description="Status tag (failed for client errors, error for server errors)")
    error: str = Field(description="Error code")
    message: str = Field(description="Human-readable error message")
    details: Optional[Dict[str, Any]] = Field(
        default=None,
        description="Additional error details"
    )
