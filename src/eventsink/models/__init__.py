"""
Pydantic data models package.

Contains all data validation models for:
- Inbound events and their nested payloads
- The in-process event batch
- API responses
"""

from .event import (
    Breadcrumb,
    BreadcrumbType,
    DeviceInfo,
    ErrorResponse,
    Event,
    EventBatch,
    IngestResponse,
    LogLevel,
    UserInfo,
)

__all__ = [
    # Event models
    "Event",
    "EventBatch",
    "LogLevel",
    "Breadcrumb",
    "BreadcrumbType",
    "DeviceInfo",
    "UserInfo",

    # Response models
    "IngestResponse",
    "ErrorResponse",
]
