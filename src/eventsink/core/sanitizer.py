"""
Event validation and redaction.

Executes before queueing so that no unredacted copy of an event is ever
persisted. Email addresses are removed outright, not replaced with a mask.
"""

import re
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

import structlog
from pydantic import ValidationError as PydanticValidationError

from ..models.event import Breadcrumb, Event

logger = structlog.get_logger(__name__)

EMAIL_PATTERN = re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}")


class RejectReason(str, Enum):
    """Why an event was dropped from its batch."""

    INVALID = "invalid"


@dataclass
class SanitizeResult:
    """Outcome of sanitizing one raw event."""
    event: Optional[Event] = None
    reason: Optional[RejectReason] = None
    detail: str = ""

    @property
    def ok(self) -> bool:
        return self.event is not None


def redact_text(text: str) -> str:
    """Remove every email-address-shaped substring from text."""
    return EMAIL_PATTERN.sub("", text)


class EventSanitizer:
    """
    Validates and redacts single events.

    By default only `message` and string values directly inside `context` are
    scanned. With `deep_redaction` the scan also descends into nested values of
    every context map, breadcrumb messages and data, and error text.
    """

    def __init__(self, deep_redaction: bool = False) -> None:
        self.deep_redaction = deep_redaction
        logger.info("Event sanitizer initialized", deep_redaction=deep_redaction)

    def process(self, raw_event: Any) -> SanitizeResult:
        """
        Validate, redact and identify one event.

        Args:
            raw_event: Decoded JSON value for a single event

        Returns:
            SanitizeResult holding the event, or the reject reason
        """
        if not isinstance(raw_event, dict):
            return SanitizeResult(
                reason=RejectReason.INVALID,
                detail=f"event must be a JSON object, got {type(raw_event).__name__}",
            )

        try:
            event = Event.model_validate(raw_event)
        except PydanticValidationError as e:
            return SanitizeResult(
                reason=RejectReason.INVALID,
                detail=self._summarize_errors(e),
            )

        return SanitizeResult(event=self._redact(self._ensure_id(event)))

    def _ensure_id(self, event: Event) -> Event:
        if event.id:
            return event
        return event.model_copy(update={"id": str(uuid.uuid4())})

    def _redact(self, event: Event) -> Event:
        update: Dict[str, Any] = {"message": redact_text(event.message)}

        if self.deep_redaction:
            if event.context is not None:
                update["context"] = self._redact_value(event.context)
            update["global_context"] = self._redact_value(event.global_context)
            if event.user_context is not None:
                update["user_context"] = self._redact_value(event.user_context)
            if event.breadcrumbs is not None:
                update["breadcrumbs"] = [self._redact_breadcrumb(b) for b in event.breadcrumbs]
            if event.stack is not None:
                update["stack"] = redact_text(event.stack)
            if event.error_message is not None:
                update["error_message"] = redact_text(event.error_message)
        elif event.context is not None:
            update["context"] = {
                key: redact_text(value) if isinstance(value, str) else value
                for key, value in event.context.items()
            }

        return event.model_copy(update=update)

    def _redact_breadcrumb(self, breadcrumb: Breadcrumb) -> Breadcrumb:
        return breadcrumb.model_copy(update={
            "message": redact_text(breadcrumb.message),
            "data": self._redact_value(breadcrumb.data),
        })

    def _redact_value(self, obj: Any) -> Any:
        """Recursively copy obj with every string redacted."""
        if isinstance(obj, str):
            return redact_text(obj)
        if isinstance(obj, dict):
            return {key: self._redact_value(value) for key, value in obj.items()}
        if isinstance(obj, list):
            return [self._redact_value(item) for item in obj]
        return obj

    @staticmethod
    def _summarize_errors(error: PydanticValidationError) -> str:
        parts: List[str] = []
        for item in error.errors():
            location = ".".join(str(part) for part in item.get("loc", ())) or "event"
            parts.append(f"{location}: {item.get('msg', 'invalid')}")
        return "; ".join(parts)
