"""Data models for inbound GitHub webhook events.

All models use timezone-aware datetimes.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, field_validator


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class WebhookEventType(str, Enum):
    """GitHub webhook event types the mirror understands."""

    PING = "ping"  # Sent once when a hook is created
    PUSH = "push"  # New commits pushed
    CREATE = "create"  # Branch/tag created
    DELETE = "delete"  # Branch/tag deleted
    RELEASE = "release"  # Release published
    PULL_REQUEST = "pull_request"
    ISSUES = "issues"
    FORK = "fork"
    WATCH = "watch"


CRITICAL_EVENT_TYPES = frozenset(
    {WebhookEventType.PUSH.value, WebhookEventType.CREATE.value, WebhookEventType.DELETE.value}
)


# ---------------------------------------------------------------------------
# Webhook Event
# ---------------------------------------------------------------------------


class WebhookEvent(BaseModel):
    """Verified webhook delivery waiting to be processed.

    Attributes:
        event_id: Delivery identifier (X-GitHub-Delivery header)
        event_type: Raw event name (X-GitHub-Event header)
        hook_id: Provider hook identifier (X-GitHub-Hook-ID header)
        repository: Repository full name, if the payload carries one
        repository_github_id: Provider repository ID, if present
        timestamp: Time the delivery was received
        payload: Decoded JSON payload
    """

    event_id: str = Field(..., description="X-GitHub-Delivery header")
    event_type: str = Field(..., description="X-GitHub-Event header")
    hook_id: Optional[str] = Field(default=None, description="X-GitHub-Hook-ID header")
    repository: Optional[str] = Field(default=None, description="owner/repo")
    repository_github_id: Optional[int] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    payload: Dict[str, Any] = Field(default_factory=dict)

    processed: bool = False
    processing_error: Optional[str] = None

    @field_validator("timestamp")
    @classmethod
    def _ensure_timezone(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @classmethod
    def from_delivery(
        cls,
        *,
        event_id: str,
        event_type: str,
        hook_id: Optional[str],
        payload: Dict[str, Any],
    ) -> "WebhookEvent":
        repository = payload.get("repository") or {}
        github_id = repository.get("id")
        return cls(
            event_id=event_id,
            event_type=event_type,
            hook_id=hook_id,
            repository=repository.get("full_name"),
            repository_github_id=github_id if isinstance(github_id, int) else None,
            payload=payload,
        )

    @property
    def known_type(self) -> Optional[WebhookEventType]:
        try:
            return WebhookEventType(self.event_type)
        except ValueError:
            return None

    def mark_processed(self) -> None:
        self.processed = True
        self.processing_error = None

    def mark_failed(self, error: str) -> None:
        self.processed = True
        self.processing_error = error


__all__ = [
    "CRITICAL_EVENT_TYPES",
    "WebhookEvent",
    "WebhookEventType",
]
