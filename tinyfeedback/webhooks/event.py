"""Webhook event data model."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from tinyfeedback.webhooks.exceptions import WebhookValidationError


class WebhookEventType(StrEnum):
    """Events a webhook can subscribe to."""

    FEEDBACK_CREATED = "feedback.created"
    FEEDBACK_UPDATED = "feedback.updated"


class FeedbackType(StrEnum):
    """Feedback kinds carried in event data."""

    NPS = "nps"
    SUGGESTION = "suggestion"
    BUG = "bug"


@dataclass
class WebhookEvent:
    """Represents a feedback event to be delivered to a project's webhooks."""

    event_type: str
    project_id: str
    data: dict[str, Any]
    event_id: uuid.UUID = field(default_factory=uuid.uuid4)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def validate(self) -> None:
        """Reject events the dispatcher cannot deliver."""
        if self.event_type not in {e.value for e in WebhookEventType}:
            raise WebhookValidationError(f"Unsupported event type: {self.event_type}")
        if not self.project_id:
            raise WebhookValidationError("Missing required field: project_id")
        if not isinstance(self.data, dict):
            raise WebhookValidationError("Missing required field: data")
        feedback_type = self.data.get("type")
        if feedback_type not in {t.value for t in FeedbackType}:
            raise WebhookValidationError(f"Invalid feedback type: {feedback_type!r}")

    def to_payload(self) -> dict[str, Any]:
        """Convert to JSON-serializable payload."""
        return {
            "event_id": str(self.event_id),
            "event_type": self.event_type,
            "project_id": self.project_id,
            "timestamp": self.timestamp.isoformat(),
            "data": self.data,
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> WebhookEvent:
        """Create WebhookEvent from JSON payload."""
        return cls(
            event_id=uuid.UUID(payload["event_id"]),
            event_type=payload["event_type"],
            project_id=payload["project_id"],
            timestamp=datetime.fromisoformat(payload["timestamp"]),
            data=payload["data"],
        )
