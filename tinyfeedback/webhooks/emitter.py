"""Webhook event emitter."""

from __future__ import annotations

import json
import logging
import os
from typing import Any

from tinyfeedback.valkey import get_valkey
from tinyfeedback.webhooks.event import WebhookEvent
from tinyfeedback.webhooks.exceptions import WebhookValidationError

logger = logging.getLogger(__name__)

# Queue key for webhook events
WEBHOOK_QUEUE_KEY = "webhook:events"


def _is_testing() -> bool:
    """Check if running in test environment."""
    return os.environ.get("TESTING") == "1"


class WebhookEmitter:
    """Queues feedback events for asynchronous dispatch.

    Producers call this after a successful feedback write; delivery
    latency and failures never reach them.
    """

    @staticmethod
    async def emit(event_type: str, project_id: str, data: dict[str, Any]) -> WebhookEvent | None:
        """
        Queue a webhook event for delivery.

        Args:
            event_type: The event type (e.g., "feedback.created")
            project_id: Project owning the feedback
            data: The feedback payload

        Returns:
            The queued WebhookEvent, or None if skipped or queueing failed
        """
        if _is_testing():
            logger.debug("Skipping webhook emission in test environment")
            return None

        event = WebhookEvent(event_type=event_type, project_id=project_id, data=data)
        try:
            event.validate()
        except WebhookValidationError as e:
            logger.warning("Not queueing invalid webhook event: %s", e.message)
            return None

        # Queue for async delivery
        try:
            client = await get_valkey()
            await client.rpush(
                WEBHOOK_QUEUE_KEY,
                json.dumps(event.to_payload()),
            )
            logger.info(
                "Queued webhook event %s (type: %s, project: %s)",
                event.event_id,
                event_type,
                project_id,
            )
        except Exception as e:
            logger.error("Failed to queue webhook event: %s", e)
            return None

        return event

    @staticmethod
    async def emit_feedback_event(event_type: str, feedback: dict[str, Any]) -> WebhookEvent | None:
        """
        Convenience method for feedback rows.

        Args:
            event_type: "feedback.created" or "feedback.updated"
            feedback: The feedback record; must carry project_id

        Returns:
            The queued WebhookEvent, or None if skipped
        """
        project_id = feedback.get("project_id")
        if not project_id:
            logger.warning("Feedback %s has no project_id, not queueing", feedback.get("id"))
            return None

        return await WebhookEmitter.emit(event_type, str(project_id), feedback)
