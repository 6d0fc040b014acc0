"""Webhook delivery: signing, formatting, dispatch and retries."""

from tinyfeedback.webhooks.backoff import calculate_backoff_delay
from tinyfeedback.webhooks.dispatcher import DispatchResult, WebhookDispatcher
from tinyfeedback.webhooks.emitter import WebhookEmitter
from tinyfeedback.webhooks.event import FeedbackType, WebhookEvent, WebhookEventType
from tinyfeedback.webhooks.formatter import DestinationType, FormattedPayload, detect_destination, format_payload
from tinyfeedback.webhooks.scheduler import RetryScheduler, SweepResult
from tinyfeedback.webhooks.signer import WebhookSigner

__all__ = [
    "DestinationType",
    "DispatchResult",
    "FeedbackType",
    "FormattedPayload",
    "RetryScheduler",
    "SweepResult",
    "WebhookDispatcher",
    "WebhookEmitter",
    "WebhookEvent",
    "WebhookEventType",
    "WebhookSigner",
    "calculate_backoff_delay",
    "detect_destination",
    "format_payload",
]
