"""Webhook delivery API router."""

import hmac
import uuid
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Response

from tinyfeedback.config import get_settings
from tinyfeedback.webhooks.config import WebhookSettings
from tinyfeedback.webhooks.dependencies import (
    get_dispatcher,
    get_log_store,
    get_retry_scheduler,
    get_sender,
    get_webhook_settings,
    get_webhook_store,
)
from tinyfeedback.webhooks.dispatcher import WebhookDispatcher, utcnow
from tinyfeedback.webhooks.event import FeedbackType, WebhookEvent, WebhookEventType
from tinyfeedback.webhooks.formatter import format_payload
from tinyfeedback.webhooks.models import DeliveryStatus
from tinyfeedback.webhooks.scheduler import RetryScheduler
from tinyfeedback.webhooks.schemas import (
    DispatchRequest,
    DispatchResponse,
    ErrorResponse,
    RetrySweepResponse,
    WebhookDeliveryLogListResponse,
    WebhookDeliveryLogResponse,
    WebhookTestResponse,
)
from tinyfeedback.webhooks.sender import WebhookSender
from tinyfeedback.webhooks.signer import WebhookSigner
from tinyfeedback.webhooks.store import DeliveryLogStore, WebhookStore
from tinyfeedback.webhooks.validation import validate_webhook_url

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

ERROR_RESPONSES = {
    400: {"model": ErrorResponse},
    500: {"model": ErrorResponse},
}


def verify_cron_secret(authorization: str | None = Header(None)) -> None:
    """Require `Authorization: Bearer <CRON_SECRET>` when a secret is configured."""
    cron_secret = get_settings().CRON_SECRET
    if not cron_secret:
        return
    expected = f"Bearer {cron_secret}"
    if authorization is None or not hmac.compare_digest(authorization, expected):
        raise HTTPException(status_code=401, detail="Unauthorized")


@router.post("/dispatch", response_model=DispatchResponse, responses=ERROR_RESPONSES)
async def dispatch_event(
    request: DispatchRequest,
    dispatcher: WebhookDispatcher = Depends(get_dispatcher),
):
    """Deliver a feedback event to the project's subscribed webhooks.

    Delivery attempts are awaited; failed deliveries are scheduled for
    retry and reported in failure_count rather than as an error.
    """
    event = WebhookEvent(
        event_type=request.event.value,
        project_id=request.project_id,
        data=request.data,
    )
    result = await dispatcher.dispatch(event)

    if result.webhook_count == 0:
        message = "No webhooks to process"
    else:
        message = f"Processed {result.webhook_count} webhooks"

    return DispatchResponse(
        success=True,
        message=message,
        success_count=result.success_count,
        failure_count=result.failure_count,
    )


@router.post(
    "/retry",
    response_model=RetrySweepResponse,
    responses=ERROR_RESPONSES,
    dependencies=[Depends(verify_cron_secret)],
)
async def retry_pending(scheduler: RetryScheduler = Depends(get_retry_scheduler)):
    """Run one retry sweep over deliveries that are due.

    Intended to be called by an external scheduler (cron).
    """
    result = await scheduler.run_sweep()

    if result.skipped:
        message = "Retry sweep already in progress"
    elif result.processed == 0:
        message = "No pending webhooks to retry"
    else:
        message = f"Processed {result.processed} pending webhooks"

    return RetrySweepResponse(
        success=True,
        message=message,
        processed=result.processed,
        success_count=result.success_count,
        failure_count=result.failure_count,
    )


@router.get("/{webhook_id}/logs", response_model=WebhookDeliveryLogListResponse)
async def list_delivery_logs(
    webhook_id: uuid.UUID,
    status: DeliveryStatus | None = Query(None, description="Filter by delivery status"),
    limit: int = Query(50, ge=1, le=100, description="Maximum results"),
    offset: int = Query(0, ge=0, description="Results to skip"),
    log_store: DeliveryLogStore = Depends(get_log_store),
):
    """List delivery history for a webhook, newest first."""
    entries, total = await log_store.list_for_webhook(
        webhook_id,
        status=status,
        limit=limit,
        offset=offset,
    )

    return WebhookDeliveryLogListResponse(
        logs=[
            WebhookDeliveryLogResponse(
                id=e.id,
                webhook_id=e.webhook_id,
                event_type=e.event_type,
                payload=e.payload,
                status=e.status,
                http_status_code=e.http_status_code,
                response_body=e.response_body,
                error_message=e.error_message,
                attempt_count=e.attempt_count,
                max_attempts=e.max_attempts,
                next_retry_at=e.next_retry_at,
                latency_ms=e.latency_ms,
                delivered_at=e.delivered_at,
                created_at=e.created_at,
            )
            for e in entries
        ],
        total=total,
        limit=limit,
        offset=offset,
    )


def sample_feedback(project_id: str, now: datetime) -> dict[str, Any]:
    """Feedback record used for test deliveries."""
    timestamp = now.isoformat()
    return {
        "id": "test-feedback-id",
        "project_id": project_id,
        "project_name": "Test Project",
        "type": FeedbackType.SUGGESTION.value,
        "nps_score": None,
        "title": "Test Feedback",
        "content": "This is a test webhook payload from TinyFeedback.",
        "user_email": "test@example.com",
        "page_url": "https://example.com/test",
        "user_agent": "TinyFeedback Test/1.0",
        "status": "pending",
        "created_at": timestamp,
        "updated_at": timestamp,
    }


@router.post(
    "/{webhook_id}/test",
    response_model=WebhookTestResponse,
    responses={**ERROR_RESPONSES, 404: {"model": ErrorResponse}, 502: {"model": WebhookTestResponse}},
)
async def send_test_delivery(
    webhook_id: uuid.UUID,
    response: Response,
    webhook_store: WebhookStore = Depends(get_webhook_store),
    sender: WebhookSender = Depends(get_sender),
    settings: WebhookSettings = Depends(get_webhook_settings),
):
    """Send a sample feedback.created delivery to one webhook.

    The request is rendered and signed like a real delivery and carries
    `X-Webhook-Test: true`. Nothing is written to the delivery log. Returns
    502 when the destination could not be reached at all.
    """
    webhook = await webhook_store.get(webhook_id)
    if webhook is None:
        raise HTTPException(status_code=404, detail="Webhook not found")
    validate_webhook_url(webhook.url)

    event_type = WebhookEventType.FEEDBACK_CREATED.value
    now = utcnow()
    formatted = format_payload(
        webhook.url,
        event_type,
        sample_feedback(webhook.project_id, now),
        now=now,
        include_user_email=settings.forward_user_email,
    )
    signature = WebhookSigner.sign(webhook.secret, formatted.body)
    headers = WebhookSigner.get_headers(signature, event_type, str(webhook.id))
    headers["X-Webhook-Test"] = "true"

    result = await sender.send(webhook.url, formatted.body, headers)
    if result.http_status is None:
        response.status_code = 502

    return WebhookTestResponse(
        success=result.success,
        status_code=result.http_status,
        latency_ms=result.latency_ms,
        response_body=result.response_body,
        error=result.error_message,
        payload=formatted.payload,
    )
