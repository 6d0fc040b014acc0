"""Webhook Pydantic schemas."""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field, field_validator

from tinyfeedback.webhooks.event import FeedbackType, WebhookEventType


class DispatchRequest(BaseModel):
    """Event raised by the feedback API after a successful write."""

    event: WebhookEventType = Field(..., description="feedback.created or feedback.updated")
    project_id: str = Field(..., min_length=1, description="Project owning the feedback")
    data: dict[str, Any] = Field(..., description="Feedback payload; must include 'type'")

    @field_validator("data")
    @classmethod
    def check_feedback_type(cls, value: dict[str, Any]) -> dict[str, Any]:
        if value.get("type") not in {t.value for t in FeedbackType}:
            raise ValueError("data.type must be one of: nps, suggestion, bug")
        return value


class DispatchResponse(BaseModel):
    """Dispatch entry point result."""

    success: bool = Field(True, description="Always true for a completed dispatch")
    message: str = Field(..., description="Status message")
    success_count: int = Field(..., description="Webhooks delivered on the first attempt")
    failure_count: int = Field(..., description="Webhooks scheduled for retry or failed")


class RetrySweepResponse(BaseModel):
    """Retry sweep entry point result."""

    success: bool = Field(True, description="Always true for a completed sweep")
    message: str = Field(..., description="Status message")
    processed: int = Field(..., description="Due deliveries processed")
    success_count: int = Field(..., description="Deliveries delivered in this sweep")
    failure_count: int = Field(..., description="Deliveries that failed again")


class WebhookTestResponse(BaseModel):
    """Result of a one-off test delivery (nothing is logged or retried)."""

    success: bool = Field(..., description="True if the destination answered 2xx")
    status_code: int | None = Field(None, description="HTTP status returned by the destination")
    latency_ms: int | None = Field(None, description="Round-trip time of the request")
    response_body: str | None = Field(None, description="Captured response body")
    error: str | None = Field(None, description="Error message if the delivery failed")
    payload: dict[str, Any] = Field(..., description="Rendered payload as sent")


class ErrorResponse(BaseModel):
    """Entry point error body."""

    success: bool = Field(False)
    error: str = Field(..., description="Error description")


class WebhookDeliveryLogResponse(BaseModel):
    """Webhook delivery log entry response (signature omitted)."""

    id: UUID = Field(..., description="Delivery log ID")
    webhook_id: UUID = Field(..., description="Target webhook ID")
    event_type: str = Field(..., description="Event type (e.g., feedback.created)")
    payload: dict[str, Any] = Field(..., description="Rendered payload as sent")
    status: str = Field(..., description="Delivery status: pending, delivered, failed")
    http_status_code: int | None = Field(None, description="HTTP response status code")
    response_body: str | None = Field(None, description="Captured response body")
    error_message: str | None = Field(None, description="Error message if failed")
    attempt_count: int = Field(..., description="Number of delivery attempts")
    max_attempts: int = Field(..., description="Attempts allowed before terminal failure")
    next_retry_at: datetime | None = Field(None, description="When the next retry is due")
    latency_ms: int | None = Field(None, description="Latency of the latest attempt")
    delivered_at: datetime | None = Field(None, description="When delivery succeeded")
    created_at: datetime | None = Field(None, description="When delivery was created")


class WebhookDeliveryLogListResponse(BaseModel):
    """Paginated delivery history."""

    logs: list[WebhookDeliveryLogResponse]
    total: int = Field(..., description="Total entries matching the filter")
    limit: int
    offset: int
