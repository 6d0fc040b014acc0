"""First-attempt delivery of an event to every subscribed webhook."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime

from tinyfeedback.webhooks.backoff import calculate_backoff_delay
from tinyfeedback.webhooks.config import WebhookSettings
from tinyfeedback.webhooks.event import WebhookEvent
from tinyfeedback.webhooks.formatter import format_payload
from tinyfeedback.webhooks.models import DeliveryStatus, Webhook
from tinyfeedback.webhooks.sender import WebhookSender
from tinyfeedback.webhooks.signer import WebhookSigner
from tinyfeedback.webhooks.store import DeliveryLogStore, WebhookStore

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass
class DispatchResult:
    """Aggregate outcome of one event fan-out."""

    webhook_count: int = 0
    success_count: int = 0
    failure_count: int = 0


class WebhookDispatcher:
    """Formats, signs, sends and logs the first attempt per webhook."""

    def __init__(
        self,
        webhook_store: WebhookStore,
        log_store: DeliveryLogStore,
        sender: WebhookSender,
        settings: WebhookSettings,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._webhooks = webhook_store
        self._logs = log_store
        self._sender = sender
        self._settings = settings
        self._clock = clock

    async def dispatch(self, event: WebhookEvent) -> DispatchResult:
        """
        Deliver an event to the project's active subscribed webhooks.

        Webhooks are processed concurrently; a failure of one (destination
        error or store error) never affects the others.

        Raises:
            WebhookValidationError: malformed event
            DeliveryStoreError: the webhook lookup itself failed
        """
        event.validate()

        webhooks = await self._webhooks.find_active_by_project_and_event(event.project_id, event.event_type)
        if not webhooks:
            logger.info(
                "No active webhooks for event %s (project: %s)",
                event.event_type,
                event.project_id,
            )
            return DispatchResult()

        logger.info(
            "Dispatching event %s (type: %s) to %d webhook(s)",
            event.event_id,
            event.event_type,
            len(webhooks),
        )

        outcomes = await asyncio.gather(
            *(self._deliver(event, webhook) for webhook in webhooks),
            return_exceptions=True,
        )

        result = DispatchResult(webhook_count=len(webhooks))
        for webhook, outcome in zip(webhooks, outcomes, strict=True):
            if isinstance(outcome, BaseException):
                logger.error("Webhook %s dispatch failed: %s", webhook.id, outcome)
                result.failure_count += 1
            elif outcome:
                result.success_count += 1
            else:
                result.failure_count += 1

        logger.info(
            "Event %s dispatched: %d delivered, %d failed",
            event.event_id,
            result.success_count,
            result.failure_count,
        )
        return result

    async def _deliver(self, event: WebhookEvent, webhook: Webhook) -> bool:
        """Run the first attempt for one webhook. Returns True on 2xx."""
        created_at = self._clock()
        formatted = format_payload(
            webhook.url,
            event.event_type,
            event.data,
            now=created_at,
            include_user_email=self._settings.forward_user_email,
        )
        signature = WebhookSigner.sign(webhook.secret, formatted.body)
        # A lost outcome write leaves the entry due for retry
        first_retry_delay = calculate_backoff_delay(
            1,
            self._settings.retry_base_delay_seconds,
            self._settings.retry_max_delay_seconds,
        )

        entry_id = await self._logs.create(
            webhook_id=webhook.id,
            event_type=event.event_type,
            payload=formatted.payload,
            body=formatted.body,
            signature=signature,
            max_attempts=self._settings.max_attempts,
            next_retry_at=created_at + first_retry_delay,
        )

        headers = WebhookSigner.get_headers(signature, event.event_type, str(webhook.id))
        result = await self._sender.send(webhook.url, formatted.body, headers)
        now = self._clock()

        if result.success:
            status = DeliveryStatus.DELIVERED
            await self._logs.update(
                entry_id,
                status=status,
                http_status_code=result.http_status,
                response_body=result.response_body,
                latency_ms=result.latency_ms,
                next_retry_at=None,
                delivered_at=now,
            )
            logger.info(
                "Webhook %s delivered (%s destination, status %s, %dms)",
                webhook.id,
                formatted.destination,
                result.http_status,
                result.latency_ms or 0,
            )
        elif self._settings.max_attempts <= 1:
            status = DeliveryStatus.FAILED
            await self._logs.update(
                entry_id,
                status=status,
                http_status_code=result.http_status,
                response_body=result.response_body,
                error_message=result.error_message,
                latency_ms=result.latency_ms,
                next_retry_at=None,
            )
            logger.warning("Webhook %s failed with no retries allowed: %s", webhook.id, result.error_message)
        else:
            status = DeliveryStatus.PENDING
            await self._logs.update(
                entry_id,
                status=status,
                http_status_code=result.http_status,
                response_body=result.response_body,
                error_message=result.error_message,
                latency_ms=result.latency_ms,
                next_retry_at=now + first_retry_delay,
            )
            logger.warning(
                "Webhook %s delivery failed (%s), retry scheduled in %ds",
                webhook.id,
                result.error_message,
                int(first_retry_delay.total_seconds()),
            )

        await self._record_webhook_status(webhook, status)
        return result.success

    async def _record_webhook_status(self, webhook: Webhook, status: DeliveryStatus) -> None:
        try:
            await self._webhooks.record_delivery(webhook.id, status)
        except Exception as e:
            logger.warning("Failed to record delivery status on webhook %s: %s", webhook.id, e)
