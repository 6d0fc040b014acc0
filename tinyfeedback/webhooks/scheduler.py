"""Retry sweep for pending webhook deliveries."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING

from redis.exceptions import RedisError

from tinyfeedback.webhooks.backoff import calculate_backoff_delay
from tinyfeedback.webhooks.config import WebhookSettings
from tinyfeedback.webhooks.dispatcher import utcnow
from tinyfeedback.webhooks.models import DeliveryStatus, Webhook, WebhookDeliveryLog
from tinyfeedback.webhooks.sender import WebhookSender
from tinyfeedback.webhooks.signer import WebhookSigner
from tinyfeedback.webhooks.store import DeliveryLogStore, WebhookStore

if TYPE_CHECKING:
    from tinyfeedback.valkey import SweepLock

logger = logging.getLogger(__name__)

WEBHOOK_NOT_FOUND = "Webhook configuration not found"
WEBHOOK_INACTIVE = "Webhook is inactive"
ATTEMPTS_EXHAUSTED = "Maximum delivery attempts reached"


@dataclass
class SweepResult:
    """Aggregate outcome of one sweep."""

    processed: int = 0
    success_count: int = 0
    failure_count: int = 0
    skipped: bool = False


class RetryScheduler:
    """Re-sends due deliveries using their persisted body and signature."""

    def __init__(
        self,
        webhook_store: WebhookStore,
        log_store: DeliveryLogStore,
        sender: WebhookSender,
        settings: WebhookSettings,
        clock: Callable[[], datetime] = utcnow,
        lock: SweepLock | None = None,
    ):
        self._webhooks = webhook_store
        self._logs = log_store
        self._sender = sender
        self._settings = settings
        self._clock = clock
        self._lock = lock
        self._sweep_guard = asyncio.Lock()
        self._running = False
        self._task: asyncio.Task | None = None

    async def run_sweep(self) -> SweepResult:
        """
        Process every delivery currently due for retry.

        Returns a skipped result if another sweep holds the in-process guard
        or the shared lock. If Valkey is unreachable the sweep runs under the
        in-process guard alone.
        """
        if self._sweep_guard.locked():
            logger.info("Retry sweep already running, skipping")
            return SweepResult(skipped=True)

        async with self._sweep_guard:
            holds_shared_lock = False
            if self._lock is not None:
                try:
                    holds_shared_lock = await self._lock.acquire()
                except (RedisError, OSError) as e:
                    logger.warning("Retry sweep lock unavailable, sweeping without it: %s", e)
                else:
                    if not holds_shared_lock:
                        logger.info("Retry sweep lock held by another instance, skipping")
                        return SweepResult(skipped=True)
            try:
                return await self._sweep()
            finally:
                if holds_shared_lock:
                    await self._release_shared_lock()

    async def _release_shared_lock(self) -> None:
        try:
            await self._lock.release()  # type: ignore[union-attr]
        except (RedisError, OSError) as e:
            # The key expires on its own after the lock TTL
            logger.warning("Failed to release retry sweep lock: %s", e)

    async def _sweep(self) -> SweepResult:
        now = self._clock()
        entries = await self._logs.find_due_for_retry(self._settings.retry_batch_size, now)
        if not entries:
            logger.debug("No pending webhooks to retry")
            return SweepResult()

        logger.info("Found %d pending webhook deliveries to retry", len(entries))

        webhook_ids = {entry.webhook_id for entry in entries}
        webhooks = {w.id: w for w in await self._webhooks.find_by_ids(webhook_ids)}

        outcomes = await asyncio.gather(
            *(self._retry_entry(entry, webhooks.get(entry.webhook_id)) for entry in entries),
            return_exceptions=True,
        )

        result = SweepResult(processed=len(entries))
        for entry, outcome in zip(entries, outcomes, strict=True):
            if isinstance(outcome, BaseException):
                logger.error("Retry of delivery %s failed: %s", entry.id, outcome)
                result.failure_count += 1
            elif outcome:
                result.success_count += 1
            else:
                result.failure_count += 1

        logger.info(
            "Retry sweep completed: %d processed, %d delivered, %d failed",
            result.processed,
            result.success_count,
            result.failure_count,
        )
        return result

    async def _retry_entry(self, entry: WebhookDeliveryLog, webhook: Webhook | None) -> bool:
        """Retry one entry. Returns True if it is now delivered."""
        if webhook is None:
            logger.error("Webhook %s not found for delivery %s", entry.webhook_id, entry.id)
            await self._fail_terminally(entry, WEBHOOK_NOT_FOUND)
            return False

        if not webhook.is_active:
            logger.info("Webhook %s is inactive, failing delivery %s", webhook.id, entry.id)
            await self._fail_terminally(entry, WEBHOOK_INACTIVE)
            return False

        if entry.attempt_count >= entry.max_attempts:
            # The outcome of the last attempt was never recorded
            logger.warning("Delivery %s has no attempts left, failing it", entry.id)
            await self._fail_terminally(entry, ATTEMPTS_EXHAUSTED)
            return False

        headers = WebhookSigner.get_headers(entry.signature, entry.event_type, str(webhook.id))
        result = await self._sender.send(webhook.url, entry.body, headers)
        attempt_count = entry.attempt_count + 1
        now = self._clock()

        if result.success:
            status = DeliveryStatus.DELIVERED
            await self._logs.update(
                entry.id,
                status=status,
                http_status_code=result.http_status,
                response_body=result.response_body,
                error_message=None,
                attempt_count=attempt_count,
                latency_ms=result.latency_ms,
                next_retry_at=None,
                delivered_at=now,
            )
            logger.info("Delivery %s succeeded on attempt %d", entry.id, attempt_count)
        elif attempt_count >= entry.max_attempts:
            status = DeliveryStatus.FAILED
            await self._logs.update(
                entry.id,
                status=status,
                http_status_code=result.http_status,
                response_body=result.response_body,
                error_message=result.error_message,
                attempt_count=attempt_count,
                latency_ms=result.latency_ms,
                next_retry_at=None,
            )
            logger.warning(
                "Delivery %s failed after %d attempts: %s",
                entry.id,
                attempt_count,
                result.error_message,
            )
        else:
            status = DeliveryStatus.PENDING
            delay = calculate_backoff_delay(
                attempt_count,
                self._settings.retry_base_delay_seconds,
                self._settings.retry_max_delay_seconds,
            )
            await self._logs.update(
                entry.id,
                status=status,
                http_status_code=result.http_status,
                response_body=result.response_body,
                error_message=result.error_message,
                attempt_count=attempt_count,
                latency_ms=result.latency_ms,
                next_retry_at=now + delay,
            )
            logger.info(
                "Delivery %s failed (%s), retry %d scheduled in %ds",
                entry.id,
                result.error_message,
                attempt_count,
                int(delay.total_seconds()),
            )

        try:
            await self._webhooks.record_delivery(webhook.id, status, retried=True)
        except Exception as e:
            logger.warning("Failed to record delivery status on webhook %s: %s", webhook.id, e)

        return result.success

    async def _fail_terminally(self, entry: WebhookDeliveryLog, reason: str) -> None:
        await self._logs.update(
            entry.id,
            status=DeliveryStatus.FAILED,
            error_message=reason,
            next_retry_at=None,
        )

    async def start(self) -> None:
        """Start sweeping every `sweep_interval_seconds`."""
        if self._settings.sweep_interval_seconds <= 0:
            logger.info("Retry sweep loop disabled (sweep_interval_seconds=0)")
            return
        if self._running:
            logger.warning("RetryScheduler is already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._sweep_loop())
        logger.info("RetryScheduler started (interval: %ds)", self._settings.sweep_interval_seconds)

    async def stop(self) -> None:
        """Stop the sweep loop."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("RetryScheduler stopped")

    async def _sweep_loop(self) -> None:
        while self._running:
            try:
                await self.run_sweep()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Error in retry sweep loop: %s", e)
            await asyncio.sleep(self._settings.sweep_interval_seconds)
