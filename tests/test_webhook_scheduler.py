"""Tests for RetryScheduler."""

import asyncio
import uuid
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, patch

import pytest
from redis.exceptions import ConnectionError as ValkeyConnectionError

from tinyfeedback.webhooks.config import WebhookSettings
from tinyfeedback.webhooks.dispatcher import WebhookDispatcher
from tinyfeedback.webhooks.event import WebhookEvent
from tinyfeedback.webhooks.exceptions import DeliveryStoreError
from tinyfeedback.webhooks.models import Webhook, WebhookStatus
from tinyfeedback.webhooks.scheduler import RetryScheduler

URL = "https://example.com/hook"
OTHER_URL = "https://other.example.com/hook"


def as_utc(value: datetime) -> datetime:
    """SQLite hands back naive datetimes."""
    return value if value.tzinfo else value.replace(tzinfo=UTC)


def feedback_event(project_id: str = "p1") -> WebhookEvent:
    return WebhookEvent(
        event_type="feedback.created",
        project_id=project_id,
        data={"id": "f-1", "type": "suggestion", "content": "Dark mode please"},
    )


async def only_entry(log_store, webhook):
    (entry,) = (await log_store.list_for_webhook(webhook.id))[0]
    return entry


class TestRetrySweep:
    @pytest.mark.asyncio
    async def test_nothing_due(self, retry_scheduler, destination):
        result = await retry_scheduler.run_sweep()

        assert result.processed == 0
        assert result.skipped is False
        assert destination.requests == []

    @pytest.mark.asyncio
    async def test_retry_succeeds_with_identical_request(
        self, dispatcher, retry_scheduler, destination, make_webhook, log_store, webhook_store, clock
    ):
        """Fail with 500, then deliver on the first retry with the same bytes."""
        webhook = await make_webhook(URL)
        destination.respond(URL, 500, 200)

        await dispatcher.dispatch(feedback_event())
        clock.advance(5)
        result = await retry_scheduler.run_sweep()

        assert result.processed == 1
        assert result.success_count == 1
        assert result.failure_count == 0

        first, second = destination.requests
        assert second.content == first.content
        assert second.headers["X-Webhook-Signature"] == first.headers["X-Webhook-Signature"]
        assert second.headers["X-Webhook-ID"] == str(webhook.id)

        entry = await only_entry(log_store, webhook)
        assert entry.status == "delivered"
        assert entry.attempt_count == 2
        assert entry.http_status_code == 200
        assert entry.error_message is None
        assert entry.next_retry_at is None
        assert as_utc(entry.delivered_at) == clock.now

        (stored,) = await webhook_store.find_by_ids([webhook.id])
        assert stored.retry_count == 1
        assert stored.last_delivery_status == "delivered"

    @pytest.mark.asyncio
    async def test_not_due_yet(self, dispatcher, retry_scheduler, destination, make_webhook, clock):
        await make_webhook(URL)
        destination.respond(URL, 500)

        await dispatcher.dispatch(feedback_event())
        clock.advance(4)
        result = await retry_scheduler.run_sweep()

        assert result.processed == 0
        assert len(destination.requests) == 1

    @pytest.mark.asyncio
    async def test_backoff_grows_between_retries(
        self, dispatcher, retry_scheduler, destination, make_webhook, log_store, clock
    ):
        webhook = await make_webhook(URL)
        destination.default_status = 500

        await dispatcher.dispatch(feedback_event())
        clock.advance(5)
        await retry_scheduler.run_sweep()

        entry = await only_entry(log_store, webhook)
        assert entry.status == "pending"
        assert entry.attempt_count == 2
        assert as_utc(entry.next_retry_at) == clock.now + timedelta(seconds=10)

    @pytest.mark.asyncio
    async def test_fails_terminally_after_max_attempts(
        self, webhook_store, log_store, sender, destination, make_webhook, clock
    ):
        settings = WebhookSettings(max_attempts=3)
        dispatcher = WebhookDispatcher(webhook_store, log_store, sender, settings, clock=clock)
        scheduler = RetryScheduler(webhook_store, log_store, sender, settings, clock=clock)
        webhook = await make_webhook(URL)
        destination.default_status = 500

        await dispatcher.dispatch(feedback_event())
        for delay in (5, 10):
            clock.advance(delay)
            result = await scheduler.run_sweep()
            assert result.processed == 1

        entry = await only_entry(log_store, webhook)
        assert entry.status == "failed"
        assert entry.attempt_count == 3
        assert entry.next_retry_at is None
        assert entry.error_message == "HTTP 500"

        # Terminal entries are never picked up again
        clock.advance(3600)
        result = await scheduler.run_sweep()
        assert result.processed == 0
        assert len(destination.requests) == 3

    @pytest.mark.asyncio
    async def test_missing_webhook_fails_terminally(self, retry_scheduler, log_store, destination, clock):
        entry_id = await log_store.create(
            webhook_id=uuid.uuid4(),
            event_type="feedback.created",
            payload={"event": "feedback.created"},
            body='{"event": "feedback.created"}',
            signature="b" * 64,
            max_attempts=5,
        )
        await log_store.update(entry_id, next_retry_at=clock.now)

        result = await retry_scheduler.run_sweep()

        assert result.processed == 1
        assert result.failure_count == 1
        assert destination.requests == []
        entry = await log_store.get(entry_id)
        assert entry.status == "failed"
        assert entry.error_message == "Webhook configuration not found"
        assert entry.attempt_count == 1
        assert entry.next_retry_at is None

    @pytest.mark.asyncio
    async def test_inactive_webhook_fails_terminally(
        self, dispatcher, retry_scheduler, destination, make_webhook, log_store, session_factory, clock
    ):
        webhook = await make_webhook(URL)
        destination.respond(URL, 500)
        await dispatcher.dispatch(feedback_event())

        async with session_factory() as session:
            stored = await session.get(Webhook, webhook.id)
            stored.status = WebhookStatus.INACTIVE.value
            await session.commit()

        clock.advance(5)
        result = await retry_scheduler.run_sweep()

        assert result.failure_count == 1
        assert len(destination.requests) == 1
        entry = await only_entry(log_store, webhook)
        assert entry.status == "failed"
        assert entry.error_message == "Webhook is inactive"
        assert entry.attempt_count == 1

    @pytest.mark.asyncio
    async def test_entry_failure_isolated(
        self, dispatcher, retry_scheduler, destination, make_webhook, log_store, clock
    ):
        first = await make_webhook(URL)
        second = await make_webhook(OTHER_URL)
        destination.respond(URL, 500, 200)
        destination.respond(OTHER_URL, 500, 200)
        await dispatcher.dispatch(feedback_event())
        first_entry = await only_entry(log_store, first)
        original_update = log_store.update

        async def update(entry_id, **patch_values):
            if entry_id == first_entry.id:
                raise DeliveryStoreError("Failed to update delivery log: locked")
            return await original_update(entry_id, **patch_values)

        clock.advance(5)
        with patch.object(log_store, "update", side_effect=update):
            result = await retry_scheduler.run_sweep()

        assert result.processed == 2
        assert result.success_count == 1
        assert result.failure_count == 1
        assert (await only_entry(log_store, second)).status == "delivered"

    @pytest.mark.asyncio
    async def test_entry_without_attempts_left_fails_without_send(
        self, retry_scheduler, log_store, destination, make_webhook, clock
    ):
        """An entry whose last outcome was never written is not sent past max_attempts."""
        webhook = await make_webhook(URL)
        entry_id = await log_store.create(
            webhook_id=webhook.id,
            event_type="feedback.created",
            payload={"event": "feedback.created"},
            body='{"event": "feedback.created"}',
            signature="c" * 64,
            max_attempts=1,
            next_retry_at=clock.now,
        )

        result = await retry_scheduler.run_sweep()

        assert result.processed == 1
        assert result.failure_count == 1
        assert destination.requests == []
        entry = await log_store.get(entry_id)
        assert entry.status == "failed"
        assert entry.error_message == "Maximum delivery attempts reached"
        assert entry.attempt_count == 1
        assert entry.next_retry_at is None


class TestSweepSingleFlight:
    @pytest.mark.asyncio
    async def test_concurrent_sweep_skipped(self, retry_scheduler, log_store):
        started = asyncio.Event()
        release = asyncio.Event()

        async def slow_find(limit, now):
            started.set()
            await release.wait()
            return []

        with patch.object(log_store, "find_due_for_retry", side_effect=slow_find):
            first = asyncio.create_task(retry_scheduler.run_sweep())
            await started.wait()
            second = await retry_scheduler.run_sweep()
            release.set()
            first_result = await first

        assert second.skipped is True
        assert first_result.skipped is False

    @pytest.mark.asyncio
    async def test_shared_lock_held_elsewhere(self, webhook_store, log_store, sender, webhook_settings):
        lock = AsyncMock()
        lock.acquire = AsyncMock(return_value=False)
        scheduler = RetryScheduler(webhook_store, log_store, sender, webhook_settings, lock=lock)

        result = await scheduler.run_sweep()

        assert result.skipped is True
        lock.release.assert_not_called()

    @pytest.mark.asyncio
    async def test_shared_lock_released(self, webhook_store, log_store, sender, webhook_settings):
        lock = AsyncMock()
        lock.acquire = AsyncMock(return_value=True)
        scheduler = RetryScheduler(webhook_store, log_store, sender, webhook_settings, lock=lock)

        result = await scheduler.run_sweep()

        assert result.skipped is False
        lock.release.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_sweeps_when_valkey_unreachable(
        self, dispatcher, webhook_store, log_store, sender, webhook_settings, destination, make_webhook, clock
    ):
        webhook = await make_webhook(URL)
        destination.respond(URL, 500, 200)
        await dispatcher.dispatch(feedback_event())
        lock = AsyncMock()
        lock.acquire = AsyncMock(
            side_effect=ValkeyConnectionError("Error 111 connecting to valkey:6379. Connection refused.")
        )
        scheduler = RetryScheduler(webhook_store, log_store, sender, webhook_settings, clock=clock, lock=lock)

        clock.advance(5)
        result = await scheduler.run_sweep()

        assert result.skipped is False
        assert result.processed == 1
        assert result.success_count == 1
        assert len(destination.requests) == 2
        assert (await only_entry(log_store, webhook)).status == "delivered"
        lock.release.assert_not_called()

    @pytest.mark.asyncio
    async def test_release_error_does_not_fail_sweep(self, webhook_store, log_store, sender, webhook_settings):
        lock = AsyncMock()
        lock.acquire = AsyncMock(return_value=True)
        lock.release = AsyncMock(side_effect=ValkeyConnectionError("Connection closed by server."))
        scheduler = RetryScheduler(webhook_store, log_store, sender, webhook_settings, lock=lock)

        result = await scheduler.run_sweep()

        assert result.skipped is False
        lock.release.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_in_process_guard_still_applies_without_valkey(self, retry_scheduler, log_store):
        started = asyncio.Event()
        release = asyncio.Event()
        retry_scheduler._lock = AsyncMock()
        retry_scheduler._lock.acquire = AsyncMock(side_effect=ValkeyConnectionError("Connection refused."))

        async def slow_find(limit, now):
            started.set()
            await release.wait()
            return []

        with patch.object(log_store, "find_due_for_retry", side_effect=slow_find):
            first = asyncio.create_task(retry_scheduler.run_sweep())
            await started.wait()
            second = await retry_scheduler.run_sweep()
            release.set()
            await first

        assert second.skipped is True


class TestSweepLoop:
    @pytest.mark.asyncio
    async def test_disabled_when_interval_zero(self, webhook_store, log_store, sender):
        scheduler = RetryScheduler(webhook_store, log_store, sender, WebhookSettings(sweep_interval_seconds=0))

        await scheduler.start()

        assert scheduler._task is None

    @pytest.mark.asyncio
    async def test_start_and_stop(self, retry_scheduler):
        with patch.object(retry_scheduler, "run_sweep", AsyncMock()) as run_sweep:
            await retry_scheduler.start()
            await asyncio.sleep(0.01)
            await retry_scheduler.stop()

        run_sweep.assert_awaited()
        assert retry_scheduler._task is None
