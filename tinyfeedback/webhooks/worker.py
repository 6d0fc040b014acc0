"""Background worker draining the webhook event queue."""

from __future__ import annotations

import asyncio
import json
import logging

from tinyfeedback.valkey import get_valkey
from tinyfeedback.webhooks.dispatcher import DispatchResult, WebhookDispatcher
from tinyfeedback.webhooks.emitter import WEBHOOK_QUEUE_KEY
from tinyfeedback.webhooks.event import WebhookEvent
from tinyfeedback.webhooks.exceptions import DeliveryStoreError, WebhookError

logger = logging.getLogger(__name__)


class DispatchWorker:
    """Pops queued events and hands them to the dispatcher."""

    def __init__(self, dispatcher: WebhookDispatcher):
        """
        Initialize the worker.

        Args:
            dispatcher: Dispatcher used for each queued event
        """
        self._dispatcher = dispatcher
        self._running = False
        self._task: asyncio.Task | None = None

    async def start(self) -> None:
        """Start processing events."""
        if self._running:
            logger.warning("DispatchWorker is already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._process_loop())
        logger.info("DispatchWorker started")

    async def stop(self) -> None:
        """Stop processing events."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("DispatchWorker stopped")

    async def _process_loop(self) -> None:
        """Main processing loop."""
        while self._running:
            try:
                await self._process_next_event()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Error in dispatch worker loop: %s", e)
                await asyncio.sleep(1)  # Back off on error

    async def _process_next_event(self) -> DispatchResult | None:
        """Process the next event from the queue.

        Events rejected as invalid are dropped. On a store error the event is
        pushed back onto the queue and the error propagates to the loop, which
        backs off before the next pop.
        """
        client = await get_valkey()

        # Blocking pop with timeout (1 second)
        result = await client.blpop(WEBHOOK_QUEUE_KEY, timeout=1)
        if not result:
            return None

        _, event_json = result

        try:
            payload = json.loads(event_json)
            event = WebhookEvent.from_payload(payload)
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            logger.error("Failed to parse webhook event: %s", e)
            return None

        try:
            return await self._dispatcher.dispatch(event)
        except DeliveryStoreError as e:
            # The webhook lookup failed before any delivery was attempted
            logger.warning("Re-queueing webhook event %s: %s", event.event_id, e.message)
            await client.rpush(WEBHOOK_QUEUE_KEY, event_json)
            raise
        except WebhookError as e:
            logger.error("Dropping webhook event %s: %s", event.event_id, e.message)
            return None
