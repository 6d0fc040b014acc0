"""Persistence for webhook configurations and delivery logs.

Every call opens its own session from the factory, so concurrent delivery
tasks never share one. Writes are single-row updates by primary key.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tinyfeedback.webhooks.exceptions import DeliveryStoreError
from tinyfeedback.webhooks.models import (
    DeliveryStatus,
    Webhook,
    WebhookDeliveryLog,
    WebhookStatus,
)

logger = logging.getLogger(__name__)

# Columns the dispatcher and scheduler may change after creation
MUTABLE_LOG_FIELDS = frozenset(
    {
        "status",
        "http_status_code",
        "response_body",
        "error_message",
        "attempt_count",
        "next_retry_at",
        "delivered_at",
        "latency_ms",
    }
)


class _SessionScope:
    """Opens a session per operation and wraps database errors."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    @asynccontextmanager
    async def _session(self, operation: str) -> AsyncIterator[AsyncSession]:
        try:
            async with self._session_factory() as session:
                yield session
        except SQLAlchemyError as e:
            raise DeliveryStoreError(f"Failed to {operation}: {e}") from e


class WebhookStore(_SessionScope):
    """Read access to project webhook configurations."""

    async def find_active_by_project_and_event(self, project_id: str, event_type: str) -> list[Webhook]:
        """Active webhooks of a project that subscribe to an event."""
        async with self._session("load webhooks") as session:
            result = await session.execute(
                select(Webhook).where(
                    Webhook.project_id == project_id,
                    Webhook.status == WebhookStatus.ACTIVE.value,
                )
            )
            webhooks = result.scalars().all()

        # JSON containment differs per dialect; event lists are tiny
        return [w for w in webhooks if w.subscribes_to(event_type)]

    async def find_by_ids(self, webhook_ids: Iterable[uuid.UUID]) -> list[Webhook]:
        ids = list(webhook_ids)
        if not ids:
            return []
        async with self._session("load webhooks") as session:
            result = await session.execute(select(Webhook).where(Webhook.id.in_(ids)))
            return list(result.scalars().all())

    async def get(self, webhook_id: uuid.UUID) -> Webhook | None:
        async with self._session("load webhook") as session:
            return await session.get(Webhook, webhook_id)

    async def record_delivery(
        self,
        webhook_id: uuid.UUID,
        status: DeliveryStatus,
        *,
        retried: bool = False,
    ) -> None:
        """Record the outcome of the latest attempt on the webhook row."""
        values: dict[str, Any] = {
            "last_triggered_at": datetime.now(UTC),
            "last_delivery_status": status.value,
        }
        if retried:
            values["retry_count"] = Webhook.retry_count + 1

        async with self._session("record webhook delivery") as session:
            await session.execute(update(Webhook).where(Webhook.id == webhook_id).values(**values))
            await session.commit()


class DeliveryLogStore(_SessionScope):
    """Durable record of delivery attempts; source of truth for retries."""

    async def create(
        self,
        *,
        webhook_id: uuid.UUID,
        event_type: str,
        payload: dict[str, Any],
        body: str,
        signature: str,
        max_attempts: int,
        next_retry_at: datetime | None = None,
    ) -> uuid.UUID:
        """Insert a pending entry for a first attempt and return its id."""
        entry_id = uuid.uuid4()
        entry = WebhookDeliveryLog(
            id=entry_id,
            webhook_id=webhook_id,
            event_type=event_type,
            payload=payload,
            body=body,
            signature=signature,
            status=DeliveryStatus.PENDING.value,
            attempt_count=1,
            max_attempts=max_attempts,
            next_retry_at=next_retry_at,
        )
        async with self._session("create delivery log") as session:
            session.add(entry)
            await session.commit()
        return entry_id

    async def update(self, entry_id: uuid.UUID, **patch: Any) -> None:
        """Apply an in-place update to one entry."""
        unknown = set(patch) - MUTABLE_LOG_FIELDS
        if unknown:
            raise ValueError(f"Cannot update delivery log fields: {', '.join(sorted(unknown))}")
        if isinstance(patch.get("status"), DeliveryStatus):
            patch["status"] = patch["status"].value

        async with self._session("update delivery log") as session:
            result = await session.execute(
                update(WebhookDeliveryLog).where(WebhookDeliveryLog.id == entry_id).values(**patch)
            )
            await session.commit()

        if result.rowcount == 0:
            raise DeliveryStoreError(f"Delivery log {entry_id} not found")

    async def get(self, entry_id: uuid.UUID) -> WebhookDeliveryLog | None:
        async with self._session("load delivery log") as session:
            return await session.get(WebhookDeliveryLog, entry_id)

    async def find_due_for_retry(self, limit: int, now: datetime) -> list[WebhookDeliveryLog]:
        """Pending entries whose retry time has passed, oldest due first."""
        async with self._session("load due deliveries") as session:
            result = await session.execute(
                select(WebhookDeliveryLog)
                .where(
                    WebhookDeliveryLog.status == DeliveryStatus.PENDING.value,
                    WebhookDeliveryLog.next_retry_at.is_not(None),
                    WebhookDeliveryLog.next_retry_at <= now,
                )
                .order_by(WebhookDeliveryLog.next_retry_at.asc())
                .limit(limit)
            )
            return list(result.scalars().all())

    async def list_for_webhook(
        self,
        webhook_id: uuid.UUID,
        *,
        status: DeliveryStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[WebhookDeliveryLog], int]:
        """Delivery history for one webhook, newest first, with total count."""
        conditions = [WebhookDeliveryLog.webhook_id == webhook_id]
        if status is not None:
            conditions.append(WebhookDeliveryLog.status == status.value)

        async with self._session("list delivery logs") as session:
            result = await session.execute(
                select(WebhookDeliveryLog)
                .where(*conditions)
                .order_by(WebhookDeliveryLog.created_at.desc(), WebhookDeliveryLog.id)
                .limit(limit)
                .offset(offset)
            )
            entries = list(result.scalars().all())
            total = await session.scalar(
                select(func.count()).select_from(WebhookDeliveryLog).where(*conditions)
            )

        return entries, total or 0

    async def count_by_status(self) -> dict[str, int]:
        async with self._session("count delivery logs") as session:
            result = await session.execute(
                select(WebhookDeliveryLog.status, func.count()).group_by(WebhookDeliveryLog.status)
            )
            counts = {status: count for status, count in result.all()}

        return {s.value: counts.get(s.value, 0) for s in DeliveryStatus}
