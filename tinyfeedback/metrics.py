"""Prometheus metrics endpoint."""

from datetime import UTC, datetime

from fastapi import APIRouter, Depends
from fastapi.responses import PlainTextResponse
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from tinyfeedback.db.session import get_db
from tinyfeedback.webhooks.dependencies import get_log_store
from tinyfeedback.webhooks.models import DeliveryStatus, Webhook, WebhookDeliveryLog, WebhookStatus
from tinyfeedback.webhooks.store import DeliveryLogStore

router = APIRouter(tags=["metrics"])


@router.get("/metrics", response_class=PlainTextResponse)
async def metrics(
    db: AsyncSession = Depends(get_db),
    log_store: DeliveryLogStore = Depends(get_log_store),
):
    """Prometheus-compatible metrics endpoint."""

    metrics_output = []

    # Webhook configurations
    total_webhooks = await db.scalar(select(func.count()).select_from(Webhook))
    metrics_output.append(f"tinyfeedback_webhooks_total {total_webhooks or 0}")

    active_webhooks = await db.scalar(
        select(func.count()).select_from(Webhook).where(Webhook.status == WebhookStatus.ACTIVE.value)
    )
    metrics_output.append(f"tinyfeedback_webhooks_active {active_webhooks or 0}")

    # Deliveries by status
    for status, count in (await log_store.count_by_status()).items():
        metrics_output.append(f'tinyfeedback_webhook_deliveries{{status="{status}"}} {count}')

    # Retries waiting for the next sweep
    due_retries = await db.scalar(
        select(func.count())
        .select_from(WebhookDeliveryLog)
        .where(
            WebhookDeliveryLog.status == DeliveryStatus.PENDING.value,
            WebhookDeliveryLog.next_retry_at <= datetime.now(UTC),
        )
    )
    metrics_output.append(f"tinyfeedback_webhook_retries_due {due_retries or 0}")

    return "\n".join(metrics_output) + "\n"
