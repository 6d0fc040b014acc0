"""Wiring of webhook services for the API and background tasks."""

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tinyfeedback.db.session import async_session_maker
from tinyfeedback.valkey import SweepLock
from tinyfeedback.webhooks.config import WebhookConfigLoader, WebhookSettings
from tinyfeedback.webhooks.dispatcher import WebhookDispatcher
from tinyfeedback.webhooks.scheduler import RetryScheduler
from tinyfeedback.webhooks.sender import WebhookSender
from tinyfeedback.webhooks.store import DeliveryLogStore, WebhookStore

# Shared sweep lock TTL is the delivery timeout plus this margin; sends in a
# sweep run concurrently and the margin covers the store work around them
SWEEP_LOCK_MARGIN_SECONDS = 300

# Process-wide instances so the sweep guard is shared by the API and the loop
_dispatcher: WebhookDispatcher | None = None
_retry_scheduler: RetryScheduler | None = None


def get_webhook_settings() -> WebhookSettings:
    """Current webhook settings; raises WebhookConfigurationError if invalid."""
    return WebhookConfigLoader.get_settings()


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    return async_session_maker


def get_webhook_store() -> WebhookStore:
    return WebhookStore(get_session_factory())


def get_log_store() -> DeliveryLogStore:
    return DeliveryLogStore(get_session_factory())


def build_sender(settings: WebhookSettings) -> WebhookSender:
    return WebhookSender(
        timeout_seconds=settings.delivery_timeout_seconds,
        response_body_limit=settings.response_body_limit,
    )


def get_sender() -> WebhookSender:
    return build_sender(get_webhook_settings())


def build_dispatcher(
    settings: WebhookSettings,
    session_factory: async_sessionmaker[AsyncSession],
) -> WebhookDispatcher:
    return WebhookDispatcher(
        webhook_store=WebhookStore(session_factory),
        log_store=DeliveryLogStore(session_factory),
        sender=build_sender(settings),
        settings=settings,
    )


def build_retry_scheduler(
    settings: WebhookSettings,
    session_factory: async_sessionmaker[AsyncSession],
    use_shared_lock: bool = True,
) -> RetryScheduler:
    lock = None
    if use_shared_lock:
        lock = SweepLock(ttl_seconds=settings.delivery_timeout_seconds + SWEEP_LOCK_MARGIN_SECONDS)
    return RetryScheduler(
        webhook_store=WebhookStore(session_factory),
        log_store=DeliveryLogStore(session_factory),
        sender=build_sender(settings),
        settings=settings,
        lock=lock,
    )


def get_dispatcher() -> WebhookDispatcher:
    global _dispatcher
    if _dispatcher is None:
        _dispatcher = build_dispatcher(get_webhook_settings(), get_session_factory())
    return _dispatcher


def get_retry_scheduler() -> RetryScheduler:
    global _retry_scheduler
    if _retry_scheduler is None:
        _retry_scheduler = build_retry_scheduler(get_webhook_settings(), get_session_factory())
    return _retry_scheduler

