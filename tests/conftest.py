"""Pytest configuration and fixtures."""

import os
import uuid
from collections.abc import AsyncGenerator
from datetime import UTC, datetime, timedelta

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

# Set test environment before importing app
os.environ["TESTING"] = "1"
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

from tinyfeedback.db.base import Base
from tinyfeedback.db.session import get_db
from tinyfeedback.main import app
from tinyfeedback.webhooks.config import WebhookSettings
from tinyfeedback.webhooks.dependencies import (
    get_dispatcher,
    get_log_store,
    get_retry_scheduler,
    get_sender,
    get_webhook_settings,
    get_webhook_store,
)
from tinyfeedback.webhooks.dispatcher import WebhookDispatcher
from tinyfeedback.webhooks.models import Webhook, WebhookStatus
from tinyfeedback.webhooks.scheduler import RetryScheduler
from tinyfeedback.webhooks.sender import WebhookSender
from tinyfeedback.webhooks.store import DeliveryLogStore, WebhookStore


class FakeClock:
    """Controllable replacement for datetime.now(UTC)."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeDestination:
    """Programmable receiver for outbound webhook requests.

    Outcomes are queued per URL: an int is returned as that HTTP status, an
    httpx exception class is raised. Unqueued requests get `default_status`.
    """

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.default_status = 200
        self._outcomes: dict[str, list] = {}

    def respond(self, url: str, *outcomes) -> None:
        self._outcomes.setdefault(url, []).extend(outcomes)

    def requests_to(self, url: str) -> list[httpx.Request]:
        return [r for r in self.requests if str(r.url) == url]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        queue = self._outcomes.get(str(request.url))
        outcome = queue.pop(0) if queue else self.default_status
        if isinstance(outcome, type) and issubclass(outcome, Exception):
            raise outcome("simulated failure", request=request)
        text = "ok" if 200 <= outcome < 300 else "error"
        return httpx.Response(outcome, text=text)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@pytest_asyncio.fixture
async def db_engine(tmp_path):
    """Create test database engine.

    File-backed so concurrent delivery tasks get their own connections.
    """
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
def session_factory(db_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create test database session."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 10, 19, 12, 0, 0, tzinfo=UTC))


@pytest.fixture
def destination() -> FakeDestination:
    return FakeDestination()


@pytest.fixture
def webhook_settings() -> WebhookSettings:
    return WebhookSettings()


@pytest.fixture
def webhook_store(session_factory) -> WebhookStore:
    return WebhookStore(session_factory)


@pytest.fixture
def log_store(session_factory) -> DeliveryLogStore:
    return DeliveryLogStore(session_factory)


@pytest.fixture
def sender(destination, webhook_settings) -> WebhookSender:
    return WebhookSender(
        timeout_seconds=webhook_settings.delivery_timeout_seconds,
        response_body_limit=webhook_settings.response_body_limit,
        transport=destination.transport,
    )


@pytest.fixture
def dispatcher(webhook_store, log_store, sender, webhook_settings, clock) -> WebhookDispatcher:
    return WebhookDispatcher(webhook_store, log_store, sender, webhook_settings, clock=clock)


@pytest.fixture
def retry_scheduler(webhook_store, log_store, sender, webhook_settings, clock) -> RetryScheduler:
    return RetryScheduler(webhook_store, log_store, sender, webhook_settings, clock=clock)


@pytest.fixture
def make_webhook(session_factory):
    """Insert a webhook row and return it."""

    async def _make_webhook(
        url: str = "https://example.com/hook",
        *,
        project_id: str = "p1",
        secret: str = "s3cr3t",
        events: list[str] | None = None,
        status: WebhookStatus = WebhookStatus.ACTIVE,
        name: str = "Test webhook",
    ) -> Webhook:
        webhook = Webhook(
            id=uuid.uuid4(),
            project_id=project_id,
            name=name,
            url=url,
            secret=secret,
            events=events if events is not None else ["feedback.created"],
            status=status.value,
        )
        async with session_factory() as session:
            session.add(webhook)
            await session.commit()
        return webhook

    return _make_webhook


@pytest_asyncio.fixture
async def client(
    db_session: AsyncSession,
    dispatcher: WebhookDispatcher,
    retry_scheduler: RetryScheduler,
    log_store: DeliveryLogStore,
    webhook_store: WebhookStore,
    sender: WebhookSender,
    webhook_settings: WebhookSettings,
) -> AsyncGenerator[AsyncClient, None]:
    """Create test HTTP client with test-scoped services."""

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_dispatcher] = lambda: dispatcher
    app.dependency_overrides[get_retry_scheduler] = lambda: retry_scheduler
    app.dependency_overrides[get_log_store] = lambda: log_store
    app.dependency_overrides[get_webhook_store] = lambda: webhook_store
    app.dependency_overrides[get_sender] = lambda: sender
    app.dependency_overrides[get_webhook_settings] = lambda: webhook_settings

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
