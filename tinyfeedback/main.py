"""TinyFeedback Webhooks - Main application."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from tinyfeedback import __version__
from tinyfeedback.config import get_settings
from tinyfeedback.metrics import router as metrics_router
from tinyfeedback.valkey import close_valkey
from tinyfeedback.webhooks.config import WebhookConfigLoader
from tinyfeedback.webhooks.dependencies import get_dispatcher, get_retry_scheduler
from tinyfeedback.webhooks.exceptions import WebhookError
from tinyfeedback.webhooks.router import router as webhooks_router
from tinyfeedback.webhooks.worker import DispatchWorker

settings = get_settings()

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan - startup and shutdown."""
    # Invalid webhook settings are fatal at startup
    WebhookConfigLoader.load()

    worker: DispatchWorker | None = None
    scheduler = None
    if settings.WEBHOOK_WORKERS_ENABLED and not settings.TESTING:
        worker = DispatchWorker(get_dispatcher())
        await worker.start()
        scheduler = get_retry_scheduler()
        await scheduler.start()

    yield

    # Cleanup on shutdown
    if scheduler is not None:
        await scheduler.stop()
    if worker is not None:
        await worker.stop()
    await close_valkey()


app = FastAPI(
    title="TinyFeedback Webhooks",
    description="""
## Webhook Delivery API

Delivers TinyFeedback events to project webhooks (generic JSON, Slack, Discord).

### Delivery

- 🔏 **Signed** - `X-Webhook-Signature: sha256=<HMAC-SHA256 of the raw body>`
- 🔄 **Retries** - Exponential backoff (5s doubling, capped at 1 hour), 5 attempts by default
- 📜 **Audit** - Every delivery chain is logged with status, response and timing

### Verifying a delivery

Recompute HMAC-SHA256 over the raw request body with your webhook secret and
compare it to the hex digest after `sha256=` using a constant-time comparison.
    """,
    version=__version__,
    lifespan=lifespan,
)


@app.exception_handler(WebhookError)
async def webhook_error_handler(request: Request, exc: WebhookError):
    if exc.status_code >= 500:
        logger.error("Webhook entry point failed: %s", exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_response())


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    if errors:
        first = errors[0]
        location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = f"{location}: {first.get('msg')}" if location else str(first.get("msg"))
    else:
        message = "Invalid request"
    return JSONResponse(status_code=400, content={"success": False, "error": message})


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"success": False, "error": "Internal server error"})


# Routes - all under /api/v1
API_PREFIX = "/api/v1"
app.include_router(webhooks_router, prefix=API_PREFIX)

# Metrics at root level (for Prometheus scraping)
app.include_router(metrics_router)


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "TinyFeedback Webhooks",
        "version": __version__,
        "docs": "/docs",
    }


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "healthy"}
