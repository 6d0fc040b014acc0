"""Webhook destination URL checks."""

from urllib.parse import urlparse

from tinyfeedback.webhooks.exceptions import WebhookValidationError

# Plain HTTP is accepted only for local receivers
LOCAL_HOSTS = frozenset({"localhost", "127.0.0.1", "::1"})


def validate_webhook_url(url: str) -> str:
    """
    Check that a webhook URL is usable as a delivery destination.

    HTTPS is required, except for localhost where HTTP is allowed.

    Returns:
        The URL unchanged

    Raises:
        WebhookValidationError: malformed URL, missing host or insecure scheme
    """
    if not isinstance(url, str) or not url.strip():
        raise WebhookValidationError("Webhook URL is required")

    try:
        parsed = urlparse(url.strip())
        host = parsed.hostname
        parsed.port  # raises ValueError for a malformed port
    except ValueError as e:
        raise WebhookValidationError(f"Invalid webhook URL: {e}") from e

    if parsed.scheme not in ("http", "https") or not host:
        raise WebhookValidationError(f"Invalid webhook URL: {url}")

    if parsed.scheme == "http" and host not in LOCAL_HOSTS:
        raise WebhookValidationError(f"Webhook URL must use HTTPS: {url}")

    return url
