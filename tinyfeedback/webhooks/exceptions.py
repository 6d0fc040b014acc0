"""Webhook delivery exceptions."""

from __future__ import annotations


class WebhookError(Exception):
    """Base exception for webhook delivery errors."""

    status_code: int = 500

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)

    def to_response(self) -> dict[str, object]:
        """Convert exception to the entry-point error body."""
        return {"success": False, "error": self.message}


class WebhookConfigurationError(WebhookError):
    """Webhook settings are missing or invalid.

    Fatal for the entry point that hits it; never retried.
    """


class WebhookValidationError(WebhookError):
    """Malformed dispatch input or webhook URL."""

    status_code = 400


class DeliveryStoreError(WebhookError):
    """Delivery log or webhook configuration persistence failed."""
