"""Webhook delivery settings loader."""

from __future__ import annotations

import logging
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any

import yaml

from tinyfeedback.webhooks.exceptions import WebhookConfigurationError

logger = logging.getLogger(__name__)

# Fixed configuration path
CONFIG_PATH = Path("config/webhooks.yaml")


@dataclass
class WebhookSettings:
    """Delivery and retry settings shared by the dispatcher and scheduler."""

    max_attempts: int = 5
    retry_base_delay_seconds: int = 5
    retry_max_delay_seconds: int = 3600
    delivery_timeout_seconds: int = 30
    retry_batch_size: int = 100
    response_body_limit: int = 10000
    sweep_interval_seconds: int = 60
    forward_user_email: bool = True

    def validate(self) -> None:
        """Raise WebhookConfigurationError for unusable values."""
        positive = (
            "max_attempts",
            "retry_base_delay_seconds",
            "retry_max_delay_seconds",
            "delivery_timeout_seconds",
            "retry_batch_size",
            "response_body_limit",
        )
        for name in positive:
            value = getattr(self, name)
            if not isinstance(value, int) or isinstance(value, bool) or value < 1:
                raise WebhookConfigurationError(f"Webhook setting '{name}' must be a positive integer")

        interval = self.sweep_interval_seconds
        if not isinstance(interval, int) or isinstance(interval, bool) or interval < 0:
            raise WebhookConfigurationError(
                "Webhook setting 'sweep_interval_seconds' must be a non-negative integer"
            )
        if self.retry_max_delay_seconds < self.retry_base_delay_seconds:
            raise WebhookConfigurationError(
                "Webhook setting 'retry_max_delay_seconds' must not be below 'retry_base_delay_seconds'"
            )
        if not isinstance(self.forward_user_email, bool):
            raise WebhookConfigurationError("Webhook setting 'forward_user_email' must be a boolean")


class WebhookConfigLoader:
    """Loads and caches webhook delivery settings."""

    _settings: WebhookSettings | None = None

    @classmethod
    def load(cls) -> WebhookSettings:
        """
        Load settings from config/webhooks.yaml.

        A missing file means defaults. An unparseable or invalid file raises
        WebhookConfigurationError.
        """
        if not CONFIG_PATH.exists():
            logger.info(
                "Webhook configuration not found at %s. Using defaults.",
                CONFIG_PATH,
            )
            cls._settings = WebhookSettings()
            return cls._settings

        try:
            with open(CONFIG_PATH) as f:
                raw_config = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise WebhookConfigurationError(f"Failed to parse {CONFIG_PATH}: {e}") from e
        if not isinstance(raw_config, dict):
            raise WebhookConfigurationError(f"{CONFIG_PATH} must contain a mapping")

        settings = cls._parse_settings(raw_config.get("settings") or {})
        settings.validate()
        cls._settings = settings

        logger.info(
            "Loaded webhook settings from %s (max_attempts=%d, timeout=%ds)",
            CONFIG_PATH,
            settings.max_attempts,
            settings.delivery_timeout_seconds,
        )
        return cls._settings

    @classmethod
    def reload(cls) -> WebhookSettings:
        """Reload configuration (for hot-reload)."""
        return cls.load()

    @classmethod
    def get_settings(cls) -> WebhookSettings:
        """Get current settings, loading if necessary."""
        if cls._settings is None:
            cls.load()
        return cls._settings  # type: ignore

    @classmethod
    def _parse_settings(cls, data: dict[str, Any]) -> WebhookSettings:
        """Build settings from the YAML mapping, ignoring unknown keys."""
        if not isinstance(data, dict):
            raise WebhookConfigurationError("Webhook 'settings' must be a mapping")

        known = {f.name for f in fields(WebhookSettings)}
        unknown = set(data) - known
        if unknown:
            logger.warning("Ignoring unknown webhook settings: %s", ", ".join(sorted(unknown)))

        return WebhookSettings(**{k: v for k, v in data.items() if k in known})
