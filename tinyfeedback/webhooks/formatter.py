"""Outbound payload rendering for generic, Slack and Discord destinations.

The destination type is chosen once from the webhook URL; each variant
renders a JSON object and the exact body string that gets signed and sent.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum
from typing import Any

SLACK_HOST = "hooks.slack.com"
DISCORD_PATHS = ("discord.com/api/webhooks", "discordapp.com/api/webhooks")

SLACK_TEXT_LIMIT = 200
DISCORD_DESCRIPTION_LIMIT = 500

FOOTER = "TinyFeedback"

TYPE_LABELS = {
    "nps": "⭐ NPS Score",
    "suggestion": "💡 Suggestion",
    "bug": "🐛 Bug Report",
}

EVENT_LABELS = {
    "feedback.created": "🆕 New Feedback",
    "feedback.updated": "📝 Feedback Updated",
}

# 24-bit RGB per feedback type
TYPE_COLORS = {
    "nps": 0x00FF88,
    "suggestion": 0x4488FF,
    "bug": 0xFF4444,
}
DEFAULT_COLOR = 0x888888


class DestinationType(StrEnum):
    """Kinds of webhook receivers."""

    GENERIC = "generic"
    SLACK = "slack"
    DISCORD = "discord"


@dataclass(frozen=True)
class FormattedPayload:
    """A rendered webhook request.

    `body` is what gets signed and sent; `payload` is the same content as a
    JSON object, persisted for audit.
    """

    destination: DestinationType
    body: str
    payload: dict[str, Any]


def detect_destination(url: str) -> DestinationType:
    """Classify a webhook URL."""
    if SLACK_HOST in url:
        return DestinationType.SLACK
    if any(path in url for path in DISCORD_PATHS):
        return DestinationType.DISCORD
    return DestinationType.GENERIC


def _truncate(text: str | None, limit: int) -> str:
    if not text:
        return ""
    if len(text) > limit:
        return f"{text[:limit]}..."
    return text


def _type_label(feedback_type: Any) -> str:
    return TYPE_LABELS.get(feedback_type, str(feedback_type))


def _event_label(event: str) -> str:
    return EVENT_LABELS.get(event, event)


def _color(feedback_type: Any) -> int:
    return TYPE_COLORS.get(feedback_type, DEFAULT_COLOR)


def render_generic(event: str, data: dict[str, Any], now: datetime) -> dict[str, Any]:
    """Standard envelope, compatible with any receiver."""
    return {
        "event": event,
        "timestamp": now.isoformat(),
        "data": data,
    }


def render_slack(
    event: str,
    data: dict[str, Any],
    now: datetime,
    include_user_email: bool = True,
) -> dict[str, Any]:
    """Slack incoming-webhook attachment."""
    feedback_type = data.get("type")
    nps_score = data.get("nps_score")
    page_url = data.get("page_url")
    user_email = data.get("user_email")

    fields: list[dict[str, Any]] = [
        {"title": "Type", "value": _type_label(feedback_type), "short": True},
        {"title": "Status", "value": _event_label(event), "short": True},
    ]
    if nps_score is not None:
        fields.append({"title": "NPS Score", "value": f"{nps_score}/10", "short": True})
    if page_url:
        fields.append({"title": "Page", "value": page_url, "short": False})
    if user_email and include_user_email:
        fields.append({"title": "User", "value": user_email, "short": False})

    return {
        "attachments": [
            {
                "color": f"#{_color(feedback_type):06x}",
                "title": _event_label(event),
                "text": _truncate(data.get("content"), SLACK_TEXT_LIMIT),
                "fields": fields,
                "footer": FOOTER,
                "ts": int(now.timestamp()),
            }
        ]
    }


def render_discord(
    event: str,
    data: dict[str, Any],
    now: datetime,
    include_user_email: bool = True,
) -> dict[str, Any]:
    """Discord webhook embed."""
    feedback_type = data.get("type")
    nps_score = data.get("nps_score")
    page_url = data.get("page_url")
    user_email = data.get("user_email")
    feedback_id = str(data.get("id") or "")

    fields: list[dict[str, Any]] = [
        {"name": "Type", "value": _type_label(feedback_type), "inline": True},
        {"name": "Project", "value": data.get("project_name") or "N/A", "inline": True},
    ]
    if nps_score is not None:
        fields.append({"name": "NPS Score", "value": f"{nps_score}/10", "inline": True})
    if page_url:
        fields.append({"name": "Page", "value": page_url, "inline": False})
    if user_email and include_user_email:
        fields.append({"name": "User", "value": user_email, "inline": False})

    return {
        "embeds": [
            {
                "title": _event_label(event),
                "description": _truncate(data.get("content"), DISCORD_DESCRIPTION_LIMIT),
                "color": _color(feedback_type),
                "fields": fields,
                "footer": {"text": f"{FOOTER} • ID: {feedback_id[:8]}"},
                "timestamp": now.isoformat(),
            }
        ]
    }


def format_payload(
    url: str,
    event: str,
    data: dict[str, Any],
    *,
    now: datetime,
    include_user_email: bool = True,
) -> FormattedPayload:
    """
    Render the outbound request for a webhook URL.

    Args:
        url: Destination URL, used to pick the variant
        event: Event type (e.g., "feedback.created")
        data: Feedback event data
        now: Render time for envelope and footer timestamps
        include_user_email: Forward user_email to chat destinations

    Returns:
        FormattedPayload with the body to sign and the object to persist
    """
    destination = detect_destination(url)

    if destination is DestinationType.SLACK:
        payload = render_slack(event, data, now, include_user_email)
    elif destination is DestinationType.DISCORD:
        payload = render_discord(event, data, now, include_user_email)
    else:
        payload = render_generic(event, data, now)

    return FormattedPayload(
        destination=destination,
        body=json.dumps(payload),
        payload=payload,
    )
