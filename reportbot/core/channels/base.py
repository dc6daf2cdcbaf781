"""Channel base: destination platform detection and the common payload envelope."""

from __future__ import annotations

from enum import Enum
from typing import Any
from urllib.parse import urlparse

from reportbot.core.utils import utcnow
from reportbot.memory.models import WebhookMetadata

SLACK_HOST_MARKER = "hooks.slack.com"
DISCORD_PATH_MARKER = "/api/webhooks/"
_DISCORD_HOSTS = ("discord.com", "discordapp.com")


class Platform(str, Enum):
    SLACK = "slack"
    DISCORD = "discord"
    GENERIC = "generic"


def detect_platform(url: str) -> Platform:
    """Classify a webhook URL by string match only (no network request)."""
    parsed = urlparse(url or "")
    host = (parsed.hostname or "").lower()
    if host == SLACK_HOST_MARKER or host.endswith("." + SLACK_HOST_MARKER):
        return Platform.SLACK
    if DISCORD_PATH_MARKER in parsed.path and any(
        host == h or host.endswith("." + h) for h in _DISCORD_HOSTS
    ):
        return Platform.DISCORD
    return Platform.GENERIC


def as_metadata(metadata: WebhookMetadata | dict[str, Any] | None) -> dict[str, Any]:
    """Wire-format metadata dict from a model, a plain dict, or None."""
    if metadata is None:
        return {}
    if isinstance(metadata, WebhookMetadata):
        return metadata.to_payload()
    return {k: v for k, v in metadata.items() if v is not None}


def envelope(content_key: str, content: str, metadata: dict[str, Any]) -> dict[str, Any]:
    """``{<content_key>: content, timestamp, ...metadata}``."""
    return {
        content_key: content,
        "timestamp": utcnow().isoformat(),
        **metadata,
    }


def build_generic_payload(content: str, metadata: dict[str, Any]) -> dict[str, Any]:
    """Unknown destination contract: content passes through unmodified."""
    return envelope("content", content, metadata)
