"""Webhook delivery: platform payloads posted with bounded retries."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

import httpx
from loguru import logger

from reportbot.core.channels.base import (
    Platform,
    as_metadata,
    build_generic_payload,
    detect_platform,
)
from reportbot.core.channels.discord import build_discord_payload
from reportbot.core.channels.slack import build_slack_payload
from reportbot.core.config.schema import DeliveryConfig
from reportbot.core.errors import DeliveryError
from reportbot.memory.models import WebhookMetadata


@dataclass
class DeliveryResult:
    """Outcome of ``WebhookDelivery.deliver``. Truthy iff a 2xx was received."""

    delivered: bool
    attempts: int
    status_code: int | None = None
    platform: Platform = Platform.GENERIC
    error: str | None = None

    def __bool__(self) -> bool:
        return self.delivered


class WebhookDelivery:
    """Sends report content to a webhook URL.

    Failures never raise: after ``max_retries`` retries (waiting
    ``backoff_base ** attempt`` seconds between attempts) the result is
    simply not delivered, so callers can record it and carry on.
    """

    def __init__(
        self,
        config: DeliveryConfig | None = None,
        client: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.config = config or DeliveryConfig()
        self._client = client
        self._sleep = sleep

    def build_payload(
        self,
        url: str,
        content: str,
        metadata: WebhookMetadata | dict[str, Any] | None = None,
    ) -> tuple[Platform, dict[str, Any]]:
        platform = detect_platform(url)
        meta = as_metadata(metadata)
        if platform is Platform.SLACK:
            payload = build_slack_payload(content, meta, max_chars=self.config.slack_max_chars)
        elif platform is Platform.DISCORD:
            payload = build_discord_payload(
                content,
                meta,
                max_chars=self.config.discord_max_chars,
                hard_truncate_at=self.config.discord_hard_truncate_at,
                link_warning_threshold=self.config.link_warning_threshold,
            )
        else:
            payload = build_generic_payload(content, meta)
        return platform, payload

    async def deliver(
        self,
        url: str,
        content: str,
        metadata: WebhookMetadata | dict[str, Any] | None = None,
    ) -> DeliveryResult:
        platform, payload = self.build_payload(url, content, metadata)
        max_attempts = self.config.max_retries + 1
        last_status: int | None = None
        last_error: str | None = None

        for attempt in range(1, max_attempts + 1):
            try:
                last_status = await self._post(url, payload)
                logger.info(f"Webhook sent to {platform.value} destination (attempt {attempt})")
                return DeliveryResult(True, attempt, last_status, platform)
            except DeliveryError as e:
                last_status = e.status_code
                last_error = str(e)
            except httpx.HTTPError as e:
                last_error = f"{type(e).__name__}: {e}"
            logger.error(f"Webhook attempt {attempt} failed for {platform.value} destination: {last_error}")

            if attempt < max_attempts:
                await self._sleep(self.config.backoff_base ** attempt)

        logger.error(f"All {max_attempts} webhook attempts failed for {platform.value} destination")
        return DeliveryResult(False, max_attempts, last_status, platform, last_error)

    async def _post(self, url: str, payload: dict[str, Any]) -> int:
        """POST once; return the status code or raise DeliveryError for non-2xx."""
        headers = {
            "Content-Type": "application/json",
            "User-Agent": self.config.user_agent,
        }
        timeout = httpx.Timeout(self.config.timeout_s)
        if self._client is not None:
            resp = await self._client.post(url, json=payload, headers=headers, timeout=timeout)
        else:
            async with httpx.AsyncClient(timeout=timeout) as client:
                resp = await client.post(url, json=payload, headers=headers)

        if not resp.is_success:
            raise DeliveryError(
                f"HTTP {resp.status_code}: {resp.text[:200]}", status_code=resp.status_code
            )
        return resp.status_code
