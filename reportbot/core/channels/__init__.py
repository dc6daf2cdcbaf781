"""Webhook channels: platform detection and delivery."""

from reportbot.core.channels.base import Platform, detect_platform
from reportbot.core.channels.webhook import DeliveryResult, WebhookDelivery

__all__ = ["DeliveryResult", "Platform", "WebhookDelivery", "detect_platform"]
