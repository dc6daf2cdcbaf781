"""Configuration module."""

from reportbot.core.config.loader import load_config
from reportbot.core.config.schema import Config

__all__ = ["Config", "load_config"]
