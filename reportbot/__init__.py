"""reportbot: scheduled commit reports delivered to chat webhooks."""

__version__ = "0.1.0"
