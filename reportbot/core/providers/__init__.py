"""External collaborators: commit sources and summarizers."""

from reportbot.core.providers.base import CommitSource, Summarizer

__all__ = ["CommitSource", "Summarizer"]
