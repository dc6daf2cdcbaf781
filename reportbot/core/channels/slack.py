"""Slack incoming-webhook payloads: markdown → mrkdwn + Block Kit."""

from __future__ import annotations

import re
from typing import Any

from reportbot.core.channels.base import envelope

SLACK_MAX_CHARS = 4000
SECTION_MAX_CHARS = 3000  # Block Kit limit for a section's text
_TRUNCATION_SUFFIX = "..."


def md_to_slack(text: str) -> str:
    """Convert basic markdown to Slack mrkdwn.

    Handles: # headers, **bold**, ```code blocks```, [links](url), - bullets
    """
    blocks: list[str] = []

    def save_block(m: re.Match) -> str:
        blocks.append(m.group(1).strip("\n"))
        return f"%%CODEBLOCK{len(blocks) - 1}%%"

    # Drop language hints, keep code untouched by the rules below
    text = re.sub(r"```[\w+-]*\n?(.*?)```", save_block, text, flags=re.DOTALL)

    # Bold
    text = re.sub(r"\*\*(.+?)\*\*", r"*\1*", text)

    # Headers → bold line
    text = re.sub(
        r"^#{1,3} +(.+?)\s*#*$",
        lambda m: f"*{m.group(1).strip('*')}*",
        text,
        flags=re.MULTILINE,
    )

    # Links
    text = re.sub(r"\[([^\]]+)\]\(([^)\s]+)\)", r"<\2|\1>", text)

    # Bullets
    text = re.sub(r"^(\s*)[-*] +", r"\1• ", text, flags=re.MULTILINE)

    for i, block in enumerate(blocks):
        text = text.replace(f"%%CODEBLOCK{i}%%", f"```\n{block}\n```")

    return text


def truncate(text: str, limit: int = SLACK_MAX_CHARS) -> str:
    if len(text) <= limit:
        return text
    return text[: limit - len(_TRUNCATION_SUFFIX)] + _TRUNCATION_SUFFIX


def split_sections(text: str, max_length: int = SECTION_MAX_CHARS) -> list[str]:
    """Split text into section-sized chunks, preferring line boundaries."""
    chunks: list[str] = []
    while len(text) > max_length:
        cut = text.rfind("\n", 0, max_length)
        if cut <= 0:
            cut = max_length
        chunks.append(text[:cut])
        text = text[cut:].lstrip("\n")
    if text:
        chunks.append(text)
    return chunks


def context_block(metadata: dict[str, Any]) -> dict[str, Any] | None:
    """Repository / branch / commit-count summary, or None if none are known."""
    parts: list[str] = []
    repository = metadata.get("repository")
    if repository:
        name = repository.rstrip("/").removesuffix(".git").rsplit("/", 2)
        label = "/".join(name[-2:]) if len(name) >= 2 else repository
        parts.append(f"<{repository}|{label}>")
    if metadata.get("branch"):
        parts.append(f"`{metadata['branch']}`")
    if metadata.get("commitsCount") is not None:
        count = metadata["commitsCount"]
        parts.append(f"{count} {'commit' if count == 1 else 'commits'}")
    if not parts:
        return None
    return {
        "type": "context",
        "elements": [{"type": "mrkdwn", "text": " • ".join(parts)}],
    }


def build_slack_payload(
    content: str, metadata: dict[str, Any], max_chars: int = SLACK_MAX_CHARS
) -> dict[str, Any]:
    text = truncate(md_to_slack(content), max_chars)
    blocks: list[dict[str, Any]] = [
        {"type": "section", "text": {"type": "mrkdwn", "text": chunk}}
        for chunk in split_sections(text)
    ]
    ctx = context_block(metadata)
    if ctx:
        blocks.append({"type": "divider"})
        blocks.append(ctx)

    payload = envelope("text", text, metadata)
    payload["blocks"] = blocks
    return payload
