"""Discord webhook payloads: markdown kept, 2000-character ceiling enforced.

Oversized reports degrade in three stages, re-checking length after each:
    1. strip link targets: ``[text](url)`` → ``text``
    2. drop whole lines from the end (header line kept) + shortened marker
    3. hard truncate + truncated marker
"""

from __future__ import annotations

import re
from typing import Any

from loguru import logger

from reportbot.core.channels.base import envelope

DISCORD_MAX_CHARS = 2000
HARD_TRUNCATE_AT = 1950
LINK_WARNING_THRESHOLD = 10
SHORTENED_MARKER = "\n\n*[Report shortened...]*"
TRUNCATED_MARKER = "\n\n*[Report truncated...]*"

_LINK_RE = re.compile(r"\[([^\]]+)\]\(([^)]+)\)")


def count_links(text: str) -> int:
    return len(_LINK_RE.findall(text))


def strip_link_targets(text: str) -> str:
    return _LINK_RE.sub(r"\1", text)


def fit_to_limit(
    content: str,
    limit: int = DISCORD_MAX_CHARS,
    hard_truncate_at: int = HARD_TRUNCATE_AT,
) -> str:
    """Return ``content`` unchanged if it fits, else the first stage that does."""
    if len(content) <= limit:
        return content

    # 1. Links
    text = strip_link_targets(content)
    if len(text) <= limit:
        logger.debug(f"Discord: link targets stripped ({len(content)} → {len(text)} chars)")
        return text

    # 2. Drop lines from the end, keeping the header line
    header, *body = text.split("\n")
    while body:
        body.pop()
        candidate = "\n".join([header, *body]).rstrip() + SHORTENED_MARKER
        if len(candidate) <= limit:
            logger.debug(f"Discord: report shortened to {len(candidate)} chars")
            return candidate

    # 3. Hard cut
    cut = min(hard_truncate_at, limit - len(TRUNCATED_MARKER))
    logger.debug(f"Discord: report hard-truncated at {cut} chars")
    return text[:cut] + TRUNCATED_MARKER


def build_discord_payload(
    content: str,
    metadata: dict[str, Any],
    max_chars: int = DISCORD_MAX_CHARS,
    hard_truncate_at: int = HARD_TRUNCATE_AT,
    link_warning_threshold: int = LINK_WARNING_THRESHOLD,
) -> dict[str, Any]:
    links = count_links(content)
    if links > link_warning_threshold:
        logger.warning(
            f"Discord message contains {links} links; many links can make delivery unreliable"
        )
    return envelope("content", fit_to_limit(content, max_chars, hard_truncate_at), metadata)
