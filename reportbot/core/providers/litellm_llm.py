"""LiteLLM summarizer: commit list → markdown report with token/cost estimate."""

from __future__ import annotations

import os
from typing import Any

import litellm
from loguru import logger

from reportbot.core.config.schema import Config
from reportbot.core.providers.base import Summarizer
from reportbot.memory.models import Commit, StyleOptions, SummaryResult

litellm.suppress_debug_info = True

_STYLE_GUIDE = {
    "Summary": "Write a short executive summary (one paragraph and at most 5 bullets).",
    "Standard": (
        "Group changes under '## Features', '## Fixes' and '## Maintenance' headers. "
        "Use '- ' bullets, one per meaningful change."
    ),
    "Changelog": "Write a changelog: one '- ' bullet per commit, newest first.",
}


class LiteLLMSummarizer(Summarizer):
    """LiteLLM-backed summarizer.

    On LLM failure the raw commit list is returned with zero usage so a
    report can still be delivered.
    """

    def __init__(self, config: Config) -> None:
        self.settings = config.summarizer
        self.api_base = config.get_api_base(self.settings.model)
        self._setup_keys(config)

    async def summarize(
        self,
        commits: list[Commit],
        period: str,
        style: StyleOptions | None = None,
    ) -> SummaryResult:
        model = self.settings.model
        if not commits:
            return SummaryResult(text="No commits found for this period.", model=model)

        style = style or StyleOptions()
        limited = commits[: self.settings.max_commits]
        commit_lines = "\n".join(_commit_line(c, style) for c in limited)
        messages = [
            {"role": "system", "content": _system_prompt(period, style)},
            {"role": "user", "content": f"Commits ({len(limited)} of {len(commits)}):\n{commit_lines}"},
        ]

        kwargs: dict[str, Any] = {
            "model": model,
            "messages": messages,
            "temperature": self.settings.temperature,
            "max_tokens": self.settings.max_tokens,
        }
        if self.api_base:
            kwargs["api_base"] = self.api_base

        try:
            response = await litellm.acompletion(**kwargs)
        except Exception as e:
            logger.error(f"Commit summary failed: {e}")
            return SummaryResult(
                text=f"Failed to generate AI summary. Raw commits:\n\n{commit_lines}",
                model=model,
            )

        text = response.choices[0].message.content or ""
        tokens = getattr(response.usage, "total_tokens", 0) or 0
        return SummaryResult(
            text=text,
            tokens_used=tokens,
            cost_usd=self._cost(response),
            model=model,
        )

    @staticmethod
    def _cost(response: Any) -> float:
        try:
            return float(litellm.completion_cost(completion_response=response) or 0.0)
        except Exception as e:
            logger.debug(f"Cost estimate unavailable: {e}")
            return 0.0

    @staticmethod
    def _setup_keys(config: Config) -> None:
        """Set env vars for LiteLLM from config."""
        for env, val in [
            ("OPENAI_API_KEY", config.providers.openai.api_key),
            ("ANTHROPIC_API_KEY", config.providers.anthropic.api_key),
            ("OPENROUTER_API_KEY", config.providers.openrouter.api_key),
        ]:
            if val:
                os.environ.setdefault(env, val)


def _system_prompt(period: str, style: StyleOptions) -> str:
    guide = _STYLE_GUIDE.get(style.report_style, _STYLE_GUIDE["Standard"])
    rules = [
        f"You summarize git commits from the last {period} for a team chat channel.",
        guide,
        f"Tone: {style.tone}.",
        "Output markdown only. Do not invent changes that are not in the commits.",
    ]
    if not style.author_display:
        rules.append("Do not mention author names.")
    if style.link_to_commits and style.repository_url:
        rules.append(
            f"Link each change to its commit as [short sha]({style.repository_url}/commit/<sha>)."
        )
    return "\n".join(rules)


def _commit_line(commit: Commit, style: StyleOptions) -> str:
    subject = commit.message.strip().splitlines()[0] if commit.message.strip() else "(no message)"
    line = f"- {commit.sha[:7]} {subject}"
    if style.author_display and commit.author_name:
        line += f" ({commit.author_name})"
    return line
