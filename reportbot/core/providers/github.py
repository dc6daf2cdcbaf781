"""GitHub commit source: REST v3 via httpx."""

from __future__ import annotations

from datetime import datetime
from typing import Any
from urllib.parse import urlparse

import httpx
from loguru import logger

from reportbot import __version__
from reportbot.core.config.schema import GitHubConfig
from reportbot.core.errors import (
    SourceError,
    SourceNotFound,
    SourceRateLimited,
    SourceUnauthorized,
)
from reportbot.core.providers.base import CommitSource
from reportbot.core.utils import to_db
from reportbot.memory.models import Commit


def parse_repository_url(url: str) -> tuple[str, str]:
    """``https://github.com/owner/repo(.git)`` → ``(owner, repo)``."""
    parts = [p for p in urlparse(url).path.split("/") if p]
    if len(parts) < 2:
        raise SourceNotFound(f"Invalid GitHub URL format: {url}")
    return parts[0], parts[1].removesuffix(".git")


class GitHubCommitSource(CommitSource):
    """Fetch up to ``per_page`` commits of a branch since a timestamp."""

    def __init__(self, config: GitHubConfig | None = None, client: httpx.AsyncClient | None = None):
        self.config = config or GitHubConfig()
        self._client = client

    async def fetch_commits(
        self,
        repository_url: str,
        branch: str,
        credential: str | None,
        since: datetime,
        until: datetime | None = None,
    ) -> list[Commit]:
        owner, repo = parse_repository_url(repository_url)
        api_url = f"{self.config.api_base.rstrip('/')}/repos/{owner}/{repo}/commits"
        params: dict[str, Any] = {
            "sha": branch,
            "per_page": self.config.per_page,
            "since": to_db(since),
        }
        if until is not None:
            params["until"] = to_db(until)
        headers = {
            "Accept": "application/vnd.github.v3+json",
            "User-Agent": f"reportbot/{__version__}",
        }
        if credential:
            headers["Authorization"] = f"token {credential}"

        try:
            if self._client is not None:
                resp = await self._client.get(api_url, params=params, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=httpx.Timeout(self.config.timeout_s)) as client:
                    resp = await client.get(api_url, params=params, headers=headers)
        except httpx.HTTPError as e:
            raise SourceError(f"Failed to fetch commits from GitHub: {e}") from e

        _raise_for_status(resp, f"{owner}/{repo}")
        commits = [_to_commit(item) for item in resp.json()]
        logger.debug(f"GitHub: {len(commits)} commits for {owner}/{repo}@{branch}")
        return commits


def _raise_for_status(resp: httpx.Response, repo: str) -> None:
    if resp.is_success:
        return
    status = resp.status_code
    if status == 401:
        raise SourceUnauthorized(f"Invalid GitHub token for {repo}")
    if status == 404:
        raise SourceNotFound(f"Repository not found: {repo}")
    if status == 429 or (status == 403 and resp.headers.get("x-ratelimit-remaining") == "0"):
        retry_after = resp.headers.get("retry-after")
        raise SourceRateLimited(
            f"GitHub rate limit reached for {repo}",
            retry_after=int(retry_after) if retry_after and retry_after.isdigit() else None,
        )
    if status == 403:
        raise SourceUnauthorized(f"Access to {repo} forbidden")
    raise SourceError(f"Failed to fetch commits from GitHub (HTTP {status})")


def _to_commit(item: dict[str, Any]) -> Commit:
    commit = item.get("commit") or {}
    author = commit.get("author") or {}
    login = (item.get("author") or {}).get("login")
    return Commit(
        sha=item["sha"],
        message=commit.get("message", ""),
        author_name=author.get("name", ""),
        author_email=author.get("email", ""),
        authored_at=author.get("date"),
        author_login=login,
        url=item.get("html_url"),
    )
