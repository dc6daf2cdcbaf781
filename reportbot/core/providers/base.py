"""Collaborator interfaces: commit source + summarizer (strategy pattern)."""

from __future__ import annotations

import abc
from datetime import datetime

from reportbot.memory.models import Commit, StyleOptions, SummaryResult


class CommitSource(abc.ABC):
    """Returns commits for a repository branch since a given instant.

    Implementations raise SourceUnauthorized / SourceNotFound /
    SourceRateLimited so the scheduler can classify failures.
    """

    @abc.abstractmethod
    async def fetch_commits(
        self,
        repository_url: str,
        branch: str,
        credential: str | None,
        since: datetime,
        until: datetime | None = None,
    ) -> list[Commit]:
        ...


class Summarizer(abc.ABC):
    """Turns commits into report text plus a token/cost estimate."""

    @abc.abstractmethod
    async def summarize(
        self,
        commits: list[Commit],
        period: str,
        style: StyleOptions | None = None,
    ) -> SummaryResult:
        ...
