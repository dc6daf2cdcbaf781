"""Pydantic data models: schedule configurations, runs, usage."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


# ════════════════════════════════════════════════════════════
# ENUMS
# ════════════════════════════════════════════════════════════


class RunStatus(str, Enum):
    """ReportRun lifecycle: running → success | failed (| cancelled)."""

    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ConfigStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"


# ════════════════════════════════════════════════════════════
# DOMAIN MODELS
# ════════════════════════════════════════════════════════════


class Repository(BaseModel):
    """Source repository a report is generated for."""

    id: str
    user_id: str
    url: str
    name: str = ""
    branch: str = "main"
    provider: str = "github"
    encrypted_access_token: str | None = None


class ScheduleConfiguration(BaseModel):
    """Report schedule: mirrors the report_configurations table."""

    id: str
    user_id: str
    repository_id: str
    branch: str = "main"
    name: str = ""
    schedule: str
    webhook_url: str
    enabled: bool = True
    last_run_at: datetime | None = None
    last_run_status: ConfigStatus | None = None
    last_report_content: str | None = None

    def snapshot(self) -> dict[str, Any]:
        """Configuration fields copied onto every run."""
        return {
            "schedule": self.schedule,
            "webhook_url": self.webhook_url,
            "name": self.name,
        }


class ReportRun(BaseModel):
    """One generation attempt: append-mostly audit record."""

    id: str
    user_id: str
    repository_id: str
    report_configuration_id: str | None = None
    started_at: datetime
    completed_at: datetime | None = None
    status: RunStatus = RunStatus.RUNNING
    configuration_snapshot: dict[str, Any] | None = None
    model_used: str | None = None
    tokens_used: int = 0
    cost_usd: float = 0.0
    commits_processed: int = 0
    commit_range_from: str | None = None
    commit_range_to: str | None = None
    report_content: str | None = None
    report_format: str = "markdown"
    error_message: str | None = None
    error_code: str | None = None
    webhook_delivered: bool = False
    webhook_delivery_attempts: int = 0
    webhook_last_attempt_at: datetime | None = None
    webhook_response_status: int | None = None


class MonthlyUsage(BaseModel):
    """Aggregate run counts for one user in one calendar month (UTC)."""

    user_id: str
    month: datetime
    total_runs: int = 0
    successful_runs: int = 0
    failed_runs: int = 0
    total_tokens: int = 0
    total_cost_usd: float = 0.0
    last_run_at: datetime | None = None


class RunOutcome(BaseModel):
    """Metrics written by RunLedger.mark_success."""

    tokens_used: int = 0
    cost_usd: float = 0.0
    commits_processed: int = 0
    commit_range_from: str | None = None
    commit_range_to: str | None = None
    report_content: str = ""


# ════════════════════════════════════════════════════════════
# COLLABORATOR DATA
# ════════════════════════════════════════════════════════════


class Commit(BaseModel):
    """A commit as returned by a commit source."""

    sha: str
    message: str
    author_name: str = ""
    author_email: str = ""
    authored_at: datetime | None = None
    author_login: str | None = None
    url: str | None = None


class SummaryResult(BaseModel):
    """Summarizer output."""

    text: str
    tokens_used: int = 0
    cost_usd: float = 0.0
    model: str = ""


class StyleOptions(BaseModel):
    """Report style passed to the summarizer."""

    report_style: str = "Standard"
    tone: str = "Professional"
    author_display: bool = True
    link_to_commits: bool = False
    repository_url: str | None = None


class DateRange(BaseModel):
    since: datetime
    until: datetime

    def to_payload(self) -> dict[str, str]:
        return {"since": self.since.isoformat(), "until": self.until.isoformat()}


class WebhookMetadata(BaseModel):
    """Metadata merged into every webhook payload (camelCase on the wire)."""

    repository: str | None = None
    branch: str | None = None
    commits_count: int | None = Field(default=None, serialization_alias="commitsCount")
    date_range: DateRange | None = Field(default=None, serialization_alias="dateRange")
    is_test: bool = Field(default=False, serialization_alias="isTest")
    is_manual: bool = Field(default=False, serialization_alias="isManual")
    provider: str | None = None

    def to_payload(self) -> dict[str, Any]:
        data = self.model_dump(by_alias=True, exclude_none=True, exclude={"date_range"})
        if self.date_range is not None:
            data["dateRange"] = self.date_range.to_payload()
        return data


# ════════════════════════════════════════════════════════════
# API MODELS
# ════════════════════════════════════════════════════════════


class HealthResponse(BaseModel):
    status: str
    scheduler_running: bool
    version: str = ""


class ManualRunRequest(BaseModel):
    user_id: str
    since: datetime
    until: datetime | None = None


class WebhookTestRequest(BaseModel):
    user_id: str
