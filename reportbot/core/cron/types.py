"""Scheduler types."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel

from reportbot.memory.models import ScheduleConfiguration


class DueConfiguration(BaseModel):
    """A configuration selected for processing, with its resolved timezone."""

    configuration: ScheduleConfiguration
    timezone: str = "UTC"
    next_run_at: datetime | None = None


class TickStats(BaseModel):
    """Outcome of one scheduler tick."""

    started_at: datetime
    due: int = 0
    processed: int = 0
    successful: int = 0
    failed: int = 0
    skipped: bool = False  # another tick was still running


class SchedulerStats(BaseModel):
    """Cumulative counters for health monitoring."""

    last_tick_at: datetime | None = None
    total_processed: int = 0
    successful_runs: int = 0
    failed_runs: int = 0
    is_running: bool = False
    in_flight: int = 0


class ProcessOutcome(BaseModel):
    """Result of processing one configuration."""

    configuration_id: str
    run_id: str | None = None  # None when no run was created (gate denial, busy, store error)
    success: bool = False
    delivered: bool | None = None
    error_code: str | None = None


class WebhookTestOutcome(BaseModel):
    """Result of a test delivery (no run recorded)."""

    success: bool
    message: str
    commits_found: int = 0
    webhook_sent: bool = False
    attempts: int = 0
    since: datetime | None = None
    until: datetime | None = None
