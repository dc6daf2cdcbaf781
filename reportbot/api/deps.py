"""FastAPI dependency injection: pull singletons from app.state."""

from __future__ import annotations

from fastapi import Request

from reportbot.core.cron.scheduler import ReportScheduler


def get_scheduler(request: Request) -> ReportScheduler:
    """Get ReportScheduler singleton from app state."""
    return request.app.state.scheduler
