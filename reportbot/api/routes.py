"""API routes: health, scheduler control and per-configuration actions."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from loguru import logger

from reportbot import __version__
from reportbot.api.deps import get_scheduler
from reportbot.core.cron.scheduler import ReportScheduler
from reportbot.core.cron.types import (
    ProcessOutcome,
    SchedulerStats,
    TickStats,
    WebhookTestOutcome,
)
from reportbot.core.errors import ReportBotError
from reportbot.core.utils import ensure_utc, utcnow
from reportbot.memory.models import HealthResponse, ManualRunRequest, WebhookTestRequest

router = APIRouter()

_NOT_FOUND_CODES = frozenset({"CONFIGURATION_NOT_FOUND", "REPOSITORY_NOT_FOUND"})


def _http_error(e: ReportBotError) -> HTTPException:
    status = 404 if e.code in _NOT_FOUND_CODES else 400
    return HTTPException(status_code=status, detail={"code": e.code, "message": str(e)})


@router.get("/health", response_model=HealthResponse)
async def health(scheduler: ReportScheduler = Depends(get_scheduler)):
    """Health check."""
    return HealthResponse(
        status="ok", scheduler_running=scheduler.running, version=__version__
    )


@router.get("/scheduler/stats", response_model=SchedulerStats)
async def scheduler_stats(scheduler: ReportScheduler = Depends(get_scheduler)):
    return scheduler.stats()


@router.post("/scheduler/tick", response_model=TickStats)
async def trigger_tick(scheduler: ReportScheduler = Depends(get_scheduler)):
    """Run one scheduler pass now. Skipped if a tick is already running."""
    logger.info("Manual scheduler tick requested")
    return await scheduler.tick()


@router.post("/configurations/{config_id}/run", response_model=ProcessOutcome)
async def run_configuration(
    config_id: str,
    body: ManualRunRequest,
    scheduler: ReportScheduler = Depends(get_scheduler),
):
    """Generate and deliver a report for ``[since, until]`` regardless of schedule."""
    until = ensure_utc(body.until) if body.until else utcnow()
    since = ensure_utc(body.since)
    if since >= until:
        raise HTTPException(status_code=422, detail="'since' must be before 'until'")
    try:
        return await scheduler.run_configuration(config_id, body.user_id, since, until)
    except ReportBotError as e:
        raise _http_error(e)


@router.post("/configurations/{config_id}/test", response_model=WebhookTestOutcome)
async def test_configuration(
    config_id: str,
    body: WebhookTestRequest,
    scheduler: ReportScheduler = Depends(get_scheduler),
):
    """Send a test report for the last 7 days. No run is recorded."""
    try:
        return await scheduler.test_configuration(config_id, body.user_id)
    except ReportBotError as e:
        logger.warning(f"Test delivery for config {config_id} failed: [{e.code}] {e}")
        raise _http_error(e)
