"""FastAPI application factory."""

from __future__ import annotations

from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI
from loguru import logger

from reportbot import __version__
from reportbot.api.routes import router as core_router
from reportbot.core.config.loader import load_config
from reportbot.core.cron.scheduler import create_scheduler
from reportbot.memory.store import ReportStore


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup: Config → ReportStore → HTTP client → ReportScheduler. Shutdown: cleanup."""
    config = load_config()
    store = ReportStore(str(config.db_path))

    # One client for GitHub and webhook calls, closed on shutdown
    client = httpx.AsyncClient()
    scheduler = create_scheduler(config, store, client=client)
    await scheduler.start()

    app.state.config = config
    app.state.store = store
    app.state.scheduler = scheduler

    logger.info(f"ReportBot API started (model: {config.summarizer.model})")
    yield

    await scheduler.stop()
    await client.aclose()
    logger.info("ReportBot API shutting down")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="ReportBot API",
        description="Scheduled git activity reports delivered to chat webhooks",
        version=__version__,
        lifespan=lifespan,
    )
    app.include_router(core_router)
    return app


app = create_app()
