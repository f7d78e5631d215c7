"""mylife sync FastAPI application."""

from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI

from mylife_sync.config import settings, validate_settings
from mylife_sync.logging_config import get_logger, setup_logging
from mylife_sync.routers import sync
from mylife_sync.services.scheduler import start_scheduler, stop_scheduler
from mylife_sync.services.sync_orchestrator import build_orchestrator

setup_logging(
    log_format=settings.log_format,
    log_level=settings.log_level,
    service_name=settings.service_name,
)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    validate_settings(settings)

    app.state.orchestrator = None
    if settings.sync_enabled and not settings.testing:
        app.state.orchestrator = build_orchestrator(settings)
        start_scheduler(app.state.orchestrator)
    logger.info("mylife sync started", sync_enabled=settings.sync_enabled)

    yield

    logger.info("Shutting down mylife sync...")
    stop_scheduler()
    logger.info("mylife sync shutdown complete")


app = FastAPI(
    title="mylife sync",
    description="mylife pump cloud connector",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(sync.router)


@app.get("/")
async def root() -> dict[str, Any]:
    """Root endpoint."""
    return {
        "name": "mylife sync",
        "version": "0.1.0",
        "docs": "/docs",
    }
