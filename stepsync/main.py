"""StepSync API — FastAPI application entry point.

Run locally:
    uvicorn stepsync.main:app --reload --port 8000
"""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import httpx
from fastapi import FastAPI

from stepsync.config import get_settings
from stepsync.routers import health, internal, webhooks
from stepsync.services.database import close_pool, init_pool
from stepsync.steps.container import build_sync_services
from stepsync.steps.store import PostgresStepStore

# ---------- Logging ----------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    stream=sys.stdout,
)
logger = logging.getLogger("stepsync")


# ---------- Lifespan ----------

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup / shutdown hooks."""
    settings = get_settings()
    logging.getLogger("stepsync").setLevel(settings.log_level.upper())
    logger.info(
        "Starting StepSync API v%s [%s]",
        settings.app_version,
        settings.environment,
    )
    await init_pool(settings)

    http_client = httpx.AsyncClient(timeout=settings.http_timeout_seconds)
    services = build_sync_services(settings, PostgresStepStore(), http_client=http_client)
    app.state.sync_services = services

    scheduler = None
    if settings.scheduler_enabled:
        scheduler = services.build_scheduler()
        scheduler.start()
    app.state.scheduler = scheduler

    yield

    if scheduler is not None:
        await scheduler.stop()
    await http_client.aclose()
    await close_pool()
    logger.info("StepSync API shut down")


# ---------- App factory ----------

def create_app() -> FastAPI:
    settings = get_settings()

    app = FastAPI(
        title="StepSync API",
        description=(
            "Fitbit step ingestion — webhook intake, retrying job queue, "
            "backfill, hourly polling and multi-source reconciliation."
        ),
        version=settings.app_version,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    # ---------- Health check (outside v1 prefix, always at /health) ----------
    app.include_router(health.router)

    # ---------- API v1 routes ----------
    v1_prefix = "/api/v1"

    app.include_router(webhooks.router, prefix=v1_prefix)
    app.include_router(internal.router, prefix=v1_prefix)

    return app


app = create_app()
