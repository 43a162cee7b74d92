"""Shared FastAPI dependencies injected into route handlers."""

from __future__ import annotations

import hmac
from typing import Annotated

from fastapi import Depends, Header, HTTPException, Request

from stepsync.config import Settings, get_settings
from stepsync.steps.container import SyncServices, build_sync_services
from stepsync.steps.store import PostgresStepStore
from stepsync.steps.sync.queue import JobQueue


def get_sync_services(request: Request) -> SyncServices:
    """Return the app-wide sync services built at startup.

    Built lazily when the lifespan did not run (e.g. a bare TestClient).
    """
    services: SyncServices | None = getattr(request.app.state, "sync_services", None)
    if services is None:
        services = build_sync_services(get_settings(), PostgresStepStore())
        request.app.state.sync_services = services
    return services


def get_job_queue(services: Annotated[SyncServices, Depends(get_sync_services)]) -> JobQueue:
    return services.queue


async def require_internal_token(
    settings: Annotated[Settings, Depends(get_settings)],
    x_internal_token: Annotated[str | None, Header(alias="X-Internal-Token")] = None,
) -> None:
    """Guard for operator endpoints. 503 when no token is configured, 401 on mismatch."""
    if not settings.internal_api_token:
        raise HTTPException(status_code=503, detail="Internal API is not configured")
    if not x_internal_token or not hmac.compare_digest(
        x_internal_token.encode(), settings.internal_api_token.encode()
    ):
        raise HTTPException(status_code=401, detail="Invalid internal token")


# Annotated shortcuts for route signatures
AppSettings = Annotated[Settings, Depends(get_settings)]
Services = Annotated[SyncServices, Depends(get_sync_services)]
Queue = Annotated[JobQueue, Depends(get_job_queue)]
