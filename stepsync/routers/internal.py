"""Operator endpoints for driving the sync pipeline by hand.

All routes require the ``X-Internal-Token`` header.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import asdict
from datetime import date, timedelta
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query

from stepsync.dependencies import Services, require_internal_token
from stepsync.models.base import ErrorDetail
from stepsync.models.sync import (
    BackfillNeededResponse,
    BackfillRequest,
    BackfillResponse,
    DailyTotalRead,
    LinkAccountRequest,
    LinkAccountResponse,
    PollResponse,
    QueueBatchResponse,
    QueueStatsResponse,
    ReconcileRequest,
    SubscriptionSyncResponse,
    UnlinkResponse,
)
from stepsync.steps.base import OAuthTokens, utc_now

router = APIRouter(
    prefix="/internal",
    tags=["internal"],
    dependencies=[Depends(require_internal_token)],
)
logger = logging.getLogger("stepsync.internal")


# ---------- Backfill / reconcile ----------

@router.post("/backfill", response_model=BackfillResponse)
async def run_backfill(body: BackfillRequest, services: Services) -> Any:
    result = await services.backfill.backfill(body.user_id, body.start_date, body.end_date)
    return BackfillResponse(
        user_id=result.user_id,
        missing_days=len(result.missing_dates),
        fetched_dates=result.fetched_dates,
        reconciled_dates=result.reconciled_dates,
        chunks_total=result.chunks_total,
        chunks_failed=result.chunks_failed,
        errors=result.errors,
    )


@router.get(
    "/backfill/needed",
    response_model=BackfillNeededResponse,
    responses={400: {"model": ErrorDetail}},
)
async def backfill_needed(
    services: Services,
    user_id: uuid.UUID,
    start_date: date,
    end_date: date,
) -> Any:
    if start_date > end_date:
        raise HTTPException(status_code=400, detail="start_date must be on or before end_date")
    needed = await services.backfill.needs_backfill(user_id, start_date, end_date)
    return BackfillNeededResponse(
        user_id=user_id, start_date=start_date, end_date=end_date, needs_backfill=needed
    )


@router.post("/reconcile", response_model=list[DailyTotalRead])
async def reconcile(body: ReconcileRequest, services: Services) -> Any:
    totals = await services.engine.reconcile_many(body.user_id, body.dates)
    return [asdict(t) for t in totals]


# ---------- Queue / poller ----------

@router.post("/queue/process", response_model=QueueBatchResponse)
async def process_queue(
    services: Services,
    limit: int | None = Query(default=None, ge=1, le=100),
) -> Any:
    result = await services.worker.process_batch(limit)
    return result.to_dict()


@router.get("/queue/stats", response_model=QueueStatsResponse)
async def queue_stats(services: Services) -> Any:
    return await services.queue.stats()


@router.post("/poll", response_model=PollResponse)
async def run_poll(services: Services) -> Any:
    result = await services.poller.run()
    return PollResponse(
        success_count=result.success_count,
        error_count=result.error_count,
        revoked_count=result.revoked_count,
    )


# ---------- Linked accounts ----------

@router.post("/accounts", response_model=LinkAccountResponse, status_code=201)
async def link_account(body: LinkAccountRequest, services: Services) -> Any:
    tokens = OAuthTokens(
        access_token=body.access_token,
        refresh_token=body.refresh_token,
        expires_at=utc_now() + timedelta(seconds=body.expires_in),
    )
    account, subscription, backfill = await services.subscriptions.link_account(
        body.user_id, body.external_user_id, tokens
    )
    return LinkAccountResponse(
        account_id=account.account_id,
        user_id=account.user_id,
        subscription_id=subscription.subscription_id if subscription else None,
        backfilled_days=backfill.days_fetched if backfill else 0,
    )


@router.delete(
    "/accounts/{account_id}",
    response_model=UnlinkResponse,
    responses={404: {"model": ErrorDetail}},
)
async def unlink_account(account_id: uuid.UUID, services: Services) -> Any:
    account = await services.store.get_account(account_id)
    if account is None:
        raise HTTPException(status_code=404, detail="Account not found")
    deleted = await services.subscriptions.unlink(account)
    return UnlinkResponse(account_id=account_id, subscriptions_deleted=deleted)


@router.post(
    "/accounts/{account_id}/subscriptions/sync",
    response_model=SubscriptionSyncResponse,
    responses={404: {"model": ErrorDetail}},
)
async def sync_account_subscriptions(account_id: uuid.UUID, services: Services) -> Any:
    """Deactivate local subscription rows Fitbit no longer reports."""
    account = await services.store.get_account(account_id)
    if account is None:
        raise HTTPException(status_code=404, detail="Account not found")
    deactivated = await services.subscriptions.sync_subscriptions(account)
    return SubscriptionSyncResponse(account_id=account_id, deactivated=deactivated)
