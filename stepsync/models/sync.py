"""Request / response schemas for the internal operations API."""

from __future__ import annotations

import uuid
from datetime import date, datetime

from pydantic import Field, model_validator

from stepsync.models.base import StepSyncBase


class DateRange(StepSyncBase):
    user_id: uuid.UUID
    start_date: date
    end_date: date

    @model_validator(mode="after")
    def _ordered(self) -> "DateRange":
        if self.start_date > self.end_date:
            raise ValueError("start_date must be on or before end_date")
        return self


class BackfillRequest(DateRange):
    pass


class BackfillResponse(StepSyncBase):
    user_id: uuid.UUID
    missing_days: int
    fetched_dates: list[date] = Field(default_factory=list)
    reconciled_dates: list[date] = Field(default_factory=list)
    chunks_total: int = 0
    chunks_failed: int = 0
    errors: list[str] = Field(default_factory=list)


class BackfillNeededResponse(StepSyncBase):
    user_id: uuid.UUID
    start_date: date
    end_date: date
    needs_backfill: bool


class ReconcileRequest(StepSyncBase):
    user_id: uuid.UUID
    dates: list[date] = Field(min_length=1, max_length=366)


class DailyTotalRead(StepSyncBase):
    user_id: uuid.UUID
    date: date
    steps: int
    primary_account_id: uuid.UUID | None = None
    updated_at: datetime


class QueueBatchResponse(StepSyncBase):
    processed: int
    succeeded: int
    retried: int
    failed: int
    reclaimed: int


class QueueStatsResponse(StepSyncBase):
    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0


class PollResponse(StepSyncBase):
    success_count: int
    error_count: int
    revoked_count: int = 0


class LinkAccountRequest(StepSyncBase):
    """Tokens from a completed Fitbit OAuth authorization-code exchange."""

    user_id: uuid.UUID
    external_user_id: str = Field(min_length=1)
    access_token: str = Field(min_length=1)
    refresh_token: str = Field(min_length=1)
    expires_in: int = Field(default=28800, gt=0)


class LinkAccountResponse(StepSyncBase):
    account_id: uuid.UUID
    user_id: uuid.UUID
    subscription_id: str | None = None
    backfilled_days: int = 0


class UnlinkResponse(StepSyncBase):
    account_id: uuid.UUID
    subscriptions_deleted: int


class SubscriptionSyncResponse(StepSyncBase):
    account_id: uuid.UUID
    deactivated: int
