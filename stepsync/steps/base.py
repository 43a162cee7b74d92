"""Canonical data models for the StepSync synchronization pipeline.

These dataclasses mirror the rows of ``linked_accounts``, ``raw_step_readings``,
``daily_step_totals``, ``step_subscriptions`` and ``webhook_jobs``.  Every
component (store, client, engine, queue) passes these types around rather
than raw asyncpg records or provider JSON.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
from enum import Enum
from typing import Any
from uuid import UUID

FITBIT = "fitbit"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Granularity(str, Enum):
    daily = "daily"
    intraday = "intraday"


class JobStatus(str, Enum):
    pending = "pending"
    processing = "processing"
    completed = "completed"
    failed = "failed"


class JobType(str, Enum):
    fitbit_notification = "fitbit_notification"


# ---------------------------------------------------------------------------
# OAuth / linked accounts
# ---------------------------------------------------------------------------


@dataclass
class OAuthTokens:
    """Token set returned by a refresh-token exchange.

    Attributes:
        access_token:  Bearer token for API calls.
        refresh_token: Rotated refresh token (Fitbit refresh tokens are single use).
        expires_at:    UTC datetime when the access_token expires.
    """

    access_token: str
    refresh_token: str | None = None
    expires_at: datetime | None = None


@dataclass
class LinkedAccount:
    """An external provider account linked to a user.

    Tokens are nulled, never the row deleted, when the provider tells us
    access was revoked, so historical readings keep their account.
    """

    account_id: UUID
    user_id: UUID
    provider: str
    external_user_id: str
    access_token: str | None = None
    refresh_token: str | None = None
    token_expires_at: datetime | None = None
    created_at: datetime = field(default_factory=utc_now)

    @property
    def is_revoked(self) -> bool:
        return self.access_token is None and self.refresh_token is None

    def apply_tokens(self, tokens: OAuthTokens) -> None:
        self.access_token = tokens.access_token
        if tokens.refresh_token:
            self.refresh_token = tokens.refresh_token
        self.token_expires_at = tokens.expires_at


# ---------------------------------------------------------------------------
# Readings and totals
# ---------------------------------------------------------------------------


@dataclass
class StepSample:
    """One step-count value parsed from a provider time series.

    ``time_of_day`` is None for a daily aggregate.
    """

    date: date
    steps: int
    time_of_day: time | None = None

    @property
    def granularity(self) -> Granularity:
        return Granularity.daily if self.time_of_day is None else Granularity.intraday


@dataclass
class RawReading:
    """A stored per-account reading, joined with the account's provider and user.

    Attributes:
        account_id:  Linked account that produced the reading.
        user_id:     Owner of the linked account.
        provider:    Provider slug of the account (used by the conflict policy).
        date:        Calendar date of the reading.
        steps:       Step count.
        granularity: daily or intraday.
        synced_at:   When the reading was last written from the provider.
        time_of_day: Slot start for intraday samples, None for daily aggregates.
    """

    account_id: UUID
    user_id: UUID
    provider: str
    date: date
    steps: int
    granularity: Granularity
    synced_at: datetime
    time_of_day: time | None = None


@dataclass
class DailyTotal:
    """The authoritative, always-recomputable step total for one user and date."""

    user_id: UUID
    date: date
    steps: int
    primary_account_id: UUID | None = None
    updated_at: datetime = field(default_factory=utc_now)


# ---------------------------------------------------------------------------
# Subscriptions and queued jobs
# ---------------------------------------------------------------------------


@dataclass
class Subscription:
    subscription_id: str
    account_id: UUID
    user_id: UUID
    collection_type: str
    subscriber_id: str | None = None
    is_active: bool = True


@dataclass
class QueuedJob:
    """A row of the durable webhook job queue.

    ``updated_at`` is the backoff clock: every status transition touches it,
    and eligibility for retry is measured from it.
    """

    job_id: int
    job_type: str
    payload: dict[str, Any]
    status: JobStatus = JobStatus.pending
    retries: int = 0
    last_error: str | None = None
    processed_at: datetime | None = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
