"""Shared fixtures and an in-memory StepStore for sync pipeline tests."""

from __future__ import annotations

import asyncio
import itertools
from dataclasses import replace
from datetime import date, datetime, time, timedelta, timezone
from typing import Any
from unittest.mock import AsyncMock
from uuid import UUID, uuid4

import pytest

from stepsync.config import Settings
from stepsync.steps.base import (
    FITBIT,
    DailyTotal,
    Granularity,
    JobStatus,
    LinkedAccount,
    OAuthTokens,
    QueuedJob,
    RawReading,
    StepSample,
    Subscription,
)
from stepsync.steps.client import FitbitClient
from stepsync.steps.config_loader import SyncConfig, load_sync_config
from stepsync.steps.errors import DuplicateRowError
from stepsync.steps.store import StepStore
from stepsync.steps.sync.retry import is_eligible

# Canonical test identifiers
TEST_USER_ID = UUID("12345678-1234-5678-1234-567812345678")
TEST_DATE = date(2024, 1, 15)
TEST_NOW = datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc)
TEST_CLIENT_SECRET = "test_client_secret"


class InMemoryStepStore(StepStore):
    """Dict-backed StepStore with the same uniqueness rules as the SQL schema.

    ``now`` is the store's clock for job timestamps; tests move it forward to
    exercise backoff.  ``get_daily_total`` yields to the event loop so two
    concurrent reconciles can interleave the way they do against Postgres.
    """

    def __init__(self, now: datetime = TEST_NOW) -> None:
        self.now = now
        self.accounts: dict[UUID, LinkedAccount] = {}
        self.preferences: dict[UUID, str] = {}
        self.readings: dict[tuple[UUID, date, time | None], RawReading] = {}
        self.totals: dict[tuple[UUID, date], DailyTotal] = {}
        self.subscriptions: dict[str, Subscription] = {}
        self.jobs: dict[int, QueuedJob] = {}
        self._job_ids = itertools.count(1)
        self.fail_enqueue = False

    # -- helpers used by tests ---------------------------------------------

    def add_account(
        self,
        user_id: UUID = TEST_USER_ID,
        provider: str = FITBIT,
        external_user_id: str = "FB123",
        created_at: datetime | None = None,
        access_token: str | None = "access-token",
        refresh_token: str | None = "refresh-token",
        token_expires_at: datetime | None = None,
    ) -> LinkedAccount:
        account = LinkedAccount(
            account_id=uuid4(),
            user_id=user_id,
            provider=provider,
            external_user_id=external_user_id,
            access_token=access_token,
            refresh_token=refresh_token,
            token_expires_at=token_expires_at or self.now + timedelta(hours=8),
            # later additions are newer, so insertion order is creation order
            created_at=created_at or self.now - timedelta(days=30) + timedelta(minutes=len(self.accounts)),
        )
        self.accounts[account.account_id] = account
        return account

    def add_reading(
        self,
        account: LinkedAccount,
        steps: int,
        target_date: date = TEST_DATE,
        time_of_day: time | None = None,
        synced_at: datetime | None = None,
    ) -> None:
        sample = StepSample(date=target_date, steps=steps, time_of_day=time_of_day)
        self._put_reading(account.account_id, sample, synced_at or self.now)

    def _put_reading(self, account_id: UUID, sample: StepSample, synced_at: datetime) -> None:
        account = self.accounts[account_id]
        self.readings[(account_id, sample.date, sample.time_of_day)] = RawReading(
            account_id=account_id,
            user_id=account.user_id,
            provider=account.provider,
            date=sample.date,
            steps=sample.steps,
            granularity=sample.granularity,
            synced_at=synced_at,
            time_of_day=sample.time_of_day,
        )

    # -- linked accounts ---------------------------------------------------

    async def get_account(self, account_id: UUID) -> LinkedAccount | None:
        return self.accounts.get(account_id)

    async def find_account_by_external_id(
        self, provider: str, external_user_id: str
    ) -> LinkedAccount | None:
        for account in self.accounts.values():
            if account.provider == provider and account.external_user_id == external_user_id:
                return account
        return None

    async def find_account_for_user(self, user_id: UUID, provider: str) -> LinkedAccount | None:
        for account in self.accounts.values():
            if account.user_id == user_id and account.provider == provider:
                return account
        return None

    async def list_accounts(self, provider: str) -> list[LinkedAccount]:
        found = [a for a in self.accounts.values() if a.provider == provider]
        return sorted(found, key=lambda a: (a.created_at, str(a.account_id)))

    async def save_linked_account(
        self, user_id: UUID, provider: str, external_user_id: str, tokens: OAuthTokens
    ) -> LinkedAccount:
        account = await self.find_account_for_user(user_id, provider)
        if account is None:
            account = LinkedAccount(
                account_id=uuid4(),
                user_id=user_id,
                provider=provider,
                external_user_id=external_user_id,
                created_at=self.now,
            )
            self.accounts[account.account_id] = account
        account.external_user_id = external_user_id
        account.access_token = tokens.access_token
        account.refresh_token = tokens.refresh_token
        account.token_expires_at = tokens.expires_at
        return account

    async def update_account_tokens(self, account_id: UUID, tokens: OAuthTokens) -> None:
        self.accounts[account_id].apply_tokens(tokens)

    async def clear_account_tokens(self, account_id: UUID) -> None:
        account = self.accounts[account_id]
        account.access_token = None
        account.refresh_token = None
        account.token_expires_at = None

    async def get_preferred_provider(self, user_id: UUID) -> str | None:
        return self.preferences.get(user_id)

    # -- readings ----------------------------------------------------------

    async def upsert_reading(
        self, account_id: UUID, sample: StepSample, synced_at: datetime
    ) -> None:
        self._put_reading(account_id, sample, synced_at)

    async def fetch_readings(self, user_id: UUID, target_date: date) -> list[RawReading]:
        rows = [r for r in self.readings.values() if r.user_id == user_id and r.date == target_date]

        def order(r: RawReading) -> tuple:
            account = self.accounts[r.account_id]
            return (account.created_at, str(account.account_id), r.time_of_day or time.min)

        return sorted(rows, key=order)

    async def existing_daily_dates(
        self, account_id: UUID, start_date: date, end_date: date
    ) -> set[date]:
        return {
            r.date
            for r in self.readings.values()
            if r.account_id == account_id
            and r.granularity == Granularity.daily
            and start_date <= r.date <= end_date
        }

    # -- daily totals ------------------------------------------------------

    async def get_daily_total(self, user_id: UUID, target_date: date) -> DailyTotal | None:
        total = self.totals.get((user_id, target_date))
        await asyncio.sleep(0)
        return replace(total) if total else None

    async def insert_daily_total(self, total: DailyTotal) -> None:
        key = (total.user_id, total.date)
        if key in self.totals:
            raise DuplicateRowError(f"daily_step_totals row exists for {key}")
        self.totals[key] = replace(total)

    async def update_daily_total(self, total: DailyTotal) -> bool:
        key = (total.user_id, total.date)
        if key not in self.totals:
            return False
        self.totals[key] = replace(total)
        return True

    # -- subscriptions -----------------------------------------------------

    async def upsert_subscription(self, subscription: Subscription) -> Subscription:
        for existing_id, existing in list(self.subscriptions.items()):
            if (
                existing.account_id == subscription.account_id
                and existing.collection_type == subscription.collection_type
            ):
                del self.subscriptions[existing_id]
        self.subscriptions[subscription.subscription_id] = replace(subscription)
        return subscription

    async def list_active_subscriptions(self, account_id: UUID) -> list[Subscription]:
        return [
            s for s in self.subscriptions.values() if s.account_id == account_id and s.is_active
        ]

    async def deactivate_subscriptions(self, account_id: UUID) -> int:
        count = 0
        for s in self.subscriptions.values():
            if s.account_id == account_id and s.is_active:
                s.is_active = False
                count += 1
        return count

    async def deactivate_subscription(self, subscription_id: str) -> None:
        if subscription_id in self.subscriptions:
            self.subscriptions[subscription_id].is_active = False

    async def delete_subscription(self, subscription_id: str) -> None:
        self.subscriptions.pop(subscription_id, None)

    # -- job queue ---------------------------------------------------------

    async def enqueue_jobs(self, job_type: str, payloads: list[dict[str, Any]]) -> list[int]:
        if self.fail_enqueue:
            raise RuntimeError("database unavailable")
        job_ids = []
        for payload in payloads:
            job_id = next(self._job_ids)
            self.jobs[job_id] = QueuedJob(
                job_id=job_id,
                job_type=job_type,
                payload=payload,
                created_at=self.now,
                updated_at=self.now,
            )
            job_ids.append(job_id)
        return job_ids

    async def claim_next_job(self) -> QueuedJob | None:
        eligible = [j for j in self.jobs.values() if is_eligible(j, self.now)]
        if not eligible:
            return None
        job = min(eligible, key=lambda j: (j.created_at, j.job_id))
        job.status = JobStatus.processing
        job.updated_at = self.now
        return replace(job)

    async def save_job(self, job: QueuedJob) -> bool:
        current = self.jobs.get(job.job_id)
        if current is None or current.status != JobStatus.processing:
            return False
        stored = replace(job)
        stored.updated_at = self.now
        self.jobs[job.job_id] = stored
        return True

    async def reclaim_stuck_jobs(
        self, older_than: timedelta, last_error: str, max_retries: int
    ) -> list[QueuedJob]:
        reclaimed = []
        for job in sorted(self.jobs.values(), key=lambda j: (j.created_at, j.job_id)):
            if job.status != JobStatus.processing or self.now - job.updated_at < older_than:
                continue
            job.retries += 1
            job.last_error = last_error
            job.updated_at = self.now
            if job.retries >= max_retries:
                job.status = JobStatus.failed
                job.processed_at = self.now
            else:
                job.status = JobStatus.pending
            reclaimed.append(replace(job))
        return reclaimed

    async def job_counts(self) -> dict[str, int]:
        counts = {status.value: 0 for status in JobStatus}
        for job in self.jobs.values():
            counts[job.status.value] += 1
        return counts


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def store() -> InMemoryStepStore:
    return InMemoryStepStore()


@pytest.fixture
def sync_config() -> SyncConfig:
    """Load the bundled sync config for tests."""
    return load_sync_config()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        fitbit_client_id="test_client_id",
        fitbit_client_secret=TEST_CLIENT_SECRET,
        fitbit_subscriber_verification_code="verify-me",
        fitbit_subscriber_id="1",
        internal_api_token="internal-token",
    )


@pytest.fixture
def fitbit_account(store: InMemoryStepStore) -> LinkedAccount:
    return store.add_account()


@pytest.fixture
def mock_client() -> AsyncMock:
    """FitbitClient double; tests set return values per call."""
    return AsyncMock(spec=FitbitClient)
