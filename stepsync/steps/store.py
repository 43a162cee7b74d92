"""Persistence for linked accounts, readings, totals, subscriptions and queued jobs.

``StepStore`` is the seam every sync component depends on; the production
implementation is ``PostgresStepStore`` (asyncpg, one transaction per call).

Uniqueness is enforced by the database, never by application locks:
    - raw_step_readings: (account_id, date, time_of_day) NULLS NOT DISTINCT
    - daily_step_totals: (user_id, date)
    - step_subscriptions: subscription_id, (account_id, collection_type)
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from datetime import date, datetime, timedelta
from typing import Any, Iterable
from uuid import UUID

import asyncpg

from stepsync.services.database import get_connection
from stepsync.steps.base import (
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
from stepsync.steps.errors import DuplicateRowError
from stepsync.steps.sync.retry import backoff

logger = logging.getLogger("stepsync.steps.store")


class StepStore(ABC):
    """Storage operations used by the sync pipeline."""

    # -- linked accounts --------------------------------------------------

    @abstractmethod
    async def get_account(self, account_id: UUID) -> LinkedAccount | None: ...

    @abstractmethod
    async def find_account_by_external_id(
        self, provider: str, external_user_id: str
    ) -> LinkedAccount | None: ...

    @abstractmethod
    async def find_account_for_user(self, user_id: UUID, provider: str) -> LinkedAccount | None: ...

    @abstractmethod
    async def list_accounts(self, provider: str) -> list[LinkedAccount]: ...

    @abstractmethod
    async def save_linked_account(
        self, user_id: UUID, provider: str, external_user_id: str, tokens: OAuthTokens
    ) -> LinkedAccount: ...

    @abstractmethod
    async def update_account_tokens(self, account_id: UUID, tokens: OAuthTokens) -> None: ...

    @abstractmethod
    async def clear_account_tokens(self, account_id: UUID) -> None: ...

    @abstractmethod
    async def get_preferred_provider(self, user_id: UUID) -> str | None: ...

    # -- readings ---------------------------------------------------------

    @abstractmethod
    async def upsert_reading(
        self, account_id: UUID, sample: StepSample, synced_at: datetime
    ) -> None: ...

    @abstractmethod
    async def fetch_readings(self, user_id: UUID, target_date: date) -> list[RawReading]:
        """Return the user's readings for a date, ordered by account creation, then time."""

    @abstractmethod
    async def existing_daily_dates(
        self, account_id: UUID, start_date: date, end_date: date
    ) -> set[date]: ...

    # -- daily totals -----------------------------------------------------

    @abstractmethod
    async def get_daily_total(self, user_id: UUID, target_date: date) -> DailyTotal | None: ...

    @abstractmethod
    async def insert_daily_total(self, total: DailyTotal) -> None:
        """Insert a new total.

        Raises:
            DuplicateRowError: A row for (user_id, date) already exists.
        """

    @abstractmethod
    async def update_daily_total(self, total: DailyTotal) -> bool: ...

    # -- subscriptions ----------------------------------------------------

    @abstractmethod
    async def upsert_subscription(self, subscription: Subscription) -> Subscription: ...

    @abstractmethod
    async def list_active_subscriptions(self, account_id: UUID) -> list[Subscription]: ...

    @abstractmethod
    async def deactivate_subscriptions(self, account_id: UUID) -> int: ...

    @abstractmethod
    async def deactivate_subscription(self, subscription_id: str) -> None: ...

    @abstractmethod
    async def delete_subscription(self, subscription_id: str) -> None: ...

    # -- job queue --------------------------------------------------------

    @abstractmethod
    async def enqueue_jobs(self, job_type: str, payloads: list[dict[str, Any]]) -> list[int]:
        """Insert one pending job per payload, atomically, in the given order."""

    @abstractmethod
    async def claim_next_job(self) -> QueuedJob | None:
        """Atomically move the oldest eligible pending job to 'processing'."""

    @abstractmethod
    async def save_job(self, job: QueuedJob) -> bool:
        """Persist the outcome of a claimed job; touches updated_at.

        Only writes while the row is still in 'processing'.  Returns False when
        the job was reclaimed (or otherwise moved on) in the meantime.
        """

    @abstractmethod
    async def reclaim_stuck_jobs(
        self, older_than: timedelta, last_error: str, max_retries: int
    ) -> list[QueuedJob]:
        """Atomically fail-or-requeue every job in 'processing' past ``older_than``.

        Each reclaimed job has its retries incremented; it becomes 'failed' once
        retries reach ``max_retries``, 'pending' otherwise.  Returns the new rows.
        """

    @abstractmethod
    async def job_counts(self) -> dict[str, int]: ...


# ---------------------------------------------------------------------------
# Row mapping
# ---------------------------------------------------------------------------


def build_upsert_query(
    table: str,
    columns: list[str],
    conflict_columns: list[str],
    update_columns: list[str] | None = None,
) -> str:
    """Build a PostgreSQL INSERT ... ON CONFLICT DO UPDATE (upsert) query.

    On conflict, updates the non-key columns and touches ``updated_at``.
    """
    if update_columns is None:
        update_columns = [c for c in columns if c not in conflict_columns]

    placeholders = ", ".join(f"${i + 1}" for i in range(len(columns)))
    col_list = ", ".join(columns)
    conflict_target = ", ".join(conflict_columns)

    if update_columns:
        update_set = ", ".join(f"{col} = EXCLUDED.{col}" for col in update_columns)
        update_set += ", updated_at = NOW()"
        do_clause = f"DO UPDATE SET {update_set}"
    else:
        do_clause = "DO NOTHING"

    return (
        f"INSERT INTO {table} ({col_list}) "
        f"VALUES ({placeholders}) "
        f"ON CONFLICT ({conflict_target}) {do_clause}"
    )


_READING_UPSERT = build_upsert_query(
    "raw_step_readings",
    ["account_id", "date", "time_of_day", "steps", "granularity", "synced_at"],
    ["account_id", "date", "time_of_day"],
)

_SUBSCRIPTION_UPSERT = (
    build_upsert_query(
        "step_subscriptions",
        ["subscription_id", "account_id", "user_id", "collection_type", "subscriber_id", "is_active"],
        ["account_id", "collection_type"],
        ["subscription_id", "user_id", "subscriber_id", "is_active"],
    )
    + " RETURNING *"
)


def _account_from_row(row: asyncpg.Record) -> LinkedAccount:
    return LinkedAccount(
        account_id=row["account_id"],
        user_id=row["user_id"],
        provider=row["provider"],
        external_user_id=row["external_user_id"],
        access_token=row["access_token"],
        refresh_token=row["refresh_token"],
        token_expires_at=row["token_expires_at"],
        created_at=row["created_at"],
    )


def _subscription_from_row(row: asyncpg.Record) -> Subscription:
    return Subscription(
        subscription_id=row["subscription_id"],
        account_id=row["account_id"],
        user_id=row["user_id"],
        collection_type=row["collection_type"],
        subscriber_id=row["subscriber_id"],
        is_active=row["is_active"],
    )


def _job_from_row(row: asyncpg.Record) -> QueuedJob:
    payload = row["payload"]
    if isinstance(payload, str):
        payload = json.loads(payload)
    return QueuedJob(
        job_id=row["job_id"],
        job_type=row["job_type"],
        payload=payload,
        status=JobStatus(row["status"]),
        retries=row["retries"],
        last_error=row["last_error"],
        processed_at=row["processed_at"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


# ---------------------------------------------------------------------------
# PostgreSQL implementation
# ---------------------------------------------------------------------------


class PostgresStepStore(StepStore):
    """StepStore backed by the asyncpg pool in ``stepsync.services.database``."""

    async def get_account(self, account_id: UUID) -> LinkedAccount | None:
        async with get_connection() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM linked_accounts WHERE account_id = $1", account_id
            )
        return _account_from_row(row) if row else None

    async def find_account_by_external_id(
        self, provider: str, external_user_id: str
    ) -> LinkedAccount | None:
        async with get_connection() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM linked_accounts WHERE provider = $1 AND external_user_id = $2",
                provider,
                external_user_id,
            )
        return _account_from_row(row) if row else None

    async def find_account_for_user(self, user_id: UUID, provider: str) -> LinkedAccount | None:
        async with get_connection() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM linked_accounts WHERE user_id = $1 AND provider = $2",
                user_id,
                provider,
            )
        return _account_from_row(row) if row else None

    async def list_accounts(self, provider: str) -> list[LinkedAccount]:
        async with get_connection() as conn:
            rows = await conn.fetch(
                "SELECT * FROM linked_accounts WHERE provider = $1 ORDER BY created_at, account_id",
                provider,
            )
        return [_account_from_row(r) for r in rows]

    async def save_linked_account(
        self, user_id: UUID, provider: str, external_user_id: str, tokens: OAuthTokens
    ) -> LinkedAccount:
        async with get_connection() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO linked_accounts
                    (user_id, provider, external_user_id, access_token, refresh_token, token_expires_at)
                VALUES ($1, $2, $3, $4, $5, $6)
                ON CONFLICT (user_id, provider) DO UPDATE SET
                    external_user_id = EXCLUDED.external_user_id,
                    access_token = EXCLUDED.access_token,
                    refresh_token = EXCLUDED.refresh_token,
                    token_expires_at = EXCLUDED.token_expires_at,
                    updated_at = NOW()
                RETURNING *
                """,
                user_id,
                provider,
                external_user_id,
                tokens.access_token,
                tokens.refresh_token,
                tokens.expires_at,
            )
        return _account_from_row(row)

    async def update_account_tokens(self, account_id: UUID, tokens: OAuthTokens) -> None:
        async with get_connection() as conn:
            await conn.execute(
                """
                UPDATE linked_accounts
                SET access_token = $2,
                    refresh_token = COALESCE($3, refresh_token),
                    token_expires_at = $4,
                    updated_at = NOW()
                WHERE account_id = $1
                """,
                account_id,
                tokens.access_token,
                tokens.refresh_token,
                tokens.expires_at,
            )

    async def clear_account_tokens(self, account_id: UUID) -> None:
        async with get_connection() as conn:
            await conn.execute(
                """
                UPDATE linked_accounts
                SET access_token = NULL, refresh_token = NULL, token_expires_at = NULL,
                    updated_at = NOW()
                WHERE account_id = $1
                """,
                account_id,
            )

    async def get_preferred_provider(self, user_id: UUID) -> str | None:
        async with get_connection() as conn:
            return await conn.fetchval(
                "SELECT preferred_provider FROM user_step_preferences WHERE user_id = $1",
                user_id,
            )

    async def upsert_reading(
        self, account_id: UUID, sample: StepSample, synced_at: datetime
    ) -> None:
        async with get_connection() as conn:
            await conn.execute(
                _READING_UPSERT,
                account_id,
                sample.date,
                sample.time_of_day,
                sample.steps,
                sample.granularity.value,
                synced_at,
            )

    async def fetch_readings(self, user_id: UUID, target_date: date) -> list[RawReading]:
        async with get_connection() as conn:
            rows = await conn.fetch(
                """
                SELECT r.account_id, a.user_id, a.provider, r.date, r.time_of_day,
                       r.steps, r.granularity, r.synced_at
                FROM raw_step_readings r
                JOIN linked_accounts a ON a.account_id = r.account_id
                WHERE a.user_id = $1 AND r.date = $2
                ORDER BY a.created_at, a.account_id, r.time_of_day NULLS FIRST
                """,
                user_id,
                target_date,
            )
        return [
            RawReading(
                account_id=r["account_id"],
                user_id=r["user_id"],
                provider=r["provider"],
                date=r["date"],
                steps=r["steps"],
                granularity=Granularity(r["granularity"]),
                synced_at=r["synced_at"],
                time_of_day=r["time_of_day"],
            )
            for r in rows
        ]

    async def existing_daily_dates(
        self, account_id: UUID, start_date: date, end_date: date
    ) -> set[date]:
        async with get_connection() as conn:
            rows = await conn.fetch(
                """
                SELECT date FROM raw_step_readings
                WHERE account_id = $1 AND granularity = 'daily'
                  AND date BETWEEN $2 AND $3
                """,
                account_id,
                start_date,
                end_date,
            )
        return {r["date"] for r in rows}

    async def get_daily_total(self, user_id: UUID, target_date: date) -> DailyTotal | None:
        async with get_connection() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM daily_step_totals WHERE user_id = $1 AND date = $2",
                user_id,
                target_date,
            )
        if not row:
            return None
        return DailyTotal(
            user_id=row["user_id"],
            date=row["date"],
            steps=row["steps"],
            primary_account_id=row["primary_account_id"],
            updated_at=row["updated_at"],
        )

    async def insert_daily_total(self, total: DailyTotal) -> None:
        try:
            async with get_connection() as conn:
                await conn.execute(
                    """
                    INSERT INTO daily_step_totals (user_id, date, steps, primary_account_id)
                    VALUES ($1, $2, $3, $4)
                    """,
                    total.user_id,
                    total.date,
                    total.steps,
                    total.primary_account_id,
                )
        except asyncpg.UniqueViolationError as exc:
            raise DuplicateRowError(
                f"daily_step_totals row exists for {total.user_id} on {total.date}"
            ) from exc

    async def update_daily_total(self, total: DailyTotal) -> bool:
        async with get_connection() as conn:
            status = await conn.execute(
                """
                UPDATE daily_step_totals
                SET steps = $3, primary_account_id = $4, updated_at = NOW()
                WHERE user_id = $1 AND date = $2
                """,
                total.user_id,
                total.date,
                total.steps,
                total.primary_account_id,
            )
        return status != "UPDATE 0"

    async def upsert_subscription(self, subscription: Subscription) -> Subscription:
        async with get_connection() as conn:
            row = await conn.fetchrow(
                _SUBSCRIPTION_UPSERT,
                subscription.subscription_id,
                subscription.account_id,
                subscription.user_id,
                subscription.collection_type,
                subscription.subscriber_id,
                subscription.is_active,
            )
        return _subscription_from_row(row)

    async def list_active_subscriptions(self, account_id: UUID) -> list[Subscription]:
        async with get_connection() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM step_subscriptions
                WHERE account_id = $1 AND is_active
                ORDER BY created_at
                """,
                account_id,
            )
        return [_subscription_from_row(r) for r in rows]

    async def deactivate_subscriptions(self, account_id: UUID) -> int:
        async with get_connection() as conn:
            status = await conn.execute(
                """
                UPDATE step_subscriptions SET is_active = FALSE, updated_at = NOW()
                WHERE account_id = $1 AND is_active
                """,
                account_id,
            )
        return int(status.split()[-1])

    async def deactivate_subscription(self, subscription_id: str) -> None:
        async with get_connection() as conn:
            await conn.execute(
                """
                UPDATE step_subscriptions SET is_active = FALSE, updated_at = NOW()
                WHERE subscription_id = $1
                """,
                subscription_id,
            )

    async def delete_subscription(self, subscription_id: str) -> None:
        async with get_connection() as conn:
            await conn.execute(
                "DELETE FROM step_subscriptions WHERE subscription_id = $1", subscription_id
            )

    async def enqueue_jobs(self, job_type: str, payloads: list[dict[str, Any]]) -> list[int]:
        job_ids: list[int] = []
        async with get_connection() as conn:
            for payload in payloads:
                job_id = await conn.fetchval(
                    """
                    INSERT INTO webhook_jobs (job_type, payload, status, retries)
                    VALUES ($1, $2::jsonb, 'pending', 0)
                    RETURNING job_id
                    """,
                    job_type,
                    json.dumps(payload),
                )
                job_ids.append(job_id)
        return job_ids

    async def claim_next_job(self) -> QueuedJob | None:
        async with get_connection() as conn:
            row = await conn.fetchrow(
                """
                UPDATE webhook_jobs SET status = 'processing', updated_at = NOW()
                WHERE job_id = (
                    SELECT job_id FROM webhook_jobs
                    WHERE status = 'pending'
                      AND (
                          retries = 0
                          OR (retries = 1 AND updated_at <= NOW() - $1::interval)
                          OR (retries = 2 AND updated_at <= NOW() - $2::interval)
                          OR (retries >= 3 AND updated_at <= NOW() - $3::interval)
                      )
                    ORDER BY created_at, job_id
                    FOR UPDATE SKIP LOCKED
                    LIMIT 1
                )
                AND status = 'pending'
                RETURNING *
                """,
                backoff(1),
                backoff(2),
                backoff(3),
            )
        return _job_from_row(row) if row else None

    async def save_job(self, job: QueuedJob) -> bool:
        async with get_connection() as conn:
            job_id = await conn.fetchval(
                """
                UPDATE webhook_jobs
                SET status = $2, retries = $3, last_error = $4, processed_at = $5,
                    updated_at = NOW()
                WHERE job_id = $1 AND status = 'processing'
                RETURNING job_id
                """,
                job.job_id,
                job.status.value,
                job.retries,
                job.last_error,
                job.processed_at,
            )
        return job_id is not None

    async def reclaim_stuck_jobs(
        self, older_than: timedelta, last_error: str, max_retries: int
    ) -> list[QueuedJob]:
        # Single statement: the status predicate is re-checked under the row
        # lock, so a job claimed or finished by another worker is left alone.
        async with get_connection() as conn:
            rows = await conn.fetch(
                """
                UPDATE webhook_jobs
                SET retries = retries + 1,
                    status = CASE WHEN retries + 1 >= $3 THEN 'failed' ELSE 'pending' END,
                    processed_at = CASE WHEN retries + 1 >= $3 THEN NOW() ELSE processed_at END,
                    last_error = $2,
                    updated_at = NOW()
                WHERE status = 'processing' AND updated_at <= NOW() - $1::interval
                RETURNING *
                """,
                older_than,
                last_error,
                max_retries,
            )
        return sorted((_job_from_row(r) for r in rows), key=lambda j: (j.created_at, j.job_id))

    async def job_counts(self) -> dict[str, int]:
        async with get_connection() as conn:
            rows = await conn.fetch(
                "SELECT status, COUNT(*) AS n FROM webhook_jobs GROUP BY status"
            )
        counts = {status.value: 0 for status in JobStatus}
        counts.update({r["status"]: r["n"] for r in rows})
        return counts


def dates_between(start_date: date, end_date: date) -> Iterable[date]:
    """Yield every date from start_date to end_date inclusive."""
    current = start_date
    while current <= end_date:
        yield current
        current += timedelta(days=1)
