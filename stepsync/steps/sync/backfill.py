"""Gap-driven historical backfill for Fitbit step data.

Only dates with no daily reading for the user's Fitbit account are fetched.
Missing dates are split into contiguous runs of at most ``chunk_days`` and
each run is fetched as one time-series range request, sequentially, with a
fixed delay between requests to stay under Fitbit's rate limit.

Usage::

    orchestrator = BackfillOrchestrator(store, client, engine)
    result = await orchestrator.backfill(user_id, date(2024, 1, 1), date(2024, 1, 31))
    logger.info("Backfilled %d day(s)", result.days_fetched)
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Awaitable, Callable
from uuid import UUID

from stepsync.steps.base import FITBIT, LinkedAccount, utc_now
from stepsync.steps.client import FitbitClient
from stepsync.steps.config_loader import SyncConfig, get_sync_config
from stepsync.steps.reconcile import ReconciliationEngine
from stepsync.steps.store import StepStore, dates_between

logger = logging.getLogger("stepsync.steps.sync.backfill")


@dataclass
class BackfillResult:
    """Outcome of one backfill run.

    Attributes:
        user_id:          Internal user UUID.
        missing_dates:    Dates that had no daily reading before the run.
        fetched_dates:    Dates the provider returned a value for.
        reconciled_dates: Dates whose DailyTotal was recomputed successfully.
        chunks_total:     Number of range requests attempted.
        chunks_failed:    Range requests that raised.
        errors:           One message per failed chunk or reconcile.
    """

    user_id: UUID
    missing_dates: list[date] = field(default_factory=list)
    fetched_dates: list[date] = field(default_factory=list)
    reconciled_dates: list[date] = field(default_factory=list)
    chunks_total: int = 0
    chunks_failed: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def days_fetched(self) -> int:
        return len(self.fetched_dates)


def chunk_contiguous(dates: list[date], max_days: int) -> list[list[date]]:
    """Split sorted ``dates`` into runs of consecutive days, each at most ``max_days`` long."""
    chunks: list[list[date]] = []
    current: list[date] = []
    for d in sorted(dates):
        if current and (d - current[-1] != timedelta(days=1) or len(current) >= max_days):
            chunks.append(current)
            current = []
        current.append(d)
    if current:
        chunks.append(current)
    return chunks


class BackfillOrchestrator:
    """Fill gaps in a user's Fitbit step history and reconcile what was fetched."""

    def __init__(
        self,
        store: StepStore,
        client: FitbitClient,
        engine: ReconciliationEngine,
        config: SyncConfig | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._store = store
        self._client = client
        self._engine = engine
        self._config = config or get_sync_config()
        self._sleep = sleep

    async def find_missing_dates(
        self,
        account: LinkedAccount,
        start_date: date,
        end_date: date,
        today: date | None = None,
    ) -> list[date]:
        """Dates in ``[start_date, min(end_date, today)]`` with no daily reading."""
        last = min(end_date, today or utc_now().date())
        if start_date > last:
            return []
        existing = await self._store.existing_daily_dates(account.account_id, start_date, last)
        return [d for d in dates_between(start_date, last) if d not in existing]

    async def needs_backfill(
        self,
        user_id: UUID,
        start_date: date,
        end_date: date,
        today: date | None = None,
    ) -> bool:
        account = await self._store.find_account_for_user(user_id, FITBIT)
        if account is None:
            return False
        missing = await self.find_missing_dates(account, start_date, end_date, today)
        return bool(missing)

    async def backfill(
        self,
        user_id: UUID,
        start_date: date,
        end_date: date,
        today: date | None = None,
    ) -> BackfillResult:
        """Fetch every missing date in range, then reconcile each fetched date once.

        A failed chunk is logged and skipped; the remaining chunks still run and
        the dates that did arrive are still reconciled.
        """
        result = BackfillResult(user_id=user_id)

        account = await self._store.find_account_for_user(user_id, FITBIT)
        if account is None:
            logger.warning("Backfill skipped: user %s has no Fitbit account", user_id)
            return result

        result.missing_dates = await self.find_missing_dates(account, start_date, end_date, today)
        if not result.missing_dates:
            logger.info("No gaps for user %s between %s and %s", user_id, start_date, end_date)
            return result

        cfg = self._config.backfill
        chunks = chunk_contiguous(result.missing_dates, cfg.chunk_days)
        result.chunks_total = len(chunks)
        logger.info(
            "Backfilling %d missing day(s) in %d chunk(s) for user %s",
            len(result.missing_dates),
            len(chunks),
            user_id,
        )

        fetched: set[date] = set()
        for index, chunk in enumerate(chunks):
            if index > 0 and cfg.rate_limit_ms:
                await self._sleep(cfg.rate_limit_ms / 1000.0)

            chunk_start, chunk_end = chunk[0], chunk[-1]
            try:
                samples = await self._client.get_activity_time_series(
                    account, "steps", chunk_start, chunk_end
                )
                synced_at = utc_now()
                for sample in samples:
                    await self._store.upsert_reading(account.account_id, sample, synced_at)
                    fetched.add(sample.date)
            except Exception as exc:
                result.chunks_failed += 1
                result.errors.append(f"{chunk_start}..{chunk_end}: {exc}")
                logger.error(
                    "Backfill chunk %s..%s failed for user %s: %s",
                    chunk_start,
                    chunk_end,
                    user_id,
                    exc,
                )

        result.fetched_dates = sorted(fetched)
        for target_date in result.fetched_dates:
            try:
                await self._engine.reconcile(user_id, target_date)
                result.reconciled_dates.append(target_date)
            except Exception as exc:
                result.errors.append(f"reconcile {target_date}: {exc}")
                logger.error(
                    "Reconcile after backfill failed for user %s on %s: %s",
                    user_id,
                    target_date,
                    exc,
                )

        logger.info(
            "Backfill done for user %s: %d fetched, %d chunk failure(s)",
            user_id,
            result.days_fetched,
            result.chunks_failed,
        )
        return result

    async def backfill_recent(self, user_id: UUID, today: date | None = None) -> BackfillResult:
        """Backfill the default window (30 days) ending today."""
        end = today or utc_now().date()
        start = end - timedelta(days=self._config.backfill.default_window_days - 1)
        return await self.backfill(user_id, start, end, today=end)
