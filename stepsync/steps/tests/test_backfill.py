"""Tests for the backfill orchestrator: gap detection, chunking, failure isolation."""

from __future__ import annotations

from datetime import date, timedelta
from unittest.mock import AsyncMock

import pytest

from stepsync.steps.base import LinkedAccount, StepSample
from stepsync.steps.config_loader import SyncConfig
from stepsync.steps.errors import ProviderAPIError
from stepsync.steps.reconcile import ReconciliationEngine
from stepsync.steps.store import dates_between
from stepsync.steps.sync.backfill import BackfillOrchestrator, chunk_contiguous
from stepsync.steps.tests.conftest import TEST_USER_ID, InMemoryStepStore

JAN_1 = date(2024, 1, 1)
JAN_31 = date(2024, 1, 31)
TODAY = date(2024, 3, 1)


def _series(account, resource, start, end):
    return [StepSample(date=d, steps=1000 + d.day) for d in dates_between(start, end)]


@pytest.fixture
def sleep() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def orchestrator(
    store: InMemoryStepStore, mock_client: AsyncMock, sync_config: SyncConfig, sleep: AsyncMock
) -> BackfillOrchestrator:
    mock_client.get_activity_time_series.side_effect = _series
    return BackfillOrchestrator(
        store, mock_client, ReconciliationEngine(store), sync_config, sleep=sleep
    )


class TestChunkContiguous:
    def test_gaps_split_chunks(self) -> None:
        dates = [JAN_1, JAN_1 + timedelta(days=1), JAN_1 + timedelta(days=5)]
        assert chunk_contiguous(dates, 30) == [dates[:2], dates[2:]]

    def test_long_runs_are_capped(self) -> None:
        dates = list(dates_between(JAN_1, JAN_1 + timedelta(days=64)))
        chunks = chunk_contiguous(dates, 30)
        assert [len(c) for c in chunks] == [30, 30, 5]

    def test_empty(self) -> None:
        assert chunk_contiguous([], 30) == []


class TestNeedsBackfill:
    @pytest.mark.asyncio
    async def test_true_when_twenty_of_thirty_one_days_exist(
        self, store: InMemoryStepStore, fitbit_account: LinkedAccount, orchestrator: BackfillOrchestrator
    ) -> None:
        for d in list(dates_between(JAN_1, JAN_31))[:20]:
            store.add_reading(fitbit_account, 5000, target_date=d)

        assert await orchestrator.needs_backfill(TEST_USER_ID, JAN_1, JAN_31, today=TODAY) is True

    @pytest.mark.asyncio
    async def test_false_when_all_days_exist(
        self, store: InMemoryStepStore, fitbit_account: LinkedAccount, orchestrator: BackfillOrchestrator
    ) -> None:
        for d in dates_between(JAN_1, JAN_31):
            store.add_reading(fitbit_account, 5000, target_date=d)

        assert await orchestrator.needs_backfill(TEST_USER_ID, JAN_1, JAN_31, today=TODAY) is False

    @pytest.mark.asyncio
    async def test_future_dates_never_count_as_missing(
        self, store: InMemoryStepStore, fitbit_account: LinkedAccount, orchestrator: BackfillOrchestrator
    ) -> None:
        for d in dates_between(JAN_1, date(2024, 1, 10)):
            store.add_reading(fitbit_account, 5000, target_date=d)

        assert await orchestrator.needs_backfill(
            TEST_USER_ID, JAN_1, JAN_31, today=date(2024, 1, 10)
        ) is False


class TestBackfill:
    @pytest.mark.asyncio
    async def test_fetches_only_missing_dates(
        self,
        store: InMemoryStepStore,
        fitbit_account: LinkedAccount,
        orchestrator: BackfillOrchestrator,
        mock_client: AsyncMock,
    ) -> None:
        for d in dates_between(date(2024, 1, 10), date(2024, 1, 20)):
            store.add_reading(fitbit_account, 5000, target_date=d)

        result = await orchestrator.backfill(TEST_USER_ID, JAN_1, JAN_31, today=TODAY)

        assert len(result.missing_dates) == 20
        calls = [c.args[2:4] for c in mock_client.get_activity_time_series.await_args_list]
        assert calls == [(JAN_1, date(2024, 1, 9)), (date(2024, 1, 21), JAN_31)]
        assert result.chunks_total == 2
        assert result.days_fetched == 20

    @pytest.mark.asyncio
    async def test_sleeps_between_chunks_only(
        self,
        fitbit_account: LinkedAccount,
        orchestrator: BackfillOrchestrator,
        sleep: AsyncMock,
    ) -> None:
        await orchestrator.backfill(TEST_USER_ID, JAN_1, date(2024, 3, 1), today=TODAY)

        # 61 contiguous days -> 3 chunks -> 2 pauses of 1000 ms
        assert sleep.await_count == 2
        sleep.assert_awaited_with(1.0)

    @pytest.mark.asyncio
    async def test_failed_chunk_is_skipped_and_rest_reconciled(
        self,
        store: InMemoryStepStore,
        fitbit_account: LinkedAccount,
        orchestrator: BackfillOrchestrator,
        mock_client: AsyncMock,
    ) -> None:
        calls = {"n": 0}

        def flaky(account, resource, start, end):
            calls["n"] += 1
            if calls["n"] == 1:
                raise ProviderAPIError("rate limited", status_code=429)
            return _series(account, resource, start, end)

        mock_client.get_activity_time_series.side_effect = flaky

        result = await orchestrator.backfill(TEST_USER_ID, JAN_1, date(2024, 2, 29), today=TODAY)

        assert result.chunks_total == 2
        assert result.chunks_failed == 1
        assert result.fetched_dates == list(dates_between(date(2024, 1, 31), date(2024, 2, 29)))
        assert result.reconciled_dates == result.fetched_dates
        assert (TEST_USER_ID, date(2024, 2, 1)) in store.totals
        assert (TEST_USER_ID, JAN_1) not in store.totals

    @pytest.mark.asyncio
    async def test_reconciles_once_per_date(
        self,
        store: InMemoryStepStore,
        fitbit_account: LinkedAccount,
        mock_client: AsyncMock,
        sync_config: SyncConfig,
        sleep: AsyncMock,
    ) -> None:
        engine = AsyncMock(spec=ReconciliationEngine)
        mock_client.get_activity_time_series.side_effect = _series
        orchestrator = BackfillOrchestrator(store, mock_client, engine, sync_config, sleep=sleep)

        await orchestrator.backfill(TEST_USER_ID, JAN_1, date(2024, 1, 5), today=TODAY)

        reconciled = [c.args[1] for c in engine.reconcile.await_args_list]
        assert reconciled == list(dates_between(JAN_1, date(2024, 1, 5)))

    @pytest.mark.asyncio
    async def test_reconcile_failure_is_logged_not_raised(
        self,
        store: InMemoryStepStore,
        fitbit_account: LinkedAccount,
        mock_client: AsyncMock,
        sync_config: SyncConfig,
        sleep: AsyncMock,
    ) -> None:
        engine = AsyncMock(spec=ReconciliationEngine)
        engine.reconcile.side_effect = RuntimeError("db hiccup")
        mock_client.get_activity_time_series.side_effect = _series
        orchestrator = BackfillOrchestrator(store, mock_client, engine, sync_config, sleep=sleep)

        result = await orchestrator.backfill(TEST_USER_ID, JAN_1, date(2024, 1, 2), today=TODAY)

        assert result.reconciled_dates == []
        assert len(result.errors) == 2

    @pytest.mark.asyncio
    async def test_user_without_account_gets_empty_result(
        self, orchestrator: BackfillOrchestrator, mock_client: AsyncMock
    ) -> None:
        result = await orchestrator.backfill(TEST_USER_ID, JAN_1, JAN_31, today=TODAY)
        assert result.missing_dates == []
        mock_client.get_activity_time_series.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_backfill_recent_covers_default_window(
        self,
        fitbit_account: LinkedAccount,
        orchestrator: BackfillOrchestrator,
        mock_client: AsyncMock,
    ) -> None:
        result = await orchestrator.backfill_recent(TEST_USER_ID, today=TODAY)

        assert len(result.missing_dates) == 30
        assert result.missing_dates[-1] == TODAY
        mock_client.get_activity_time_series.assert_awaited_once()
