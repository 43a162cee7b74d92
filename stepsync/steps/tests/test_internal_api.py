"""Tests for the internal operations API."""

from __future__ import annotations

from datetime import date
from unittest.mock import AsyncMock

import httpx
import pytest
from fastapi.testclient import TestClient

from stepsync.config import Settings, get_settings
from stepsync.dependencies import get_sync_services
from stepsync.main import create_app
from stepsync.steps.base import StepSample, Subscription
from stepsync.steps.config_loader import SyncConfig
from stepsync.steps.container import SyncServices, build_sync_services
from stepsync.steps.tests.conftest import TEST_DATE, TEST_USER_ID, InMemoryStepStore

HEADERS = {"X-Internal-Token": "internal-token"}


@pytest.fixture
def services(
    store: InMemoryStepStore, settings: Settings, sync_config: SyncConfig, mock_client: AsyncMock
) -> SyncServices:
    return build_sync_services(settings, store, sync_config, client=mock_client)


@pytest.fixture
def client(settings: Settings, services: SyncServices) -> TestClient:
    app = create_app()
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_sync_services] = lambda: services
    return TestClient(app)


class TestAuth:
    def test_missing_token_is_rejected(self, client: TestClient) -> None:
        assert client.get("/api/v1/internal/queue/stats").status_code == 401

    def test_wrong_token_is_rejected(self, client: TestClient) -> None:
        response = client.get("/api/v1/internal/queue/stats", headers={"X-Internal-Token": "x"})
        assert response.status_code == 401

    def test_unconfigured_token_disables_api(self, client: TestClient, settings: Settings) -> None:
        settings.internal_api_token = ""
        assert client.get("/api/v1/internal/queue/stats", headers=HEADERS).status_code == 503


class TestEndpoints:
    def test_queue_stats(self, client: TestClient, store: InMemoryStepStore) -> None:
        response = client.get("/api/v1/internal/queue/stats", headers=HEADERS)
        assert response.status_code == 200
        assert response.json() == {"pending": 0, "processing": 0, "completed": 0, "failed": 0}

    def test_reconcile(self, client: TestClient, store: InMemoryStepStore) -> None:
        account = store.add_account()
        store.add_reading(account, 7777)

        response = client.post(
            "/api/v1/internal/reconcile",
            json={"user_id": str(TEST_USER_ID), "dates": [TEST_DATE.isoformat()]},
            headers=HEADERS,
        )

        assert response.status_code == 200
        body = response.json()
        assert body[0]["steps"] == 7777
        assert body[0]["primary_account_id"] == str(account.account_id)

    def test_backfill_needed(self, client: TestClient, store: InMemoryStepStore) -> None:
        store.add_account()
        response = client.get(
            "/api/v1/internal/backfill/needed",
            params={"user_id": str(TEST_USER_ID), "start_date": "2024-01-01", "end_date": "2024-01-31"},
            headers=HEADERS,
        )
        assert response.status_code == 200
        assert response.json()["needs_backfill"] is True

    def test_backfill_rejects_reversed_range(self, client: TestClient) -> None:
        response = client.post(
            "/api/v1/internal/backfill",
            json={"user_id": str(TEST_USER_ID), "start_date": "2024-02-01", "end_date": "2024-01-01"},
            headers=HEADERS,
        )
        assert response.status_code == 422

    def test_backfill_runs(
        self, client: TestClient, store: InMemoryStepStore, mock_client: AsyncMock
    ) -> None:
        store.add_account()
        mock_client.get_activity_time_series.return_value = [
            StepSample(date(2024, 1, 1), 100),
            StepSample(date(2024, 1, 2), 200),
        ]

        response = client.post(
            "/api/v1/internal/backfill",
            json={"user_id": str(TEST_USER_ID), "start_date": "2024-01-01", "end_date": "2024-01-02"},
            headers=HEADERS,
        )

        assert response.status_code == 200
        body = response.json()
        assert body["missing_days"] == 2
        assert body["fetched_dates"] == ["2024-01-01", "2024-01-02"]

    def test_process_queue(self, client: TestClient) -> None:
        response = client.post("/api/v1/internal/queue/process", headers=HEADERS)
        assert response.status_code == 200
        assert response.json()["processed"] == 0

    def test_unlink_unknown_account_is_404(self, client: TestClient) -> None:
        response = client.delete(
            "/api/v1/internal/accounts/00000000-0000-0000-0000-000000000000", headers=HEADERS
        )
        assert response.status_code == 404

    def test_link_account(
        self, client: TestClient, store: InMemoryStepStore, mock_client: AsyncMock
    ) -> None:
        mock_client.create_subscription.return_value = httpx.Response(201)
        mock_client.get_activity_time_series.return_value = []

        response = client.post(
            "/api/v1/internal/accounts",
            json={
                "user_id": str(TEST_USER_ID),
                "external_user_id": "FB777",
                "access_token": "a",
                "refresh_token": "r",
            },
            headers=HEADERS,
        )

        assert response.status_code == 201
        body = response.json()
        assert body["subscription_id"].startswith(str(TEST_USER_ID))
        assert any(a.external_user_id == "FB777" for a in store.accounts.values())

    def test_sync_subscriptions(
        self, client: TestClient, store: InMemoryStepStore, mock_client: AsyncMock
    ) -> None:
        account = store.add_account()
        store.subscriptions["gone"] = Subscription(
            "gone", account.account_id, account.user_id, "activities"
        )
        mock_client.list_subscriptions.return_value = []

        response = client.post(
            f"/api/v1/internal/accounts/{account.account_id}/subscriptions/sync", headers=HEADERS
        )

        assert response.status_code == 200
        assert response.json()["deactivated"] == 1
        assert store.subscriptions["gone"].is_active is False
