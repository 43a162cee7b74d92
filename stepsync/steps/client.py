"""Fitbit Web API client.

Endpoints used:
    /1/user/-/activities/{resource}/date/{start}/{end}.json   — daily time series
    /1/user/-/activities/steps/date/{date}/1d/{detail}.json   — intraday steps
    /1/user/-/{collection}/apiSubscriptions/{id}.json         — subscription create / delete
    /1/user/-/apiSubscriptions.json                           — subscription list

Every call obtains its bearer token from the CredentialCache.  Responses are
validated with the models in ``stepsync.models.fitbit`` before any value is
used, so a schema drift upstream surfaces as ``ProviderResponseError``.
"""

from __future__ import annotations

import logging
from datetime import date
from typing import Any

import httpx
from pydantic import TypeAdapter, ValidationError

from stepsync.config import Settings
from stepsync.models.fitbit import (
    ApiSubscription,
    ApiSubscriptionList,
    IntradayStepsResponse,
    TimeSeriesPoint,
)
from stepsync.steps.base import LinkedAccount, StepSample
from stepsync.steps.credentials import CredentialCache
from stepsync.steps.errors import ProviderAPIError, ProviderResponseError, TokenError

logger = logging.getLogger("stepsync.steps.client")

_TIME_SERIES = TypeAdapter(list[TimeSeriesPoint])


class FitbitClient:
    """Thin async wrapper over the Fitbit endpoints the sync pipeline needs."""

    def __init__(
        self,
        credentials: CredentialCache,
        settings: Settings,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the Fitbit client.

        Args:
            credentials: Source of valid access tokens.
            settings:    API base URL, subscriber id and timeout.
            http_client: Optional pre-configured httpx client (for testing).
        """
        self._credentials = credentials
        self._settings = settings
        self._http_client = http_client

    # ------------------------------------------------------------------
    # Activity data
    # ------------------------------------------------------------------

    async def get_activity_time_series(
        self,
        account: LinkedAccount,
        resource: str,
        start_date: date,
        end_date: date,
    ) -> list[StepSample]:
        """Fetch a daily time series, e.g. ``resource="steps"``, for an inclusive range.

        Raises:
            TokenError:            No usable access token, or the provider answered 401.
            ProviderAPIError:      Any other non-2xx status or a transport failure.
            ProviderResponseError: The body does not match the documented shape.
        """
        path = f"/1/user/-/activities/{resource}/date/{start_date.isoformat()}/{end_date.isoformat()}.json"
        body = await self._get(account, path)

        key = f"activities-{resource}"
        if not isinstance(body, dict) or not isinstance(body.get(key), list):
            raise ProviderResponseError(f"Fitbit response is missing '{key}'")
        try:
            points = _TIME_SERIES.validate_python(body[key])
        except ValidationError as exc:
            raise ProviderResponseError(f"Malformed '{key}' entries: {exc}") from exc

        return [StepSample(date=p.date_time, steps=p.value) for p in points]

    async def get_intraday_steps(
        self,
        account: LinkedAccount,
        target_date: date,
        detail_level: str = "15min",
    ) -> list[StepSample]:
        """Fetch intraday step samples for one day (requires intraday API access)."""
        path = f"/1/user/-/activities/steps/date/{target_date.isoformat()}/1d/{detail_level}.json"
        body = await self._get(account, path)
        try:
            parsed = IntradayStepsResponse.model_validate(body)
        except ValidationError as exc:
            raise ProviderResponseError(f"Malformed intraday response: {exc}") from exc

        return [
            StepSample(date=target_date, steps=p.value, time_of_day=p.time_of_day)
            for p in parsed.intraday.dataset
        ]

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    async def create_subscription(
        self, account: LinkedAccount, collection_type: str, subscription_id: str
    ) -> httpx.Response:
        """POST a subscription; returns the raw response so callers can treat 409 specially."""
        path = f"/1/user/-/{collection_type}/apiSubscriptions/{subscription_id}.json"
        return await self._request(account, "POST", path, headers=self._subscriber_headers())

    async def delete_subscription(
        self, account: LinkedAccount, collection_type: str, subscription_id: str
    ) -> httpx.Response:
        path = f"/1/user/-/{collection_type}/apiSubscriptions/{subscription_id}.json"
        return await self._request(account, "DELETE", path, headers=self._subscriber_headers())

    async def list_subscriptions(self, account: LinkedAccount) -> list[ApiSubscription]:
        body = await self._get(account, "/1/user/-/apiSubscriptions.json")
        try:
            return ApiSubscriptionList.model_validate(body).subscriptions
        except ValidationError as exc:
            raise ProviderResponseError(f"Malformed subscription list: {exc}") from exc

    # ------------------------------------------------------------------
    # HTTP helpers
    # ------------------------------------------------------------------

    def _subscriber_headers(self) -> dict[str, str]:
        if self._settings.fitbit_subscriber_id:
            return {"X-Fitbit-Subscriber-Id": self._settings.fitbit_subscriber_id}
        return {}

    async def _get(self, account: LinkedAccount, path: str) -> Any:
        response = await self._request(account, "GET", path)
        if response.status_code == 401:
            raise TokenError(f"Fitbit rejected the access token for account {account.account_id}")
        if not response.is_success:
            raise ProviderAPIError(
                f"Fitbit GET {path} returned HTTP {response.status_code}",
                status_code=response.status_code,
            )
        try:
            return response.json()
        except ValueError as exc:
            raise ProviderResponseError(f"Fitbit GET {path} returned non-JSON body") from exc

    async def _request(
        self,
        account: LinkedAccount,
        method: str,
        path: str,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        token = await self._credentials.get_valid_access_token(account)
        if token is None:
            raise TokenError(f"No valid access token for account {account.account_id}")

        url = f"{self._settings.fitbit_api_base}{path}"
        request_headers = {"Authorization": f"Bearer {token}", **(headers or {})}
        logger.debug("Fitbit %s %s (account %s)", method, path, account.account_id)

        try:
            if self._http_client is not None:
                return await self._http_client.request(method, url, headers=request_headers)
            async with httpx.AsyncClient(timeout=self._settings.http_timeout_seconds) as client:
                return await client.request(method, url, headers=request_headers)
        except httpx.TransportError as exc:
            raise ProviderAPIError(f"Fitbit {method} {path} failed: {exc}") from exc
