"""Access-token cache for linked Fitbit accounts.

Fitbit access tokens live eight hours and refresh tokens are single use, so
every refresh must persist the rotated pair before the new access token is
handed out.
"""

from __future__ import annotations

import logging
from datetime import timedelta

import httpx
from pydantic import ValidationError

from stepsync.config import Settings
from stepsync.models.fitbit import TokenResponse
from stepsync.steps.base import LinkedAccount, OAuthTokens, utc_now
from stepsync.steps.config_loader import SyncConfig, get_sync_config
from stepsync.steps.store import StepStore

logger = logging.getLogger("stepsync.steps.credentials")


class CredentialCache:
    """Hands out a usable access token per account, refreshing when close to expiry."""

    def __init__(
        self,
        store: StepStore,
        settings: Settings,
        config: SyncConfig | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._store = store
        self._settings = settings
        self._config = config or get_sync_config()
        self._http_client = http_client

    @property
    def refresh_buffer(self) -> timedelta:
        return timedelta(seconds=self._config.credentials.refresh_buffer_seconds)

    def needs_refresh(self, account: LinkedAccount) -> bool:
        if account.token_expires_at is None:
            return True
        return account.token_expires_at - utc_now() <= self.refresh_buffer

    async def get_valid_access_token(self, account: LinkedAccount) -> str | None:
        """Return a bearer token for ``account`` or None if none can be obtained.

        None means "skip this account for now"; the reason is logged here.
        """
        if account.access_token is None:
            logger.info("Account %s has no access token (revoked)", account.account_id)
            return None
        if not account.refresh_token:
            logger.warning("Account %s has no refresh token", account.account_id)
            return None

        if not self.needs_refresh(account):
            return account.access_token

        tokens = await self.refresh(account)
        if tokens is None:
            return None
        return tokens.access_token

    async def refresh(self, account: LinkedAccount) -> OAuthTokens | None:
        """Exchange the account's refresh token and persist the result."""
        logger.info("Refreshing Fitbit token for account %s", account.account_id)
        try:
            data = await self._post_refresh(account.refresh_token or "")
            parsed = TokenResponse.model_validate(data)
        except httpx.HTTPStatusError as exc:
            logger.error(
                "Token refresh for account %s rejected: HTTP %d",
                account.account_id,
                exc.response.status_code,
            )
            return None
        except (httpx.HTTPError, ValueError, ValidationError) as exc:
            logger.error("Token refresh for account %s failed: %s", account.account_id, exc)
            return None

        tokens = OAuthTokens(
            access_token=parsed.access_token,
            refresh_token=parsed.refresh_token or account.refresh_token,
            expires_at=utc_now() + timedelta(seconds=parsed.expires_in),
        )

        try:
            await self._store.update_account_tokens(account.account_id, tokens)
        except Exception as exc:
            logger.error(
                "Refreshed token for account %s could not be stored: %s", account.account_id, exc
            )
            return None

        account.apply_tokens(tokens)
        return tokens

    async def _post_refresh(self, refresh_token: str) -> dict:
        auth = httpx.BasicAuth(self._settings.fitbit_client_id, self._settings.fitbit_client_secret)
        form = {"grant_type": "refresh_token", "refresh_token": refresh_token}

        if self._http_client is not None:
            response = await self._http_client.post(
                self._settings.fitbit_token_url, data=form, auth=auth
            )
            response.raise_for_status()
            return response.json()

        async with httpx.AsyncClient(timeout=self._settings.http_timeout_seconds) as client:
            response = await client.post(self._settings.fitbit_token_url, data=form, auth=auth)
            response.raise_for_status()
            return response.json()
