"""Handlers the queue worker dispatches Fitbit notifications to."""

from __future__ import annotations

import logging
from datetime import date

from stepsync.models.webhooks import CollectionType, FitbitNotification
from stepsync.steps.base import FITBIT, LinkedAccount, StepSample, utc_now
from stepsync.steps.client import FitbitClient
from stepsync.steps.config_loader import SyncConfig, get_sync_config
from stepsync.steps.errors import AccountNotFoundError, NoDataError
from stepsync.steps.reconcile import ReconciliationEngine
from stepsync.steps.store import StepStore

logger = logging.getLogger("stepsync.steps.processor")


class NotificationProcessor:
    """Pull the data a notification announces, store it, and reconcile.

    Raises the typed errors from ``stepsync.steps.errors`` so the worker can
    decide between retry and terminal failure.
    """

    def __init__(
        self,
        store: StepStore,
        client: FitbitClient,
        engine: ReconciliationEngine,
        config: SyncConfig | None = None,
    ) -> None:
        self._store = store
        self._client = client
        self._engine = engine
        self._config = config or get_sync_config()

    async def process(self, notification: FitbitNotification) -> list[date]:
        """Handle one data notification; returns the dates that were reconciled."""
        account = await self._store.find_account_by_external_id(FITBIT, notification.owner_id)
        if account is None:
            raise AccountNotFoundError(notification.owner_id, FITBIT)

        if notification.collection_type != CollectionType.activities:
            logger.info(
                "Skipping %s notification for account %s",
                notification.collection_type.value,
                account.account_id,
            )
            return []

        target = notification.notification_date
        samples = await self._client.get_activity_time_series(account, "steps", target, target)
        if not samples:
            raise NoDataError(f"Fitbit returned no steps for {notification.owner_id} on {target}")

        await self.store_samples(account, samples)

        if self._config.intraday.enabled:
            intraday = await self._client.get_intraday_steps(
                account, target, self._config.intraday.detail_level
            )
            await self.store_samples(account, intraday)

        dates = sorted({s.date for s in samples})
        await self._engine.reconcile_many(account.user_id, dates)
        logger.info(
            "Processed activities notification for account %s (%d date(s))",
            account.account_id,
            len(dates),
        )
        return dates

    async def store_samples(self, account: LinkedAccount, samples: list[StepSample]) -> None:
        synced_at = utc_now()
        for sample in samples:
            await self._store.upsert_reading(account.account_id, sample, synced_at)


class RevocationHandler:
    """Handle ``userRevokedAccess`` and ``deleteUser`` notifications.

    Idempotent: tokens are nulled and subscriptions deactivated however many
    times the notice is delivered, and an unknown owner is not an error.
    """

    def __init__(self, store: StepStore) -> None:
        self._store = store

    async def handle(self, notification: FitbitNotification) -> bool:
        """Returns True if an account was found and revoked."""
        account = await self._store.find_account_by_external_id(FITBIT, notification.owner_id)
        if account is None:
            logger.warning(
                "%s for unknown Fitbit user %s, nothing to revoke",
                notification.collection_type.value,
                notification.owner_id,
            )
            return False

        await self._store.clear_account_tokens(account.account_id)
        deactivated = await self._store.deactivate_subscriptions(account.account_id)
        logger.info(
            "Revoked account %s (%s): tokens cleared, %d subscription(s) deactivated",
            account.account_id,
            notification.collection_type.value,
            deactivated,
        )
        return True
