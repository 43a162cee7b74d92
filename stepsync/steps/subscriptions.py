"""Fitbit subscription lifecycle: create on link, delete on unlink, reconcile drift.

Subscription ids are ``{user_id}-{collection}-{epoch_ms}`` so they are
globally unique across re-links.  Fitbit answers 409 when the subscription
already exists for that owner; that counts as success and Fitbit's id for
the existing subscription is adopted.
"""

from __future__ import annotations

import logging
from uuid import UUID

import httpx
from pydantic import ValidationError

from stepsync.config import Settings
from stepsync.models.fitbit import ApiSubscription, ApiSubscriptionList
from stepsync.steps.base import FITBIT, LinkedAccount, OAuthTokens, Subscription, utc_now
from stepsync.steps.client import FitbitClient
from stepsync.steps.errors import StepSyncError
from stepsync.steps.store import StepStore
from stepsync.steps.sync.backfill import BackfillOrchestrator, BackfillResult

logger = logging.getLogger("stepsync.steps.subscriptions")

DEFAULT_COLLECTION = "activities"


def new_subscription_id(user_id: UUID, collection_type: str) -> str:
    epoch_ms = int(utc_now().timestamp() * 1000)
    return f"{user_id}-{collection_type}-{epoch_ms}"


def _pick_subscription(
    candidates: list[ApiSubscription], collection_type: str
) -> ApiSubscription | None:
    for candidate in candidates:
        if candidate.collection_type in (None, collection_type):
            return candidate
    return None


def _subscription_from_body(
    response: httpx.Response, collection_type: str
) -> ApiSubscription | None:
    """Parse the subscription (or ``apiSubscriptions`` list) a create call echoes back."""
    try:
        body = response.json()
    except ValueError:
        return None
    try:
        if isinstance(body, dict) and "apiSubscriptions" in body:
            listed = ApiSubscriptionList.model_validate(body).subscriptions
            return _pick_subscription(listed, collection_type)
        return ApiSubscription.model_validate(body)
    except ValidationError:
        return None


class SubscriptionService:
    def __init__(
        self,
        store: StepStore,
        client: FitbitClient,
        settings: Settings,
        backfill: BackfillOrchestrator | None = None,
    ) -> None:
        self._store = store
        self._client = client
        self._settings = settings
        self._backfill = backfill

    async def subscribe(
        self, account: LinkedAccount, collection_type: str = DEFAULT_COLLECTION
    ) -> Subscription | None:
        """Create the provider subscription and persist it; None on failure.

        On 409 the subscription Fitbit already holds for this owner is adopted:
        its id comes from the response body, or from the remote listing when
        the body does not carry one.
        """
        subscription_id = new_subscription_id(account.user_id, collection_type)
        try:
            response = await self._client.create_subscription(
                account, collection_type, subscription_id
            )
        except StepSyncError as exc:
            logger.error("Subscribe failed for account %s: %s", account.account_id, exc)
            return None

        remote = _subscription_from_body(response, collection_type)
        if response.status_code == 409:
            if remote is None:
                remote = await self._find_remote(account, collection_type)
            if remote is None:
                logger.error(
                    "Fitbit reported an existing subscription for account %s "
                    "but did not say which one",
                    account.account_id,
                )
                return None
            logger.info(
                "Fitbit subscription %s already exists for account %s, adopting",
                remote.subscription_id,
                account.account_id,
            )
        elif not response.is_success:
            logger.error(
                "Subscribe failed for account %s: HTTP %d",
                account.account_id,
                response.status_code,
            )
            return None

        subscription = Subscription(
            subscription_id=remote.subscription_id if remote else subscription_id,
            account_id=account.account_id,
            user_id=account.user_id,
            collection_type=(remote and remote.collection_type) or collection_type,
            subscriber_id=(
                (remote and remote.subscriber_id) or self._settings.fitbit_subscriber_id or None
            ),
            is_active=True,
        )
        return await self._store.upsert_subscription(subscription)

    async def _find_remote(
        self, account: LinkedAccount, collection_type: str
    ) -> ApiSubscription | None:
        try:
            remote = await self._client.list_subscriptions(account)
        except StepSyncError as exc:
            logger.error("Could not list subscriptions for account %s: %s", account.account_id, exc)
            return None
        return _pick_subscription(remote, collection_type)

    async def unsubscribe(self, account: LinkedAccount, subscription: Subscription) -> bool:
        """Delete at Fitbit; on success (or 404) drop the row, otherwise deactivate it."""
        try:
            response = await self._client.delete_subscription(
                account, subscription.collection_type, subscription.subscription_id
            )
            status = response.status_code
        except StepSyncError as exc:
            logger.warning(
                "Could not reach Fitbit to delete subscription %s: %s",
                subscription.subscription_id,
                exc,
            )
            status = None

        if status is not None and (200 <= status < 300 or status == 404):
            await self._store.delete_subscription(subscription.subscription_id)
            return True

        await self._store.deactivate_subscription(subscription.subscription_id)
        if status is not None:
            logger.warning(
                "Fitbit refused to delete subscription %s (HTTP %d), deactivated locally",
                subscription.subscription_id,
                status,
            )
        return False

    async def unlink(self, account: LinkedAccount) -> int:
        """Unsubscribe everything for the account, then null its tokens.

        Returns the number of subscriptions deleted at the provider.
        """
        deleted = 0
        for subscription in await self._store.list_active_subscriptions(account.account_id):
            if await self.unsubscribe(account, subscription):
                deleted += 1
        await self._store.clear_account_tokens(account.account_id)
        logger.info("Unlinked account %s (%d subscription(s) deleted)", account.account_id, deleted)
        return deleted

    async def sync_subscriptions(self, account: LinkedAccount) -> int:
        """Deactivate local rows Fitbit no longer knows about; returns how many."""
        try:
            remote = {s.subscription_id for s in await self._client.list_subscriptions(account)}
        except StepSyncError as exc:
            logger.error("Could not list subscriptions for account %s: %s", account.account_id, exc)
            return 0

        stale = 0
        for subscription in await self._store.list_active_subscriptions(account.account_id):
            if subscription.subscription_id not in remote:
                await self._store.deactivate_subscription(subscription.subscription_id)
                stale += 1
        if stale:
            logger.info("Deactivated %d stale subscription(s) for %s", stale, account.account_id)
        return stale

    async def link_account(
        self,
        user_id: UUID,
        external_user_id: str,
        tokens: OAuthTokens,
    ) -> tuple[LinkedAccount, Subscription | None, BackfillResult | None]:
        """Persist a freshly authorized account, subscribe it, and backfill recent history."""
        account = await self._store.save_linked_account(user_id, FITBIT, external_user_id, tokens)
        logger.info("Linked Fitbit user %s to user %s", external_user_id, user_id)

        subscription = await self.subscribe(account)

        backfill_result = None
        if self._backfill is not None:
            backfill_result = await self._backfill.backfill_recent(user_id)
        return account, subscription, backfill_result
