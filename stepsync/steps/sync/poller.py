"""Hourly fallback poll of today's step total for every linked Fitbit account.

Fitbit delivers notifications at most once and occasionally drops them; the
poller bypasses the queue and writes readings directly, so the freshest
guarantee is "next webhook or next hourly poll".
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from uuid import UUID

from stepsync.steps.base import FITBIT, LinkedAccount, utc_now
from stepsync.steps.client import FitbitClient
from stepsync.steps.credentials import CredentialCache
from stepsync.steps.reconcile import ReconciliationEngine
from stepsync.steps.store import StepStore

logger = logging.getLogger("stepsync.steps.sync.poller")


@dataclass
class PollResult:
    success_count: int = 0
    error_count: int = 0
    revoked_count: int = 0
    skipped_accounts: list[UUID] = field(default_factory=list)


class ScheduledPoller:
    """Re-pull today's daily total for each account, isolating failures per account."""

    def __init__(
        self,
        store: StepStore,
        credentials: CredentialCache,
        client: FitbitClient,
        engine: ReconciliationEngine,
    ) -> None:
        self._store = store
        self._credentials = credentials
        self._client = client
        self._engine = engine

    async def run(self, today: date | None = None) -> PollResult:
        target = today or utc_now().date()
        result = PollResult()

        accounts = []
        for account in await self._store.list_accounts(FITBIT):
            if account.is_revoked:
                result.revoked_count += 1
            else:
                accounts.append(account)
        logger.info(
            "Polling %d Fitbit account(s) for %s (%d revoked, not polled)",
            len(accounts),
            target,
            result.revoked_count,
        )

        for account in accounts:
            try:
                synced = await self.poll_account(account, target)
            except Exception as exc:
                result.error_count += 1
                logger.error("Poll failed for account %s: %s", account.account_id, exc)
                continue
            if synced:
                result.success_count += 1
            else:
                result.error_count += 1
                result.skipped_accounts.append(account.account_id)

        logger.info(
            "Poll complete: %d succeeded, %d failed", result.success_count, result.error_count
        )
        return result

    async def poll_account(self, account: LinkedAccount, target: date) -> bool:
        """Returns False if the account was skipped for lack of a usable token."""
        token = await self._credentials.get_valid_access_token(account)
        if token is None:
            logger.warning("Skipping account %s: no valid token", account.account_id)
            return False

        samples = await self._client.get_activity_time_series(account, "steps", target, target)
        synced_at = utc_now()
        for sample in samples:
            await self._store.upsert_reading(account.account_id, sample, synced_at)

        await self._engine.reconcile(account.user_id, target)
        return True
