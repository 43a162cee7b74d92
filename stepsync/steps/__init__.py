"""StepSync step-data synchronization pipeline.

This package pulls step counts from Fitbit, keeps them current through
webhook notifications, an hourly poll and gap-driven backfill, and
reconciles readings from every linked account into one daily total per user.

Subpackages:
    sync/  — Job queue worker, retry policy, backfill, poller, scheduler

Core modules:
    base          — Canonical dataclasses (accounts, readings, totals, jobs)
    errors        — Exception taxonomy the queue worker categorizes
    store         — StepStore ABC and the asyncpg implementation
    credentials   — Access-token cache with refresh
    client        — Fitbit Web API client
    reconcile     — Conflict policy and daily total computation
    processor     — Notification and revocation handlers
    subscriptions — Fitbit subscription lifecycle
    config_loader — Load/validate/hot-reload sync_config.yaml
    container     — Wires the components around one store
"""

from stepsync.steps.base import (
    DailyTotal,
    LinkedAccount,
    OAuthTokens,
    QueuedJob,
    RawReading,
    StepSample,
    Subscription,
)
from stepsync.steps.config_loader import SyncConfig, get_sync_config

__all__ = [
    "DailyTotal",
    "LinkedAccount",
    "OAuthTokens",
    "QueuedJob",
    "RawReading",
    "StepSample",
    "Subscription",
    "SyncConfig",
    "get_sync_config",
]
