"""Wires the sync components together around one store and one HTTP client."""

from __future__ import annotations

from dataclasses import dataclass

import httpx

from stepsync.config import Settings
from stepsync.steps.client import FitbitClient
from stepsync.steps.config_loader import SyncConfig, get_sync_config
from stepsync.steps.credentials import CredentialCache
from stepsync.steps.processor import NotificationProcessor, RevocationHandler
from stepsync.steps.reconcile import ReconciliationEngine
from stepsync.steps.store import StepStore
from stepsync.steps.subscriptions import SubscriptionService
from stepsync.steps.sync.backfill import BackfillOrchestrator
from stepsync.steps.sync.poller import ScheduledPoller
from stepsync.steps.sync.queue import JobQueue, QueueWorker
from stepsync.steps.sync.scheduler import SyncScheduler


@dataclass
class SyncServices:
    store: StepStore
    config: SyncConfig
    credentials: CredentialCache
    client: FitbitClient
    engine: ReconciliationEngine
    queue: JobQueue
    worker: QueueWorker
    backfill: BackfillOrchestrator
    poller: ScheduledPoller
    subscriptions: SubscriptionService

    def build_scheduler(self) -> SyncScheduler:
        return SyncScheduler(
            self.worker.process_batch,
            self.poller.run if self.config.poller.enabled else None,
            interval_seconds=self.config.queue.interval_seconds,
        )


def build_sync_services(
    settings: Settings,
    store: StepStore,
    config: SyncConfig | None = None,
    http_client: httpx.AsyncClient | None = None,
    client: FitbitClient | None = None,
) -> SyncServices:
    config = config or get_sync_config()
    credentials = CredentialCache(store, settings, config, http_client=http_client)
    client = client or FitbitClient(credentials, settings, http_client=http_client)
    engine = ReconciliationEngine(store)
    processor = NotificationProcessor(store, client, engine, config)
    backfill = BackfillOrchestrator(store, client, engine, config)
    return SyncServices(
        store=store,
        config=config,
        credentials=credentials,
        client=client,
        engine=engine,
        queue=JobQueue(store),
        worker=QueueWorker(store, processor, RevocationHandler(store), config),
        backfill=backfill,
        poller=ScheduledPoller(store, credentials, client, engine),
        subscriptions=SubscriptionService(store, client, settings, backfill),
    )
