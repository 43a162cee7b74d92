"""Command-line entry point for running sync jobs outside the API process.

Examples:
    stepsync init-db
    stepsync process-queue --limit 25
    stepsync poll
    stepsync backfill --user-id 9b1d... --start 2024-01-01 --end 2024-01-31

Suitable for cron when the in-process scheduler is disabled.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from datetime import date
from typing import Sequence
from uuid import UUID

import httpx

from stepsync.config import get_settings
from stepsync.services.database import apply_schema, close_pool, init_pool
from stepsync.steps.container import SyncServices, build_sync_services
from stepsync.steps.store import PostgresStepStore

logger = logging.getLogger("stepsync.cli")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="stepsync", description="StepSync maintenance commands")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="Create the StepSync tables if missing.")

    queue = sub.add_parser("process-queue", help="Process one batch of webhook jobs.")
    queue.add_argument("--limit", type=int, default=None, help="Override queue.batch_size.")

    sub.add_parser("poll", help="Re-pull today's steps for every linked Fitbit account.")

    backfill = sub.add_parser("backfill", help="Fetch missing days for one user.")
    backfill.add_argument("--user-id", type=UUID, required=True, help="Internal user UUID.")
    backfill.add_argument("--start", type=date.fromisoformat, required=True, help="YYYY-MM-DD")
    backfill.add_argument("--end", type=date.fromisoformat, required=True, help="YYYY-MM-DD")

    return parser


async def _run_with_services(args: argparse.Namespace, services: SyncServices) -> int:
    if args.command == "process-queue":
        result = await services.worker.process_batch(args.limit)
        print(
            f"processed={result.processed} succeeded={result.succeeded} "
            f"retried={result.retried} failed={result.failed} reclaimed={result.reclaimed}"
        )
        return 0

    if args.command == "poll":
        poll = await services.poller.run()
        print(
            f"success={poll.success_count} errors={poll.error_count} "
            f"revoked={poll.revoked_count}"
        )
        return 0 if poll.error_count == 0 else 1

    if args.command == "backfill":
        if args.start > args.end:
            print("--start must be on or before --end", file=sys.stderr)
            return 2
        result = await services.backfill.backfill(args.user_id, args.start, args.end)
        print(
            f"missing={len(result.missing_dates)} fetched={result.days_fetched} "
            f"chunks_failed={result.chunks_failed}"
        )
        return 0 if result.chunks_failed == 0 else 1

    raise ValueError(f"Unknown command {args.command!r}")


async def run(args: argparse.Namespace) -> int:
    settings = get_settings()
    await init_pool(settings)
    try:
        if args.command == "init-db":
            await apply_schema()
            return 0
        async with httpx.AsyncClient(timeout=settings.http_timeout_seconds) as http_client:
            services = build_sync_services(settings, PostgresStepStore(), http_client=http_client)
            return await _run_with_services(args, services)
    finally:
        await close_pool()


def main(argv: Sequence[str] | None = None) -> int:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stdout,
    )
    args = build_parser().parse_args(argv)
    return asyncio.run(run(args))


if __name__ == "__main__":
    raise SystemExit(main())
