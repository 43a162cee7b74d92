"""Background sync infrastructure for StepSync.

Modules:
    queue     — Durable webhook job queue and worker
    retry     — Backoff tiers and error categorization
    backfill  — Gap-driven historical backfill (chunked, rate-limited)
    poller    — Hourly re-pull of today's totals
    scheduler — In-process periodic runner for the worker and poller
"""
